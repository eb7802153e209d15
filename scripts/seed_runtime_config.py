#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from resolver.settlement import RuntimeConfig  # noqa: E402
from resolver.storage import StorageSettings  # noqa: E402
from resolver.storage.firestore_ops import normalize_doc_path  # noqa: E402


def parse_args(defaults: RuntimeConfig, default_config_doc: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the runtime config document the resolver watches in Firestore.",
    )
    parser.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=default_config_doc,
        help="Firestore target path. If odd segments are given, a doc id is auto-appended.",
    )
    parser.add_argument(
        "--leaf-doc-id",
        default=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
        help="Doc id to append when --config-doc is a collection path.",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Replace the full document (merge=false).",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )
    parser.add_argument("--min-profit-usd", default=str(defaults.min_profit_usd))
    parser.add_argument("--max-gas-price-wei", type=int, default=defaults.max_gas_price_wei)
    parser.add_argument("--max-priority-fee-wei", type=int, default=defaults.max_priority_fee_wei)
    parser.add_argument("--estimated-gas-units", type=int, default=defaults.estimated_gas_units)
    parser.add_argument("--settlement-gas-limit", type=int, default=defaults.settlement_gas_limit)
    parser.add_argument("--min-native-reserve-wei", type=int, default=defaults.min_native_reserve_wei)
    parser.add_argument(
        "--confirmation-timeout-seconds",
        type=float,
        default=defaults.confirmation_timeout_seconds,
    )
    parser.add_argument("--tranche-interval-seconds", type=float, default=defaults.tranche_interval_seconds)
    parser.add_argument(
        "--no-simulate",
        action="store_true",
        help="Set simulate_before_submit=false.",
    )
    parser.add_argument(
        "--trade-disabled",
        action="store_true",
        help="Set trade_enabled=false so profitable orders are only logged.",
    )
    return parser.parse_args()


def build_payload(args: argparse.Namespace, schema_version: int) -> dict[str, Any]:
    # large wei values are stored as strings; Firestore integers are 64-bit
    return {
        "schema_version": schema_version,
        "min_profit_usd": str(args.min_profit_usd),
        "max_gas_price_wei": str(max(1, args.max_gas_price_wei)),
        "max_priority_fee_wei": str(max(0, args.max_priority_fee_wei)),
        "estimated_gas_units": max(1, args.estimated_gas_units),
        "settlement_gas_limit": max(21_000, args.settlement_gas_limit),
        "min_native_reserve_wei": str(max(0, args.min_native_reserve_wei)),
        "confirmation_timeout_seconds": max(1.0, args.confirmation_timeout_seconds),
        "tranche_interval_seconds": max(0.0, args.tranche_interval_seconds),
        "simulate_before_submit": not args.no_simulate,
        "trade_enabled": not args.trade_disabled,
    }


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    storage_settings = StorageSettings.from_env()
    args = parse_args(RuntimeConfig.from_env_defaults(), storage_settings.firestore_config_doc)

    target_doc_path, path_auto_fixed = normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args, storage_settings.config_schema_version)

    if path_auto_fixed:
        print(
            f"[info] --config-doc '{args.config_doc}' is a collection path. "
            f"Using document path '{target_doc_path}'."
        )

    firebase_credentials = os.getenv("FIREBASE_CREDENTIALS", "")
    if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

    project_id = args.project_id.strip()
    print(f"[info] project_id={project_id or '(default)'}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id or None)
    client.document(target_doc_path).set(payload, merge=not args.replace)

    print("[ok] Firestore runtime config seeded successfully")


if __name__ == "__main__":
    main()
