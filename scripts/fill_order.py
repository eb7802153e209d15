#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from resolver.common import log_event  # noqa: E402
from resolver.runtime import AppSettings, ConfigurationError, build_components, setup_logger  # noqa: E402
from resolver.settlement import RuntimeConfig  # noqa: E402
from resolver.storage import StorageSettings  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Evaluate and settle a single stored order by hash.",
    )
    parser.add_argument("order_hash", help="Order hash as stored by the order API.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Build and simulate the settlement without submitting it.",
    )
    mode.add_argument(
        "--live",
        dest="dry_run",
        action="store_false",
        help="Submit the settlement even when DRY_RUN is set in the environment.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Settle even if the order is not profitable at current prices.",
    )
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    logger = setup_logger()
    try:
        app_settings = AppSettings.from_env()
        storage_settings = StorageSettings.from_env()
        storage_settings.firestore_enabled = False
        components = build_components(
            logger=logger,
            app_settings=app_settings,
            storage_settings=storage_settings,
            dry_run=args.dry_run,
        )
    except (ConfigurationError, ValueError) as error:
        print(f"[error] {error}", file=sys.stderr)
        return 1

    runtime_defaults = RuntimeConfig.from_env_defaults()
    try:
        await components.storage.connect()
        redis_config = await components.storage.get_runtime_config()
        runtime_config = RuntimeConfig.from_redis(redis_config, runtime_defaults) if redis_config else runtime_defaults

        order = await components.storage.get_order(args.order_hash)
        if order is None:
            print(f"[error] order {args.order_hash} was not found", file=sys.stderr)
            return 1
        if not order.is_open:
            print(f"[error] order {args.order_hash} is {order.status}; only open orders can be settled", file=sys.stderr)
            return 1

        result = await components.evaluator.evaluate(order, runtime_config)
        print("[info] profitability=")
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        if not result.is_profitable and not args.force:
            print("[info] order is not profitable; pass --force to settle anyway")
            return 1

        outcome = await components.executor.settle(order, runtime_config)
        print("[info] outcome=")
        print(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
        log_event(
            logger,
            level="info",
            event="manual_settlement_finished",
            message="Manual settlement finished",
            order_hash=order.order_hash,
            success=outcome.success,
        )
        return 0 if outcome.success or outcome.dry_run else 1
    finally:
        await components.close(logger)


def main() -> None:
    load_dotenv(Path(__file__).resolve().parents[1] / ".env")
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
