from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from resolver.common import to_bool, to_int

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _sanitize_resolver_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    order_prefix: str
    heartbeat_key: str
    firestore_enabled: bool
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    resolver_collection: str
    resolver_id: str
    resolver_env: str
    resolver_run_id: str
    runs_collection: str
    events_collection: str
    settlements_collection: str
    settlements_daily_collection: str
    metrics_collection: str
    metrics_doc_id: str
    config_schema_version: int

    @property
    def open_index_key(self) -> str:
        return f"{self.order_prefix}:open"

    @property
    def expiry_index_key(self) -> str:
        return f"{self.order_prefix}:expiry"

    def order_key(self, order_hash: str) -> str:
        return f"{self.order_prefix}:{order_hash}"

    @classmethod
    def from_env(cls) -> "StorageSettings":
        resolver_collection = os.getenv("RESOLVER_COLLECTION", "resolvers").strip("/") or "resolvers"
        resolver_id = _sanitize_resolver_id(os.getenv("RESOLVER_ID", "order-resolver"), "order-resolver")
        default_config_doc = f"{resolver_collection}/{resolver_id}/config/runtime"

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "resolver:config"),
            order_prefix=(os.getenv("REDIS_ORDER_PREFIX", "orders").strip(":") or "orders"),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "resolver:heartbeat"),
            firestore_enabled=to_bool(os.getenv("FIRESTORE_ENABLED"), True),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            resolver_collection=resolver_collection,
            resolver_id=resolver_id,
            resolver_env=os.getenv("RESOLVER_ENV", "dev"),
            resolver_run_id=os.getenv("RESOLVER_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            runs_collection=os.getenv("RESOLVER_RUNS_COLLECTION", "runs"),
            events_collection=os.getenv("RESOLVER_EVENTS_COLLECTION", "events"),
            settlements_collection=os.getenv("RESOLVER_SETTLEMENTS_COLLECTION", "settlements"),
            settlements_daily_collection=os.getenv("RESOLVER_SETTLEMENTS_DAILY_COLLECTION", "settlements_daily"),
            metrics_collection=os.getenv("RESOLVER_METRICS_COLLECTION", "metrics"),
            metrics_doc_id=os.getenv("RESOLVER_METRICS_DOC_ID", "runtime"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
        )
