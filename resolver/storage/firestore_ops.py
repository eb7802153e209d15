from __future__ import annotations

import asyncio
import hashlib
import os
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from resolver.common import guarded_call, log_event, to_float

from .helpers import utc_day_id
from .settings import ConfigUpdateHandler, StorageSettings

MAX_DOC_ID_LENGTH = 128


def normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    """Return a document path, appending ``leaf_doc_id`` to collection paths."""
    segments = [part for part in doc_path.split("/") if part]
    if not segments:
        raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")
    if len(segments) % 2 == 1:
        segments.append(leaf_doc_id)
        return "/".join(segments), True
    return "/".join(segments), False


def firestore_doc_id(value: str) -> str:
    normalized = value.strip().replace("/", "_")
    if not normalized:
        raise ValueError("Document id source must not be empty.")
    if len(normalized) <= MAX_DOC_ID_LENGTH:
        return normalized
    # order hash + tx hash ids stay unique after truncation
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{normalized[:96]}-{digest}"


@dataclass(slots=True, frozen=True)
class FirestoreRefs:
    resolver_doc: Any
    run_doc: Any
    events: Any
    settlements: Any
    settlements_daily: Any
    metrics_doc: Any
    config_doc: Any

    @classmethod
    def build(cls, client: firestore.Client, settings: StorageSettings, config_doc_path: str) -> "FirestoreRefs":
        resolver_doc = client.document(f"{settings.resolver_collection}/{settings.resolver_id}")
        run_doc = resolver_doc.collection(settings.runs_collection).document(settings.resolver_run_id)
        return cls(
            resolver_doc=resolver_doc,
            run_doc=run_doc,
            events=run_doc.collection(settings.events_collection),
            settlements=resolver_doc.collection(settings.settlements_collection),
            settlements_daily=resolver_doc.collection(settings.settlements_daily_collection),
            metrics_doc=resolver_doc.collection(settings.metrics_collection).document(settings.metrics_doc_id),
            config_doc=client.document(config_doc_path),
        )


async def _merge(doc_ref: Any, payload: dict[str, Any]) -> None:
    await asyncio.to_thread(doc_ref.set, payload, merge=True)


class FirestoreStorageOps:
    """Audit trail and runtime config source. Every write is best-effort."""

    def _audit_refs(self, *, event: str) -> FirestoreRefs | None:
        if not self.settings.firestore_enabled:
            return None
        if self._refs is None:
            log_event(
                self._logger,
                level="warning",
                event=event,
                message="Firestore sink is enabled but not connected; write skipped",
            )
        return self._refs

    def _audit_fields(self) -> dict[str, Any]:
        return {
            "resolver_id": self.settings.resolver_id,
            "run_id": self.settings.resolver_run_id,
            "env": self.settings.resolver_env,
            "schema_version": self.settings.config_schema_version,
        }

    async def open_run(self) -> None:
        refs = self._audit_refs(event="run_open_skipped")
        if refs is None:
            return

        await _merge(
            refs.resolver_doc,
            {
                "resolver_id": self.settings.resolver_id,
                "env": self.settings.resolver_env,
                "config_doc": self._config_doc_path,
                "updated_at": firestore.SERVER_TIMESTAMP,
            },
        )
        await _merge(
            refs.run_doc,
            {
                **self._audit_fields(),
                "status": "running",
                "pid": os.getpid(),
                "started_at": firestore.SERVER_TIMESTAMP,
                "updated_at": firestore.SERVER_TIMESTAMP,
            },
        )

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._refs is None:
            return
        run_doc = self._refs.run_doc

        await guarded_call(
            lambda: _merge(
                run_doc,
                {
                    "status": "stopped",
                    "stop_reason": reason,
                    "stopped_at": firestore.SERVER_TIMESTAMP,
                    "updated_at": firestore.SERVER_TIMESTAMP,
                },
            ),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to mark run stopped",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        refs = self._audit_refs(event="publish_skipped")
        if refs is None:
            return

        payload: dict[str, Any] = {
            **self._audit_fields(),
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
        }
        if details:
            payload["details"] = details

        async def write() -> None:
            if event_id:
                # a stable id makes retried publishes overwrite instead of duplicating
                await _merge(refs.events.document(firestore_doc_id(event_id)), payload)
            else:
                await asyncio.to_thread(refs.events.add, payload)

        await guarded_call(
            write,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
            audit_event=event,
        )

    async def record_settlement(self, *, settlement: dict[str, Any], settlement_id: str) -> None:
        refs = self._audit_refs(event="settlement_persist_skipped")
        if refs is None:
            return

        doc_id = firestore_doc_id(settlement_id)
        payload = {
            **settlement,
            **self._audit_fields(),
            "settlement_id": doc_id,
            "created_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        async def write() -> bool:
            await _merge(refs.settlements.document(doc_id), payload)
            return True

        written = await guarded_call(
            write,
            logger=self._logger,
            event="settlement_persist_failed",
            message="Failed to persist settlement record",
            level="error",
            default=False,
            settlement_id=doc_id,
        )
        if not written:
            return

        await guarded_call(
            lambda: self._bump_settlement_counters(
                refs,
                settlement_id=doc_id,
                status=str(settlement.get("status") or ""),
                net_profit_usd=to_float(settlement.get("estimated_net_profit"), 0.0),
            ),
            logger=self._logger,
            event="settlement_aggregate_update_failed",
            message="Failed to update settlement aggregates",
            level="error",
            settlement_id=doc_id,
        )

    async def _bump_settlement_counters(
        self,
        refs: FirestoreRefs,
        *,
        settlement_id: str,
        status: str,
        net_profit_usd: float,
    ) -> None:
        counters: dict[str, Any] = {
            "resolver_id": self.settings.resolver_id,
            "env": self.settings.resolver_env,
            "settlement_count": firestore.Increment(1),
            "filled_count": firestore.Increment(1 if status == "filled" else 0),
            "estimated_net_profit_usd_total": firestore.Increment(net_profit_usd),
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        day_id = utc_day_id()

        await _merge(
            refs.metrics_doc,
            {
                **counters,
                "run_id": self.settings.resolver_run_id,
                "last_settlement_id": settlement_id,
                "last_status": status,
            },
        )
        await _merge(refs.settlements_daily.document(day_id), {**counters, "day_id": day_id})

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if not self.settings.firestore_enabled or self._watch is not None:
            return
        if self._refs is None:
            raise RuntimeError("StorageGateway is not connected.")

        def report(future: Future[None]) -> None:
            if future.cancelled() or future.exception() is None:
                return
            log_event(
                self._logger,
                level="error",
                event="config_sync_failed",
                message="Runtime config snapshot could not be applied",
                error=str(future.exception()),
            )

        # snapshot callbacks run on a Firestore worker thread
        def on_snapshot(docs: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not docs or loop.is_closed():
                return
            config = (docs[0].to_dict() if docs[0].exists else None) or {}
            future = asyncio.run_coroutine_threadsafe(self._apply_config_snapshot(config, on_update), loop)
            future.add_done_callback(report)

        self._watch = self._refs.config_doc.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Watching runtime config document",
            doc_path=self._config_doc_path,
        )

    async def _apply_config_snapshot(self, config: dict[str, Any], on_update: ConfigUpdateHandler | None) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update is not None:
            await on_update(config)
