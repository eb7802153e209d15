from __future__ import annotations

import asyncio
import logging
import os

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from resolver.common import guarded_call, log_event

from .firestore_ops import FirestoreRefs, FirestoreStorageOps, normalize_doc_path
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Order store on Redis plus the Firestore audit and config sink."""

    def __init__(
        self,
        settings: StorageSettings,
        logger: logging.Logger,
        *,
        redis_client: Redis | None = None,
    ) -> None:
        self.settings = settings
        self._logger = logger
        self._redis = redis_client
        self._firestore: firestore.Client | None = None
        self._refs: FirestoreRefs | None = None
        self._watch = None
        self._config_doc_path = settings.firestore_config_doc

    async def connect(self) -> None:
        await self._connect_redis()
        if not self.settings.firestore_enabled:
            log_event(
                self._logger,
                level="info",
                event="firestore_disabled",
                message="Firestore sink disabled; runtime config comes from Redis only",
            )
            return
        await self._connect_firestore()

    async def _connect_redis(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(self._logger, level="info", event="redis_connected", message="Connected to Redis")

    async def _connect_firestore(self) -> None:
        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._config_doc_path, normalized = normalize_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if normalized:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC named a collection; using its runtime document",
                doc_path=self._config_doc_path,
            )

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._refs = FirestoreRefs.build(self._firestore, self.settings, self._config_doc_path)
        await self.open_run()
        await self._load_startup_config(self._refs)

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            doc_path=self._config_doc_path,
            run_id=self.settings.resolver_run_id,
        )

    async def _load_startup_config(self, refs: FirestoreRefs) -> None:
        snapshot = await asyncio.to_thread(refs.config_doc.get)
        if not snapshot.exists:
            log_event(
                self._logger,
                level="warning",
                event="config_missing",
                message="Runtime config document does not exist; using defaults",
                doc_path=self._config_doc_path,
            )
            return
        await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")

    async def healthcheck(self) -> None:
        await self._require_redis().ping()
        if not self.settings.firestore_enabled:
            return
        if self._refs is None:
            raise RuntimeError("Firestore sink is enabled but not connected.")
        await asyncio.to_thread(self._refs.config_doc.get)

    async def close(self) -> None:
        watch, self._watch = self._watch, None
        if watch is not None:
            await guarded_call(
                watch.unsubscribe,
                logger=self._logger,
                event="config_watch_close_failed",
                message="Failed to stop the runtime config watcher",
            )

        redis_client, self._redis = self._redis, None
        if redis_client is not None:
            await redis_client.aclose()

        self._refs = None
        self._firestore = None
