from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from resolver.common import log_event

from .types import OrderStore, now_utc


class ExpirySweeper:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: OrderStore,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._logger = logger
        self._store = store
        self._clock = clock

    async def sweep_expired(self) -> int:
        now = self._clock()
        try:
            expired = await self._store.sweep_expired(now)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="expiry_sweep_failed",
                message="Expiry sweep failed; orders stay open until the next tick",
                error=str(error),
            )
            return 0

        if expired:
            log_event(
                self._logger,
                level="info",
                event="expired_orders_swept",
                message="Expired orders swept",
                count=expired,
                now=now.isoformat(),
            )
        return expired
