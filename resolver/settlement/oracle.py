from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import aiohttp

from resolver.common import log_event

from .types import PriceQuote


def _parse_price(payload: Any, asset_id: str) -> Decimal | None:
    if not isinstance(payload, dict):
        return None

    raw = payload.get("price")
    if raw is None:
        # the aggregator's batch shape keys prices by asset address
        for key, value in payload.items():
            if str(key).lower() == asset_id:
                raw = value
                break
    if raw is None or isinstance(raw, (bool, dict, list)):
        return None

    try:
        price = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class PriceOracle:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        api_key: str,
        path_template: str = "/{asset}",
        ttl_seconds: float = 30.0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._api_key = api_key
        self._path_template = "/" + path_template.lstrip("/")
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._cache: dict[str, PriceQuote] = {}
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"},
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_price(self, asset_id: str) -> PriceQuote | None:
        key = asset_id.strip().lower()
        cached = self._cache.get(key)
        now = self._clock()
        if cached is not None and now - cached.observed_at < self._ttl_seconds:
            return cached

        try:
            price = await self._fetch_price(key)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="price_fetch_failed",
                message="Price fetch failed",
                asset=key,
                error=str(error),
            )
            return None

        if price is None:
            log_event(
                self._logger,
                level="warning",
                event="price_payload_invalid",
                message="Price source returned no usable price",
                asset=key,
            )
            return None

        quote = PriceQuote(asset_id=key, price=price, observed_at=self._clock())
        self._cache[key] = quote
        return quote

    async def _fetch_price(self, asset_id: str) -> Decimal | None:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Price HTTP session is not initialized.")

        endpoint = self._api_base_url + self._path_template.format(asset=asset_id)
        async with self._session.get(endpoint) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"Price request failed: status={response.status} body={text[:200]}")
            payload = await response.json(content_type=None)

        return _parse_price(payload, asset_id)
