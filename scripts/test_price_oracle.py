from __future__ import annotations

import logging
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from resolver.settlement.oracle import PriceOracle, _parse_price

ASSET = "0xAAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _mock_session(*, status: int, payload: object) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=str(payload))

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.get = MagicMock(return_value=context)
    return session


class ParsePriceTests(unittest.TestCase):
    def test_single_price_shape(self) -> None:
        self.assertEqual(_parse_price({"price": "1.25"}, "0xabc"), Decimal("1.25"))

    def test_address_keyed_shape(self) -> None:
        self.assertEqual(_parse_price({"0xABC": 2000}, "0xabc"), Decimal("2000"))

    def test_unusable_prices_are_rejected(self) -> None:
        for payload in ({"price": "-1"}, {"price": 0}, {"price": "NaN"}, {"price": "abc"}, {"price": True}, []):
            with self.subTest(payload=payload):
                self.assertIsNone(_parse_price(payload, "0xabc"))


class PriceOracleTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.oracle = PriceOracle(
            logger=logging.getLogger("test.oracle"),
            api_base_url="https://prices.test/",
            api_key="secret",
            ttl_seconds=30.0,
            clock=self.clock,
        )

    async def test_fresh_price_is_served_from_cache(self) -> None:
        self.oracle._fetch_price = AsyncMock(return_value=Decimal("2000"))  # type: ignore[method-assign]

        first = await self.oracle.get_price(ASSET)
        self.clock.now += 10
        second = await self.oracle.get_price(ASSET.lower())

        self.assertIsNotNone(first)
        self.assertEqual(first, second)
        self.assertEqual(first.asset_id, ASSET.lower())
        self.oracle._fetch_price.assert_awaited_once_with(ASSET.lower())

    async def test_stale_price_is_refetched(self) -> None:
        self.oracle._fetch_price = AsyncMock(  # type: ignore[method-assign]
            side_effect=[Decimal("2000"), Decimal("2100")],
        )

        await self.oracle.get_price(ASSET)
        self.clock.now += 31
        refreshed = await self.oracle.get_price(ASSET)

        self.assertEqual(refreshed.price, Decimal("2100"))
        self.assertEqual(self.oracle._fetch_price.await_count, 2)

    async def test_failed_refresh_returns_none_and_keeps_cache(self) -> None:
        self.oracle._fetch_price = AsyncMock(  # type: ignore[method-assign]
            side_effect=[Decimal("2000"), RuntimeError("upstream down")],
        )

        await self.oracle.get_price(ASSET)
        self.clock.now += 60

        with self.assertLogs("test.oracle", level="WARNING") as logs:
            self.assertIsNone(await self.oracle.get_price(ASSET))
        self.assertIn("Price fetch failed", logs.output[0])
        self.assertEqual(self.oracle._cache.get(ASSET.lower()).price, Decimal("2000"))

    async def test_invalid_payload_is_not_cached(self) -> None:
        self.oracle._fetch_price = AsyncMock(return_value=None)  # type: ignore[method-assign]

        self.assertIsNone(await self.oracle.get_price(ASSET))
        self.assertIsNone(self.oracle._cache.get(ASSET.lower()))

    async def test_fetch_builds_endpoint_from_template(self) -> None:
        session = _mock_session(status=200, payload={"price": "1.0001"})
        self.oracle._session = session

        quote = await self.oracle.get_price(ASSET)

        self.assertEqual(quote.price, Decimal("1.0001"))
        session.get.assert_called_once_with(f"https://prices.test/{ASSET.lower()}")

    async def test_custom_path_template(self) -> None:
        oracle = PriceOracle(
            logger=logging.getLogger("test.oracle"),
            api_base_url="https://prices.test",
            api_key="secret",
            path_template="price/{asset}",
        )
        session = _mock_session(status=200, payload={ASSET.lower(): "3.5"})
        oracle._session = session

        quote = await oracle.get_price(ASSET)

        self.assertEqual(quote.price, Decimal("3.5"))
        session.get.assert_called_once_with(f"https://prices.test/price/{ASSET.lower()}")

    async def test_http_error_returns_none(self) -> None:
        self.oracle._session = _mock_session(status=429, payload={"error": "rate limited"})

        self.assertIsNone(await self.oracle.get_price(ASSET))


if __name__ == "__main__":
    unittest.main()
