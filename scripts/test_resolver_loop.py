from __future__ import annotations

import asyncio
import logging
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from resolver.runtime import AppSettings, ResolverLoop, bootstrap_dependencies
from resolver.settlement.types import (
    Order,
    ProfitabilityResult,
    RuntimeConfig,
    SettlementErrorKind,
    SettlementOutcome,
)

NOW = datetime(2026, 7, 1, 9, 0, tzinfo=timezone.utc)


def _make_order(order_hash: str, **overrides: object) -> Order:
    fields: dict[str, object] = {
        "order_hash": order_hash,
        "salt": 1,
        "maker_asset": "0x2222222222222222222222222222222222222222",
        "taker_asset": "0x3333333333333333333333333333333333333333",
        "making_amount": 100,
        "taking_amount": 200,
        "maker_address": "0x1111111111111111111111111111111111111111",
        "expires_at": NOW + timedelta(hours=1),
        "signature": b"\x01" * 65,
        "traits": b"",
        "created_at": NOW - timedelta(hours=1),
        "updated_at": NOW - timedelta(hours=1),
    }
    fields.update(overrides)
    return Order(**fields)  # type: ignore[arg-type]


def _profitable() -> ProfitabilityResult:
    return ProfitabilityResult(is_profitable=True, estimated_net_profit=Decimal("18"))


def _runtime_defaults() -> RuntimeConfig:
    return RuntimeConfig(
        min_profit_usd=Decimal("1"),
        max_gas_price_wei=100,
        max_priority_fee_wei=10,
        estimated_gas_units=200_000,
        settlement_gas_limit=800_000,
        min_native_reserve_wei=0,
        confirmation_timeout_seconds=30.0,
        tranche_interval_seconds=1800.0,
        simulate_before_submit=True,
        trade_enabled=True,
    )


class ResolverLoopTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.calls: list[str] = []
        self.orders: list[Order] = []
        self.reconciled: list[tuple[Order, SettlementOutcome]] = []

        def sweep() -> int:
            self.calls.append("sweep")
            return 0

        def fetch(now: datetime) -> list[Order]:
            self.calls.append("fetch")
            return list(self.orders)

        def reconcile(runtime_config: RuntimeConfig) -> list[tuple[Order, SettlementOutcome]]:
            self.calls.append("reconcile")
            return list(self.reconciled)

        self.storage = MagicMock()
        self.storage.update_heartbeat = AsyncMock()
        self.storage.get_runtime_config = AsyncMock(return_value={})
        self.storage.get_executable_orders = AsyncMock(side_effect=fetch)
        self.storage.publish_event = AsyncMock()
        self.storage.record_settlement = AsyncMock()

        self.sweeper = MagicMock()
        self.sweeper.sweep_expired = AsyncMock(side_effect=sweep)

        self.evaluator = MagicMock()
        self.evaluator.evaluate = AsyncMock(return_value=_profitable())

        self.executor = MagicMock()
        self.executor.unconfirmed_transaction = MagicMock(return_value=None)
        self.executor.reconcile_unconfirmed = AsyncMock(side_effect=reconcile)
        self.executor.settle = AsyncMock(return_value=SettlementOutcome(success=True, transaction_id="0xtx"))

        self.loop = ResolverLoop(
            logger=logging.getLogger("test.loop"),
            app_settings=AppSettings(
                private_key="key",
                rpc_url="https://rpc.test",
                price_api_key="price-key",
                poll_interval_seconds=1.0,
                error_backoff_seconds=1.0,
            ),
            storage=self.storage,
            sweeper=self.sweeper,
            evaluator=self.evaluator,
            executor=self.executor,
            runtime_defaults=_runtime_defaults(),
            clock=lambda: NOW,
        )

    async def test_tick_sweeps_before_fetching_candidates(self) -> None:
        self.orders = [_make_order("0xa")]

        summary = await self.loop.tick()

        self.assertEqual(self.calls, ["reconcile", "sweep", "fetch"])
        self.storage.get_executable_orders.assert_awaited_once_with(NOW)
        self.assertEqual((summary.candidates, summary.profitable, summary.settled), (1, 1, 1))
        self.storage.record_settlement.assert_awaited_once()
        self.assertEqual(self.storage.record_settlement.await_args.kwargs["settlement_id"], "0xa-0xtx")

    async def test_one_failing_order_does_not_abort_the_tick(self) -> None:
        self.orders = [_make_order("0xa"), _make_order("0xb")]
        self.evaluator.evaluate.side_effect = [RuntimeError("boom"), _profitable()]

        summary = await self.loop.tick()

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.settled, 1)
        self.executor.settle.assert_awaited_once()
        self.assertEqual(self.executor.settle.await_args.args[0].order_hash, "0xb")

    async def test_unprofitable_order_is_skipped(self) -> None:
        self.orders = [_make_order("0xa")]
        self.evaluator.evaluate.return_value = ProfitabilityResult(
            is_profitable=False,
            reason="below profit threshold",
        )

        summary = await self.loop.tick()

        self.assertEqual(summary.skipped, 1)
        self.executor.settle.assert_not_awaited()

    async def test_trade_disabled_only_reports_opportunities(self) -> None:
        self.orders = [_make_order("0xa")]
        self.storage.get_runtime_config.return_value = {"trade_enabled": "0"}

        summary = await self.loop.tick()

        self.assertEqual(summary.profitable, 1)
        self.executor.settle.assert_not_awaited()

    async def test_tranche_waits_for_interval(self) -> None:
        self.orders = [
            _make_order(
                "0xa",
                number_of_orders=4,
                filled_making_amount=25,
                status="partiallyFilled",
                last_settlement_at=NOW - timedelta(minutes=10),
            )
        ]

        summary = await self.loop.tick()

        self.assertEqual(summary.skipped, 1)
        self.evaluator.evaluate.assert_not_awaited()
        self.executor.settle.assert_not_awaited()

    async def test_unconfirmed_submission_is_rechecked_without_evaluation(self) -> None:
        self.orders = [_make_order("0xa")]
        self.executor.unconfirmed_transaction.return_value = "0xpending"
        self.executor.settle.return_value = SettlementOutcome(
            success=False,
            transaction_id="0xpending",
            error_kind=SettlementErrorKind.CONFIRMATION_TIMEOUT,
        )

        summary = await self.loop.tick()

        self.evaluator.evaluate.assert_not_awaited()
        self.executor.settle.assert_awaited_once()
        self.assertEqual(summary.failed, 1)
        self.storage.record_settlement.assert_not_awaited()

    async def test_late_fill_of_swept_order_is_recorded_before_the_sweep(self) -> None:
        swept = _make_order("0xgone", expires_at=NOW - timedelta(minutes=1))
        self.reconciled = [
            (swept, SettlementOutcome(success=True, transaction_id="0xlate", status="filled", store_updated=False)),
        ]

        summary = await self.loop.tick()

        self.assertEqual(self.calls, ["reconcile", "sweep", "fetch"])
        self.assertEqual(summary.reconciled, 1)
        self.executor.reconcile_unconfirmed.assert_awaited_once_with(_runtime_defaults())
        self.executor.settle.assert_not_awaited()
        self.storage.record_settlement.assert_awaited_once()
        self.assertEqual(self.storage.record_settlement.await_args.kwargs["settlement_id"], "0xgone-0xlate")
        details = self.storage.publish_event.await_args.kwargs["details"]
        self.assertFalse(details["store_updated"])

    async def test_dry_run_outcome_is_not_a_failure(self) -> None:
        self.orders = [_make_order("0xa")]
        self.executor.settle.return_value = SettlementOutcome(success=False, dry_run=True, reason="dry run")

        summary = await self.loop.tick()

        self.assertEqual((summary.settled, summary.failed), (0, 0))

    async def test_start_is_idempotent_and_stop_waits_for_the_loop(self) -> None:
        ticked = asyncio.Event()
        self.storage.update_heartbeat.side_effect = lambda: ticked.set()

        first = self.loop.start()
        second = self.loop.start()
        await asyncio.wait_for(ticked.wait(), timeout=1.0)
        await self.loop.stop()

        self.assertIs(first, second)
        self.assertTrue(first.done())
        self.assertFalse(self.loop.running)
        self.assertEqual(self.calls.count("sweep"), 1)

    async def test_failed_tick_is_reported_and_loop_keeps_running(self) -> None:
        failed = asyncio.Event()

        def fetch(now: datetime) -> list[Order]:
            failed.set()
            raise ConnectionError("redis down")

        self.storage.get_executable_orders.side_effect = fetch

        self.loop.start()
        await asyncio.wait_for(failed.wait(), timeout=1.0)
        self.assertTrue(self.loop.running)
        await self.loop.stop()

        events = [call.kwargs["event"] for call in self.storage.publish_event.await_args_list]
        self.assertIn("tick_failed", events)


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.storage = MagicMock()
        self.storage.connect = AsyncMock()
        self.storage.healthcheck = AsyncMock()
        self.storage.start_config_listener = MagicMock()
        self.storage.publish_event = AsyncMock()
        self.storage.close = AsyncMock()
        self.oracle = MagicMock()
        self.oracle.connect = AsyncMock()
        self.oracle.close = AsyncMock()
        self.chain = MagicMock()
        self.chain.connect = AsyncMock()
        self.chain.healthcheck = AsyncMock()
        self.chain.close = AsyncMock()
        self.stop_event = asyncio.Event()

    async def _bootstrap(self) -> None:
        await bootstrap_dependencies(
            logger=logging.getLogger("test.bootstrap"),
            stop_event=self.stop_event,
            app_settings=AppSettings(
                private_key="key",
                rpc_url="https://rpc.test",
                price_api_key="price-key",
                error_backoff_seconds=0.01,
            ),
            storage=self.storage,
            oracle=self.oracle,
            chain=self.chain,
            config_listener_loop=asyncio.get_running_loop(),
            on_config_update=AsyncMock(),
        )

    async def test_storage_and_chain_are_health_checked(self) -> None:
        await self._bootstrap()

        self.storage.healthcheck.assert_awaited_once()
        self.chain.healthcheck.assert_awaited_once()
        self.storage.start_config_listener.assert_called_once()

    async def test_failed_storage_healthcheck_is_retried(self) -> None:
        self.storage.healthcheck.side_effect = [ConnectionError("redis down"), None]

        with self.assertLogs("test.bootstrap", level="ERROR"):
            await self._bootstrap()

        self.assertEqual(self.storage.connect.await_count, 2)
        self.storage.close.assert_awaited_once()
        self.storage.start_config_listener.assert_called_once()


if __name__ == "__main__":
    unittest.main()
