from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from resolver.common import guarded_call, log_event, wait_with_stop
from resolver.settlement import (
    ChainClient,
    ExpirySweeper,
    Order,
    PriceOracle,
    ProfitabilityEvaluator,
    RuntimeConfig,
    SettlementExecutor,
    SettlementOutcome,
)
from resolver.settlement.types import now_utc
from resolver.storage import ConfigUpdateHandler, StorageGateway

from .settings import AppSettings


@dataclass(slots=True)
class TickSummary:
    reconciled: int = 0
    expired: int = 0
    candidates: int = 0
    evaluated: int = 0
    profitable: int = 0
    settled: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    oracle: PriceOracle,
    chain: ChainClient,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            await storage.healthcheck()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await oracle.connect()
            await chain.connect()
            await chain.healthcheck()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await guarded_call(
                oracle.close,
                logger=logger,
                event="bootstrap_oracle_close_failed",
                message="Failed to close price oracle during bootstrap retry",
            )
            await guarded_call(
                chain.close,
                logger=logger,
                event="bootstrap_chain_close_failed",
                message="Failed to close chain client during bootstrap retry",
            )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


class ResolverLoop:
    """Runs one tick immediately, then one per poll interval, never overlapping."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        app_settings: AppSettings,
        storage: StorageGateway,
        sweeper: ExpirySweeper,
        evaluator: ProfitabilityEvaluator,
        executor: SettlementExecutor,
        runtime_defaults: RuntimeConfig,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._logger = logger
        self._app_settings = app_settings
        self._storage = storage
        self._sweeper = sweeper
        self._evaluator = evaluator
        self._executor = executor
        self._runtime_defaults = runtime_defaults
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            return self._task
        if self._task is not None:
            self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        return self._task

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        self.request_stop()
        if self._task is not None:
            await self._task

    async def run_forever(self) -> None:
        await self.start()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._app_settings.poll_interval_seconds
        next_tick = loop.time()

        while not self._stop_event.is_set():
            tick_failed = False
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                tick_failed = True
                log_event(
                    self._logger,
                    level="exception",
                    event="tick_failed",
                    message="Resolver tick failed; next tick is still scheduled",
                    error=str(error),
                )
                await guarded_call(
                    lambda: self._storage.publish_event(
                        level="ERROR",
                        event="tick_failed",
                        message="Resolver tick failed",
                        details={"error": str(error)},
                    ),
                    logger=self._logger,
                    event="tick_failure_publish_failed",
                    message="Failed to publish tick failure",
                )
            finally:
                next_tick += interval
                now = loop.time()
                if next_tick <= now:
                    missed_cycles = int((now - next_tick) / interval) + 1
                    next_tick += missed_cycles * interval

                delay_seconds = max(0.0, next_tick - now)
                if tick_failed:
                    delay_seconds = max(delay_seconds, self._app_settings.error_backoff_seconds)

            await wait_with_stop(self._stop_event, delay_seconds)

        log_event(self._logger, level="info", event="resolver_loop_stopped", message="Resolver loop stopped")

    async def tick(self) -> TickSummary:
        summary = TickSummary()
        await guarded_call(
            self._storage.update_heartbeat,
            logger=self._logger,
            event="heartbeat_failed",
            message="Failed to update heartbeat",
        )
        runtime_config = await self._load_runtime_config()

        # before the sweep, so a fill mined just ahead of expiry still wins the status write
        for order, outcome in await self._executor.reconcile_unconfirmed(runtime_config):
            summary.reconciled += 1
            await self._report_outcome(order, outcome, profit="")

        summary.expired = await self._sweeper.sweep_expired()

        now = self._clock()
        candidates = await self._storage.get_executable_orders(now)
        summary.candidates = len(candidates)

        for order in candidates:
            try:
                await self._process_order(order, runtime_config, summary)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                summary.failed += 1
                log_event(
                    self._logger,
                    level="exception",
                    event="order_processing_failed",
                    message="Order processing failed; continuing with the next order",
                    order_hash=order.order_hash,
                    error=str(error),
                )

        log_event(
            self._logger,
            level="info",
            event="tick_completed",
            message="Resolver tick completed",
            **summary.to_dict(),
        )
        return summary

    async def _load_runtime_config(self) -> RuntimeConfig:
        redis_config = await guarded_call(
            self._storage.get_runtime_config,
            logger=self._logger,
            event="runtime_config_load_failed",
            message="Failed to load runtime config; using defaults",
        )
        if not redis_config:
            return self._runtime_defaults
        return RuntimeConfig.from_redis(redis_config, self._runtime_defaults)

    async def _process_order(self, order: Order, runtime_config: RuntimeConfig, summary: TickSummary) -> None:
        if self._executor.unconfirmed_transaction(order.order_hash) is None:
            next_tranche_at = order.next_tranche_at(runtime_config.tranche_interval_seconds)
            if next_tranche_at is not None and self._clock() < next_tranche_at:
                summary.skipped += 1
                log_event(
                    self._logger,
                    level="info",
                    event="order_skipped",
                    message="Order skipped",
                    order_hash=order.order_hash,
                    reason="tranche interval not elapsed",
                    next_tranche_at=next_tranche_at.isoformat(),
                )
                return

            result = await self._evaluator.evaluate(order, runtime_config)
            summary.evaluated += 1
            if not result.is_profitable:
                summary.skipped += 1
                log_event(
                    self._logger,
                    level="info",
                    event="order_skipped",
                    message="Order skipped",
                    order_hash=order.order_hash,
                    **result.to_dict(),
                )
                return

            summary.profitable += 1
            log_event(
                self._logger,
                level="info",
                event="order_profitable",
                message="Order is profitable",
                order_hash=order.order_hash,
                **result.to_dict(),
            )
            if not runtime_config.trade_enabled:
                log_event(
                    self._logger,
                    level="info",
                    event="opportunity_detected",
                    message="Opportunity detected while trade is disabled",
                    order_hash=order.order_hash,
                )
                return
            profit = str(result.estimated_net_profit)
        else:
            profit = ""

        outcome = await self._executor.settle(order, runtime_config)
        if outcome.success:
            summary.settled += 1
        elif not outcome.dry_run:
            summary.failed += 1
        await self._report_outcome(order, outcome, profit=profit)

    async def _report_outcome(self, order: Order, outcome: SettlementOutcome, *, profit: str) -> None:
        details = {"order_hash": order.order_hash, "estimated_net_profit": profit, **outcome.to_dict()}
        await guarded_call(
            lambda: self._storage.publish_event(
                level="INFO" if outcome.success or outcome.dry_run else "ERROR",
                event="settlement_attempt",
                message="Settlement attempted",
                details=details,
            ),
            logger=self._logger,
            event="settlement_publish_failed",
            message="Failed to publish settlement event",
            order_hash=order.order_hash,
        )
        if outcome.success and outcome.transaction_id:
            await guarded_call(
                lambda: self._storage.record_settlement(
                    settlement={**details, "maker_asset": order.maker_asset, "taker_asset": order.taker_asset},
                    settlement_id=f"{order.order_hash}-{outcome.transaction_id}",
                ),
                logger=self._logger,
                event="settlement_record_failed",
                message="Failed to record settlement",
                order_hash=order.order_hash,
            )
