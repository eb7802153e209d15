from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from resolver.common import guarded_call, log_event

from .chain import ChainClient, GasParams, RpcMethodError, TransactionReceipt
from .protocol import FillCall, MalformedOrderError, build_fill_call, decode_revert_reason, encode_approve
from .types import (
    Order,
    OrderStatus,
    OrderStore,
    RuntimeConfig,
    SettlementErrorKind,
    SettlementOutcome,
    now_utc,
)


class EventPublisher(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...


@dataclass(slots=True, frozen=True)
class PendingSubmission:
    """A settlement transaction that was sent but not seen confirmed."""

    order: Order
    tx_hash: str
    fill: FillCall


def _failure(kind: SettlementErrorKind, reason: str, *, transaction_id: str | None = None) -> SettlementOutcome:
    return SettlementOutcome(success=False, transaction_id=transaction_id, error_kind=kind, reason=reason)


class SettlementExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: ChainClient,
        store: OrderStore,
        contract_address: str,
        dry_run: bool = True,
        auto_approve: bool = True,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._logger = logger
        self._chain = chain
        self._store = store
        self._contract_address = contract_address
        self._dry_run = dry_run
        self._auto_approve = auto_approve
        self._events = events
        self._clock = clock
        # submissions whose confirmation was never observed, keyed by order hash
        self._unconfirmed: dict[str, PendingSubmission] = {}
        # taker asset -> approval tx hash whose confirmation was never observed
        self._pending_approvals: dict[str, str] = {}

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def unconfirmed_transaction(self, order_hash: str) -> str | None:
        pending = self._unconfirmed.get(order_hash)
        return pending.tx_hash if pending else None

    async def settle(self, order: Order, runtime_config: RuntimeConfig) -> SettlementOutcome:
        try:
            outcome = await self._settle(order, runtime_config)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            outcome = _failure(SettlementErrorKind.UNKNOWN, str(error))

        self._log_outcome(order, outcome)
        return outcome

    async def reconcile_unconfirmed(self, runtime_config: RuntimeConfig) -> list[tuple[Order, SettlementOutcome]]:
        """Recheck every submission whose confirmation was never observed.

        This covers orders that have since left the executable set, for example
        swept as expired. Mined settlements are recorded and returned. Entries
        still without a receipt after the order's expiry plus the confirmation
        timeout are dropped, since no later inclusion can succeed.
        """
        settled: list[tuple[Order, SettlementOutcome]] = []
        for order_hash, pending in list(self._unconfirmed.items()):
            outcome = await self._check_pending(pending.order, pending)
            if outcome is None:
                continue
            if outcome.success:
                self._log_outcome(pending.order, outcome)
                settled.append((pending.order, outcome))
                continue

            give_up_at = pending.order.expires_at + timedelta(seconds=runtime_config.confirmation_timeout_seconds)
            if self._clock() > give_up_at:
                self._unconfirmed.pop(order_hash, None)
                log_event(
                    self._logger,
                    level="warning",
                    event="unconfirmed_submission_abandoned",
                    message="Submission never confirmed and its order has expired; no longer tracked",
                    order_hash=order_hash,
                    tx_hash=pending.tx_hash,
                    expires_at=pending.order.expires_at.isoformat(),
                )
        return settled

    def _log_outcome(self, order: Order, outcome: SettlementOutcome) -> None:
        log_event(
            self._logger,
            level="info" if outcome.success or outcome.dry_run else "error",
            event="settlement_outcome",
            message="Settlement finished" if outcome.success else "Settlement not completed",
            order_hash=order.order_hash,
            **outcome.to_dict(),
        )

    async def _settle(self, order: Order, runtime_config: RuntimeConfig) -> SettlementOutcome:
        pending = self._unconfirmed.get(order.order_hash)
        if pending is not None:
            resumed = await self._check_pending(order, pending)
            if resumed is not None:
                return resumed

        balance = await self._chain.get_balance()
        if balance < runtime_config.min_native_reserve_wei:
            return _failure(
                SettlementErrorKind.INSUFFICIENT_BALANCE,
                f"native balance {balance} is below reserve {runtime_config.min_native_reserve_wei}",
            )

        try:
            fill = build_fill_call(order)
        except MalformedOrderError as error:
            return _failure(SettlementErrorKind.MALFORMED_ORDER, str(error))

        gas = GasParams(
            gas_limit=runtime_config.settlement_gas_limit,
            max_fee_per_gas=runtime_config.max_gas_price_wei,
            max_priority_fee_per_gas=runtime_config.max_priority_fee_wei,
        )

        funding_failure = await self._ensure_taker_funding(order, fill, gas, runtime_config)
        if funding_failure is not None:
            return funding_failure

        if runtime_config.simulate_before_submit:
            simulation_failure = await self._simulate(order, fill, runtime_config)
            if simulation_failure is not None:
                return simulation_failure

        if self._dry_run:
            log_event(
                self._logger,
                level="info",
                event="settlement_dry_run",
                message="Dry run: settlement call built and not submitted",
                order_hash=order.order_hash,
                function=fill.function,
                amount=str(fill.amount),
                making_amount=str(fill.making_amount),
                taking_amount=str(fill.taking_amount),
            )
            return SettlementOutcome(success=False, dry_run=True, reason="dry run")

        try:
            tx_hash = await self._chain.submit(self._contract_address, fill.call_data, gas)
        except RpcMethodError as error:
            if error.is_insufficient_funds:
                return _failure(SettlementErrorKind.INSUFFICIENT_BALANCE, error.rpc_message)
            return _failure(SettlementErrorKind.UNKNOWN, str(error))

        return await self._await_settlement(order, fill, tx_hash, runtime_config)

    async def _await_settlement(
        self,
        order: Order,
        fill: FillCall,
        tx_hash: str,
        runtime_config: RuntimeConfig,
    ) -> SettlementOutcome:
        try:
            receipt = await self._chain.wait_for_confirmation(tx_hash, runtime_config.confirmation_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            # the transaction is already out; later ticks recheck it instead of resending
            self._unconfirmed[order.order_hash] = PendingSubmission(order, tx_hash, fill)
            return _failure(SettlementErrorKind.CONFIRMATION_TIMEOUT, str(error), transaction_id=tx_hash)

        self._unconfirmed.pop(order.order_hash, None)
        if not receipt.succeeded:
            return _failure(
                SettlementErrorKind.TRANSACTION_FAILED,
                f"transaction reverted in block {receipt.block_number}",
                transaction_id=tx_hash,
            )

        return await self._record_settlement(order, fill, receipt)

    async def _check_pending(self, order: Order, pending: PendingSubmission) -> SettlementOutcome | None:
        """Outcome of an earlier submission, or None once it reverted and the order may be retried."""
        tx_hash = pending.tx_hash
        try:
            receipt = await self._chain.get_transaction_receipt(tx_hash)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return _failure(
                SettlementErrorKind.CONFIRMATION_TIMEOUT,
                f"earlier submission is still unresolved: {error}",
                transaction_id=tx_hash,
            )

        if receipt is None:
            return _failure(
                SettlementErrorKind.CONFIRMATION_TIMEOUT,
                "earlier submission is still pending",
                transaction_id=tx_hash,
            )

        self._unconfirmed.pop(order.order_hash, None)
        if receipt.succeeded:
            log_event(
                self._logger,
                level="info",
                event="settlement_confirmed_late",
                message="Earlier submission confirmed after its wait timed out",
                order_hash=order.order_hash,
                tx_hash=tx_hash,
            )
            return await self._record_settlement(order, pending.fill, receipt)

        log_event(
            self._logger,
            level="warning",
            event="settlement_reverted_late",
            message="Earlier submission reverted; order is eligible again",
            order_hash=order.order_hash,
            tx_hash=tx_hash,
        )
        return None

    async def _ensure_taker_funding(
        self,
        order: Order,
        fill: FillCall,
        gas: GasParams,
        runtime_config: RuntimeConfig,
    ) -> SettlementOutcome | None:
        taker_balance = await guarded_call(
            lambda: self._chain.erc20_balance_of(order.taker_asset),
            logger=self._logger,
            event="taker_balance_check_failed",
            message="Taker asset balance check failed; continuing",
            order_hash=order.order_hash,
        )
        if taker_balance is not None and taker_balance < fill.taking_amount:
            return _failure(
                SettlementErrorKind.INSUFFICIENT_BALANCE,
                f"taker asset balance {taker_balance} is below {fill.taking_amount}",
            )

        if not self._auto_approve:
            return None

        allowance = await guarded_call(
            lambda: self._chain.erc20_allowance(order.taker_asset, self._contract_address),
            logger=self._logger,
            event="allowance_check_failed",
            message="Taker asset allowance check failed; continuing",
            order_hash=order.order_hash,
        )
        token = order.taker_asset.lower()
        if allowance is None:
            return None
        if allowance >= fill.taking_amount:
            self._pending_approvals.pop(token, None)
            return None

        if self._dry_run:
            log_event(
                self._logger,
                level="info",
                event="approval_required",
                message="Dry run: taker asset allowance is short and was not topped up",
                order_hash=order.order_hash,
                allowance=str(allowance),
                required=str(fill.taking_amount),
            )
            return None

        earlier_approval = self._pending_approvals.get(token)
        if earlier_approval is not None:
            receipt = await guarded_call(
                lambda: self._chain.get_transaction_receipt(earlier_approval),
                logger=self._logger,
                event="approval_receipt_check_failed",
                message="Earlier approval receipt lookup failed",
                order_hash=order.order_hash,
                tx_hash=earlier_approval,
            )
            if receipt is None:
                return _failure(
                    SettlementErrorKind.CONFIRMATION_TIMEOUT,
                    "earlier approval is still pending",
                    transaction_id=earlier_approval,
                )

            del self._pending_approvals[token]
            if receipt.succeeded:
                self._log_approved(order, earlier_approval)
                return None
            log_event(
                self._logger,
                level="warning",
                event="approval_reverted_late",
                message="Earlier approval reverted; approving again",
                order_hash=order.order_hash,
                tx_hash=earlier_approval,
            )

        try:
            approval_tx = await self._chain.submit(order.taker_asset, encode_approve(self._contract_address), gas)
        except RpcMethodError as error:
            if error.is_insufficient_funds:
                return _failure(SettlementErrorKind.INSUFFICIENT_BALANCE, error.rpc_message)
            return _failure(SettlementErrorKind.UNKNOWN, f"approval submission failed: {error}")

        try:
            receipt = await self._chain.wait_for_confirmation(approval_tx, runtime_config.confirmation_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._pending_approvals[token] = approval_tx
            return _failure(SettlementErrorKind.CONFIRMATION_TIMEOUT, str(error), transaction_id=approval_tx)
        if not receipt.succeeded:
            return _failure(
                SettlementErrorKind.TRANSACTION_FAILED,
                "approval transaction reverted",
                transaction_id=approval_tx,
            )

        self._log_approved(order, approval_tx)
        return None

    def _log_approved(self, order: Order, approval_tx: str) -> None:
        log_event(
            self._logger,
            level="info",
            event="taker_asset_approved",
            message="Taker asset allowance topped up",
            order_hash=order.order_hash,
            token=order.taker_asset,
            tx_hash=approval_tx,
        )

    async def _simulate(
        self,
        order: Order,
        fill: FillCall,
        runtime_config: RuntimeConfig,
    ) -> SettlementOutcome | None:
        try:
            await self._chain.call(
                self._contract_address,
                fill.call_data,
                gas=runtime_config.settlement_gas_limit,
            )
        except asyncio.CancelledError:
            raise
        except RpcMethodError as error:
            if error.is_execution_revert:
                return _failure(SettlementErrorKind.INVALID_ON_CHAIN, decode_revert_reason(error.revert_data))
            self._log_simulation_unavailable(order, error)
        except Exception as error:
            self._log_simulation_unavailable(order, error)
        return None

    def _log_simulation_unavailable(self, order: Order, error: Exception) -> None:
        log_event(
            self._logger,
            level="warning",
            event="simulation_unavailable",
            message="Pre-submission simulation failed; submitting anyway",
            order_hash=order.order_hash,
            error=str(error),
        )

    async def _record_settlement(
        self,
        order: Order,
        fill: FillCall,
        receipt: TransactionReceipt,
    ) -> SettlementOutcome:
        tx_hash = receipt.transaction_hash
        settled_at = await guarded_call(
            lambda: self._chain.get_block_timestamp(receipt.block_number),
            logger=self._logger,
            event="block_timestamp_unavailable",
            message="Block timestamp lookup failed; using local time",
            tx_hash=tx_hash,
        )
        if settled_at is None:
            settled_at = self._clock()

        filled_making_amount = order.filled_making_amount + fill.making_amount
        if filled_making_amount >= order.making_amount:
            to_status = OrderStatus.FILLED.value
        else:
            to_status = OrderStatus.PARTIALLY_FILLED.value

        extra = {
            "filled_making_amount": str(filled_making_amount),
            "last_settlement_at": settled_at.isoformat(),
            "last_settlement_tx": tx_hash,
        }

        store_error = ""
        try:
            updated = await self._store.transition_status(order.order_hash, [order.status], to_status, extra)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            updated = 0
            store_error = str(error)

        if not updated:
            await self._report_reconciliation(order, tx_hash, to_status, store_error)

        return SettlementOutcome(
            success=True,
            transaction_id=tx_hash,
            status=to_status,
            filled_making_amount=filled_making_amount,
            store_updated=bool(updated),
        )

    async def _report_reconciliation(self, order: Order, tx_hash: str, to_status: str, store_error: str) -> None:
        details = {
            "order_hash": order.order_hash,
            "tx_hash": tx_hash,
            "expected_status": order.status,
            "target_status": to_status,
            "store_error": store_error or "status precondition not met",
        }
        log_event(
            self._logger,
            level="critical",
            event="settlement_reconciliation_required",
            message="Settlement confirmed on-chain but the order store was not updated",
            **details,
        )
        if self._events is None:
            return
        await guarded_call(
            lambda: self._events.publish_event(
                level="CRITICAL",
                event="settlement_reconciliation_required",
                message="Settlement confirmed on-chain but the order store was not updated",
                details=details,
                event_id=f"reconcile-{order.order_hash}-{tx_hash}",
            ),
            logger=self._logger,
            event="reconciliation_publish_failed",
            message="Failed to publish reconciliation event",
            level="error",
            order_hash=order.order_hash,
            tx_hash=tx_hash,
        )
