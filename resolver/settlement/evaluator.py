from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from resolver.common import log_event

from .oracle import PriceOracle
from .types import Order, ProfitabilityResult, RuntimeConfig

NATIVE_DECIMALS = 18

REASON_ZERO_AMOUNT = "zero amount"
REASON_PRICES_UNAVAILABLE = "prices unavailable"
REASON_BELOW_THRESHOLD = "below profit threshold"
REASON_CALCULATION_ERROR = "calculation error"


class ProfitabilityEvaluator:
    """Prices the next fill of an order in USD.

    Sign convention: the resolver is credited with the taker side and debited
    with the maker side, so ``gross = taking_value - making_value``. Gas is a
    static estimate (``estimated_gas_units * max_gas_price_wei``) converted
    with the oracle's price for the native asset; the chain is never queried.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        oracle: PriceOracle,
        native_asset: str,
        token_decimals: dict[str, int] | None = None,
        default_decimals: int = 18,
    ) -> None:
        self._logger = logger
        self._oracle = oracle
        self._native_asset = native_asset.strip().lower()
        self._token_decimals = {key.strip().lower(): value for key, value in (token_decimals or {}).items()}
        self._default_decimals = default_decimals

    def decimals_for(self, asset_id: str) -> int:
        key = asset_id.strip().lower()
        if key == self._native_asset:
            return self._token_decimals.get(key, NATIVE_DECIMALS)
        return self._token_decimals.get(key, self._default_decimals)

    async def evaluate(self, order: Order, runtime_config: RuntimeConfig) -> ProfitabilityResult:
        try:
            return await self._evaluate(order, runtime_config)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="profitability_calculation_failed",
                message="Profitability calculation failed",
                order_hash=order.order_hash,
                error=str(error),
            )
            return ProfitabilityResult(is_profitable=False, reason=REASON_CALCULATION_ERROR)

    async def _evaluate(self, order: Order, runtime_config: RuntimeConfig) -> ProfitabilityResult:
        if order.making_amount <= 0 or order.taking_amount <= 0:
            return ProfitabilityResult(is_profitable=False, reason=REASON_ZERO_AMOUNT)

        making_amount = order.next_fill_making_amount()
        taking_amount = order.taking_amount_for(making_amount)
        if making_amount <= 0 or taking_amount <= 0:
            return ProfitabilityResult(is_profitable=False, reason=REASON_ZERO_AMOUNT)

        maker_quote = await self._oracle.get_price(order.maker_asset)
        if maker_quote is None:
            return ProfitabilityResult(is_profitable=False, reason=REASON_PRICES_UNAVAILABLE)
        taker_quote = await self._oracle.get_price(order.taker_asset)
        if taker_quote is None:
            return ProfitabilityResult(is_profitable=False, reason=REASON_PRICES_UNAVAILABLE)

        if maker_quote.asset_id == self._native_asset:
            native_quote = maker_quote
        elif taker_quote.asset_id == self._native_asset:
            native_quote = taker_quote
        else:
            native_quote = await self._oracle.get_price(self._native_asset)
        if native_quote is None:
            return ProfitabilityResult(is_profitable=False, reason=REASON_PRICES_UNAVAILABLE)

        making_value = Decimal(making_amount).scaleb(-self.decimals_for(order.maker_asset)) * maker_quote.price
        taking_value = Decimal(taking_amount).scaleb(-self.decimals_for(order.taker_asset)) * taker_quote.price
        gross_profit = taking_value - making_value

        gas_cost = Decimal(runtime_config.estimated_gas_cost_wei).scaleb(-NATIVE_DECIMALS) * native_quote.price
        net_profit = gross_profit - gas_cost
        net_profit_native = int((net_profit / native_quote.price).scaleb(NATIVE_DECIMALS))

        is_profitable = net_profit >= runtime_config.min_profit_usd
        return ProfitabilityResult(
            is_profitable=is_profitable,
            estimated_net_profit=net_profit,
            estimated_net_profit_native=net_profit_native,
            reason=None if is_profitable else REASON_BELOW_THRESHOLD,
            making_value=making_value,
            taking_value=taking_value,
            gas_cost=gas_cost,
            making_amount=making_amount,
            taking_amount=taking_amount,
        )
