from __future__ import annotations

import logging
from dataclasses import dataclass

from resolver.common import guarded_call
from resolver.settlement import (
    ChainClient,
    ExpirySweeper,
    PriceOracle,
    ProfitabilityEvaluator,
    SettlementExecutor,
)
from resolver.storage import StorageGateway, StorageSettings

from .settings import AppSettings


@dataclass(slots=True)
class ResolverComponents:
    storage: StorageGateway
    chain: ChainClient
    oracle: PriceOracle
    evaluator: ProfitabilityEvaluator
    sweeper: ExpirySweeper
    executor: SettlementExecutor

    async def close(self, logger: logging.Logger) -> None:
        await guarded_call(
            self.oracle.close,
            logger=logger,
            event="oracle_close_failed",
            message="Failed to close price oracle",
        )
        await guarded_call(
            self.chain.close,
            logger=logger,
            event="chain_close_failed",
            message="Failed to close chain client",
        )
        await guarded_call(
            self.storage.close,
            logger=logger,
            event="storage_close_failed",
            message="Failed to close storage",
        )


def build_components(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
    dry_run: bool | None = None,
) -> ResolverComponents:
    storage = StorageGateway(storage_settings, logger)
    chain = ChainClient(
        logger=logger,
        rpc_url=app_settings.rpc_url,
        private_key=app_settings.private_key,
        chain_id=app_settings.chain_id,
        timeout_seconds=app_settings.rpc_timeout_seconds,
        confirm_poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
    )
    oracle = PriceOracle(
        logger=logger,
        api_base_url=app_settings.price_api_url,
        api_key=app_settings.price_api_key,
        path_template=app_settings.price_api_path,
        ttl_seconds=app_settings.price_cache_ttl_seconds,
        timeout_seconds=app_settings.price_timeout_seconds,
    )
    evaluator = ProfitabilityEvaluator(
        logger=logger,
        oracle=oracle,
        native_asset=app_settings.native_asset_address,
        token_decimals=app_settings.token_decimals,
        default_decimals=app_settings.default_token_decimals,
    )
    executor = SettlementExecutor(
        logger=logger,
        chain=chain,
        store=storage,
        contract_address=app_settings.limit_order_contract,
        dry_run=app_settings.dry_run if dry_run is None else dry_run,
        auto_approve=app_settings.auto_approve_taker_asset,
        events=storage,
    )
    return ResolverComponents(
        storage=storage,
        chain=chain,
        oracle=oracle,
        evaluator=evaluator,
        sweeper=ExpirySweeper(logger=logger, store=storage),
        executor=executor,
    )
