from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from resolver.common import guarded_call, log_event
from resolver.runtime import (
    AppSettings,
    ConfigurationError,
    ResolverLoop,
    bootstrap_dependencies,
    build_components,
    setup_logger,
)
from resolver.settlement import RuntimeConfig
from resolver.storage import StorageSettings


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    try:
        app_settings = AppSettings.from_env()
        storage_settings = StorageSettings.from_env()
        components = build_components(
            logger=logger,
            app_settings=app_settings,
            storage_settings=storage_settings,
        )
    except (ConfigurationError, ValueError) as error:
        log_event(
            logger,
            level="critical",
            event="configuration_invalid",
            message="Resolver configuration is invalid",
            error=str(error),
        )
        return 1

    runtime_defaults = RuntimeConfig.from_env_defaults()
    storage = components.storage
    resolver_loop = ResolverLoop(
        logger=logger,
        app_settings=app_settings,
        storage=storage,
        sweeper=components.sweeper,
        evaluator=components.evaluator,
        executor=components.executor,
        runtime_defaults=runtime_defaults,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()
        resolver_loop.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            oracle=components.oracle,
            chain=components.chain,
            config_listener_loop=loop,
            on_config_update=on_config_update,
        )
    except RuntimeError:
        log_event(
            logger,
            level="info",
            event="shutdown_before_start",
            message="Shutdown requested before dependencies were initialized",
        )
        return 0

    log_event(
        logger,
        level="info",
        event="resolver_started",
        message="Resolver started",
        wallet=components.chain.address,
        chain_id=app_settings.chain_id,
        contract=app_settings.limit_order_contract,
        dry_run=app_settings.dry_run,
        poll_interval_seconds=app_settings.poll_interval_seconds,
    )
    await storage.publish_event(
        level="INFO",
        event="resolver_started",
        message="Resolver process started",
        details={
            "wallet": components.chain.address,
            "dry_run": app_settings.dry_run,
            "poll_interval_seconds": app_settings.poll_interval_seconds,
            "runtime_defaults": runtime_defaults.to_dict(),
        },
    )

    try:
        await resolver_loop.run_forever()
    finally:
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="resolver_stopped",
                message="Resolver process stopped gracefully",
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish shutdown event",
        )
        await storage.mark_run_stopped(reason="signal" if stop_event.is_set() else "loop_exit")
        await components.close(logger)

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
