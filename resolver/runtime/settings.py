from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from eth_utils import is_address

from resolver.common import to_bool, to_float, to_int

DEFAULT_LIMIT_ORDER_CONTRACT = "0x111111125421ca6dc452d289314280a0f8842a65"
DEFAULT_NATIVE_ASSET = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
PRICE_API_BASE = "https://api.1inch.dev/price/v1.1"
REQUIRED_ENV = ("RESOLVER_PRIVATE_KEY", "RPC_URL", "PRICE_API_KEY")


class ConfigurationError(ValueError):
    pass


def _parse_token_decimals(raw: str | None) -> dict[str, int]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"TOKEN_DECIMALS must be a JSON object: {error}") from error
    if not isinstance(parsed, dict):
        raise ConfigurationError("TOKEN_DECIMALS must be a JSON object of address -> decimals.")

    decimals: dict[str, int] = {}
    for address, value in parsed.items():
        parsed_value = to_int(value, -1)
        if not is_address(str(address)) or parsed_value < 0 or parsed_value > 77:
            raise ConfigurationError(f"TOKEN_DECIMALS entry is invalid: {address}={value}")
        decimals[str(address).lower()] = parsed_value
    return decimals


def _require_address(name: str, value: str) -> str:
    if not is_address(value):
        raise ConfigurationError(f"{name} is not a valid address: {value}")
    return value.lower()


@dataclass(slots=True)
class AppSettings:
    private_key: str
    rpc_url: str
    price_api_key: str
    poll_interval_seconds: float = 30.0
    error_backoff_seconds: float = 5.0
    chain_id: int = 42161
    limit_order_contract: str = DEFAULT_LIMIT_ORDER_CONTRACT
    native_asset_address: str = DEFAULT_NATIVE_ASSET
    price_api_url: str = f"{PRICE_API_BASE}/42161"
    price_api_path: str = "/{asset}"
    price_cache_ttl_seconds: float = 30.0
    price_timeout_seconds: float = 5.0
    token_decimals: dict[str, int] = field(default_factory=dict)
    default_token_decimals: int = 18
    rpc_timeout_seconds: float = 10.0
    confirm_poll_interval_seconds: float = 2.0
    dry_run: bool = True
    auto_approve_taker_asset: bool = True

    @classmethod
    def from_env(cls) -> "AppSettings":
        missing = [name for name in REQUIRED_ENV if not os.getenv(name, "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        chain_id = max(1, to_int(os.getenv("CHAIN_ID"), 42161))
        return cls(
            private_key=os.getenv("RESOLVER_PRIVATE_KEY", "").strip(),
            rpc_url=os.getenv("RPC_URL", "").strip(),
            price_api_key=os.getenv("PRICE_API_KEY", "").strip(),
            poll_interval_seconds=max(1.0, to_float(os.getenv("POLL_INTERVAL_SECONDS"), 30.0)),
            error_backoff_seconds=max(0.5, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 5.0)),
            chain_id=chain_id,
            limit_order_contract=_require_address(
                "LIMIT_ORDER_CONTRACT",
                os.getenv("LIMIT_ORDER_CONTRACT", DEFAULT_LIMIT_ORDER_CONTRACT).strip(),
            ),
            native_asset_address=_require_address(
                "NATIVE_ASSET_ADDRESS",
                os.getenv("NATIVE_ASSET_ADDRESS", DEFAULT_NATIVE_ASSET).strip(),
            ),
            price_api_url=os.getenv("PRICE_API_URL", "").strip() or f"{PRICE_API_BASE}/{chain_id}",
            price_api_path=os.getenv("PRICE_API_PATH", "").strip() or "/{asset}",
            price_cache_ttl_seconds=max(0.0, to_float(os.getenv("PRICE_CACHE_TTL_SECONDS"), 30.0)),
            price_timeout_seconds=max(0.5, to_float(os.getenv("PRICE_TIMEOUT_SECONDS"), 5.0)),
            token_decimals=_parse_token_decimals(os.getenv("TOKEN_DECIMALS")),
            default_token_decimals=max(0, to_int(os.getenv("DEFAULT_TOKEN_DECIMALS"), 18)),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 2.0),
            ),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            auto_approve_taker_asset=to_bool(os.getenv("AUTO_APPROVE_TAKER_ASSET"), True),
        )
