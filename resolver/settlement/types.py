from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, Sequence

from resolver.common import to_bool, to_float, to_int

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partiallyFilled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_STATUSES: frozenset[str] = frozenset({OrderStatus.PENDING.value, OrderStatus.PARTIALLY_FILLED.value})
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {OrderStatus.FILLED.value, OrderStatus.CANCELLED.value, OrderStatus.EXPIRED.value}
)


class SettlementErrorKind(str, Enum):
    INSUFFICIENT_BALANCE = "insufficientBalance"
    MALFORMED_ORDER = "malformedOrder"
    INVALID_ON_CHAIN = "invalidOnChain"
    TRANSACTION_FAILED = "transactionFailed"
    CONFIRMATION_TIMEOUT = "confirmationTimeout"
    UNKNOWN = "unknown"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    text = str(raw).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def hex_to_bytes(raw: Any) -> bytes:
    if raw is None:
        return b""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    text = str(raw).strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    return bytes.fromhex(text)


def bytes_to_hex(value: bytes) -> str:
    return f"0x{value.hex()}"


@dataclass(slots=True, frozen=True)
class Order:
    order_hash: str
    salt: int
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_address: str
    expires_at: datetime
    signature: bytes
    traits: bytes
    extension: bytes = b""
    receiver: str = ZERO_ADDRESS
    status: str = OrderStatus.PENDING.value
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    last_settlement_at: datetime | None = None
    last_settlement_tx: str | None = None
    number_of_orders: int | None = None
    filled_making_amount: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_incremental(self) -> bool:
        return (self.number_of_orders or 0) > 1

    @property
    def remaining_making_amount(self) -> int:
        return max(0, self.making_amount - self.filled_making_amount)

    def next_fill_making_amount(self) -> int:
        remaining = self.remaining_making_amount
        if not self.is_incremental:
            return remaining
        tranche = self.making_amount // int(self.number_of_orders or 1)
        if tranche <= 0:
            return remaining
        return min(remaining, tranche)

    def taking_amount_for(self, making_amount: int) -> int:
        if self.making_amount <= 0:
            return 0
        # Rounded up, matching how the settlement contract prices maker-side fills.
        return -(-making_amount * self.taking_amount // self.making_amount)

    def next_tranche_at(self, interval_seconds: float) -> datetime | None:
        if not self.is_incremental or interval_seconds <= 0:
            return None
        anchor = self.created_at
        if self.last_settlement_at is not None and self.last_settlement_at > anchor:
            anchor = self.last_settlement_at
        return datetime.fromtimestamp(anchor.timestamp() + interval_seconds, tz=timezone.utc)

    def to_record(self) -> dict[str, str]:
        return {
            "order_hash": self.order_hash,
            "salt": str(self.salt),
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "making_amount": str(self.making_amount),
            "taking_amount": str(self.taking_amount),
            "maker_address": self.maker_address,
            "receiver": self.receiver,
            "expires_at": self.expires_at.isoformat(),
            "signature": bytes_to_hex(self.signature),
            "traits": bytes_to_hex(self.traits),
            "extension": bytes_to_hex(self.extension),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_settlement_at": self.last_settlement_at.isoformat() if self.last_settlement_at else "",
            "last_settlement_tx": self.last_settlement_tx or "",
            "number_of_orders": str(self.number_of_orders) if self.number_of_orders else "",
            "filled_making_amount": str(self.filled_making_amount),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Order":
        expires_at = parse_datetime(record.get("expires_at"))
        created_at = parse_datetime(record.get("created_at"))
        if expires_at is None or created_at is None:
            raise ValueError(f"Order record is missing timestamps: {record.get('order_hash')}")

        number_of_orders = to_int(record.get("number_of_orders"), 0)
        return cls(
            order_hash=str(record["order_hash"]),
            salt=int(str(record.get("salt") or "0")),
            maker_asset=str(record["maker_asset"]),
            taker_asset=str(record["taker_asset"]),
            making_amount=int(str(record["making_amount"])),
            taking_amount=int(str(record["taking_amount"])),
            maker_address=str(record["maker_address"]),
            receiver=str(record.get("receiver") or ZERO_ADDRESS),
            expires_at=expires_at,
            signature=hex_to_bytes(record.get("signature")),
            traits=hex_to_bytes(record.get("traits")),
            extension=hex_to_bytes(record.get("extension")),
            status=str(record.get("status") or OrderStatus.PENDING.value),
            created_at=created_at,
            updated_at=parse_datetime(record.get("updated_at")) or created_at,
            last_settlement_at=parse_datetime(record.get("last_settlement_at")),
            last_settlement_tx=str(record.get("last_settlement_tx") or "") or None,
            number_of_orders=number_of_orders if number_of_orders > 0 else None,
            filled_making_amount=to_int(record.get("filled_making_amount"), 0),
        )

    def with_status(self, status: str, **changes: Any) -> "Order":
        return replace(self, status=status, **changes)


@dataclass(slots=True, frozen=True)
class PriceQuote:
    asset_id: str
    price: Decimal
    observed_at: float


@dataclass(slots=True, frozen=True)
class ProfitabilityResult:
    is_profitable: bool
    estimated_net_profit: Decimal | None = None
    estimated_net_profit_native: int | None = None
    reason: str | None = None
    making_value: Decimal | None = None
    taking_value: Decimal | None = None
    gas_cost: Decimal | None = None
    making_amount: int | None = None
    taking_amount: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Decimal):
                payload[key] = str(value)
        return payload


@dataclass(slots=True, frozen=True)
class SettlementOutcome:
    success: bool
    transaction_id: str | None = None
    error_kind: SettlementErrorKind | None = None
    reason: str | None = None
    dry_run: bool = False
    status: str | None = None
    filled_making_amount: int | None = None
    store_updated: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind.value
        return payload


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    min_profit_usd: Decimal
    max_gas_price_wei: int
    max_priority_fee_wei: int
    estimated_gas_units: int
    settlement_gas_limit: int
    min_native_reserve_wei: int
    confirmation_timeout_seconds: float
    tranche_interval_seconds: float
    simulate_before_submit: bool
    trade_enabled: bool

    @property
    def estimated_gas_cost_wei(self) -> int:
        return self.estimated_gas_units * self.max_gas_price_wei

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        return cls(
            min_profit_usd=_to_decimal(os.getenv("MIN_PROFIT_USD"), Decimal("1")),
            max_gas_price_wei=max(1, to_int(os.getenv("MAX_GAS_PRICE_WEI"), 100_000_000)),
            max_priority_fee_wei=max(0, to_int(os.getenv("MAX_PRIORITY_FEE_WEI"), 10_000_000)),
            estimated_gas_units=max(1, to_int(os.getenv("ESTIMATED_GAS_UNITS"), 200_000)),
            settlement_gas_limit=max(21_000, to_int(os.getenv("SETTLEMENT_GAS_LIMIT"), 1_000_000)),
            min_native_reserve_wei=max(0, to_int(os.getenv("MIN_NATIVE_RESERVE_WEI"), 5_000_000_000_000_000)),
            confirmation_timeout_seconds=max(
                1.0,
                to_float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS"), 120.0),
            ),
            tranche_interval_seconds=max(0.0, to_float(os.getenv("TRANCHE_INTERVAL_SECONDS"), 1800.0)),
            simulate_before_submit=to_bool(os.getenv("SIMULATE_BEFORE_SUBMIT"), True),
            trade_enabled=to_bool(os.getenv("TRADE_ENABLED"), True),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        max_gas_raw = redis_config.get("max_gas_price_wei") or redis_config.get("max_gas_price")
        min_profit_raw = redis_config.get("min_profit_usd") or redis_config.get("min_profit")

        max_priority_fee_wei = max(
            0,
            to_int(redis_config.get("max_priority_fee_wei"), defaults.max_priority_fee_wei),
        )
        max_gas_price_wei = max(1, to_int(max_gas_raw, defaults.max_gas_price_wei))
        return cls(
            min_profit_usd=_to_decimal(min_profit_raw, defaults.min_profit_usd),
            max_gas_price_wei=max_gas_price_wei,
            # priority fee above the fee cap is rejected by nodes
            max_priority_fee_wei=min(max_priority_fee_wei, max_gas_price_wei),
            estimated_gas_units=max(
                1,
                to_int(redis_config.get("estimated_gas_units"), defaults.estimated_gas_units),
            ),
            settlement_gas_limit=max(
                21_000,
                to_int(redis_config.get("settlement_gas_limit"), defaults.settlement_gas_limit),
            ),
            min_native_reserve_wei=max(
                0,
                to_int(redis_config.get("min_native_reserve_wei"), defaults.min_native_reserve_wei),
            ),
            confirmation_timeout_seconds=max(
                1.0,
                to_float(
                    redis_config.get("confirmation_timeout_seconds"),
                    defaults.confirmation_timeout_seconds,
                ),
            ),
            tranche_interval_seconds=max(
                0.0,
                to_float(redis_config.get("tranche_interval_seconds"), defaults.tranche_interval_seconds),
            ),
            simulate_before_submit=to_bool(
                redis_config.get("simulate_before_submit"),
                defaults.simulate_before_submit,
            ),
            trade_enabled=to_bool(redis_config.get("trade_enabled"), defaults.trade_enabled),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["min_profit_usd"] = str(self.min_profit_usd)
        return payload


def _to_decimal(value: Any, default: Decimal) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = Decimal(str(value).strip())
    except (ArithmeticError, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


class OrderStore(Protocol):
    async def get_executable_orders(self, now: datetime) -> list[Order]:
        ...

    async def transition_status(
        self,
        order_hash: str,
        from_statuses: Sequence[str],
        to_status: str,
        extra: dict[str, Any] | None = None,
    ) -> int:
        ...

    async def sweep_expired(self, now: datetime) -> int:
        ...
