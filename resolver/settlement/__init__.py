from .chain import (
    ChainClient,
    GasParams,
    RpcMethodError,
    TransactionPendingConfirmationError,
    TransactionReceipt,
)
from .evaluator import ProfitabilityEvaluator
from .executor import EventPublisher, SettlementExecutor
from .oracle import PriceOracle
from .protocol import FillCall, MalformedOrderError, build_fill_call, decode_revert_reason
from .sweeper import ExpirySweeper
from .types import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Order,
    OrderStatus,
    OrderStore,
    PriceQuote,
    ProfitabilityResult,
    RuntimeConfig,
    SettlementErrorKind,
    SettlementOutcome,
)

__all__ = [
    "ChainClient",
    "EventPublisher",
    "ExpirySweeper",
    "FillCall",
    "GasParams",
    "MalformedOrderError",
    "OPEN_STATUSES",
    "Order",
    "OrderStatus",
    "OrderStore",
    "PriceOracle",
    "PriceQuote",
    "ProfitabilityEvaluator",
    "ProfitabilityResult",
    "RpcMethodError",
    "RuntimeConfig",
    "SettlementErrorKind",
    "SettlementExecutor",
    "SettlementOutcome",
    "TERMINAL_STATUSES",
    "TransactionPendingConfirmationError",
    "TransactionReceipt",
    "build_fill_call",
    "decode_revert_reason",
]
