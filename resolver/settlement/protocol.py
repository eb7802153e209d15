"""Call encoding for the limit order protocol v4 settlement contract.

Everything that depends on the contract's ABI lives here, so a protocol
upgrade only has to touch this module. Order blobs are forwarded as-is:
the maker traits become a single uint256 word, the extension is passed
through as bytes and the signature is only split into its compact form.
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, is_address, keccak, to_checksum_address

from .types import Order

UINT256_MAX = 2**256 - 1
UINT160_MASK = 2**160 - 1
THRESHOLD_MASK = 2**185 - 1

MAKER_AMOUNT_FLAG = 1 << 255
ARGS_EXTENSION_LENGTH_OFFSET = 224
ARGS_INTERACTION_LENGTH_OFFSET = 200
ARGS_LENGTH_MAX = 2**24 - 1

ORDER_STRUCT_TYPE = "(uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256)"
FILL_ORDER_SIGNATURE = f"fillOrder({ORDER_STRUCT_TYPE},bytes32,bytes32,uint256,uint256)"
FILL_ORDER_ARGS_SIGNATURE = f"fillOrderArgs({ORDER_STRUCT_TYPE},bytes32,bytes32,uint256,uint256,bytes)"

FILL_ORDER_SELECTOR = function_signature_to_4byte_selector(FILL_ORDER_SIGNATURE)
FILL_ORDER_ARGS_SELECTOR = function_signature_to_4byte_selector(FILL_ORDER_ARGS_SIGNATURE)
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")
ALLOWANCE_SELECTOR = function_signature_to_4byte_selector("allowance(address,address)")
APPROVE_SELECTOR = function_signature_to_4byte_selector("approve(address,uint256)")

ERROR_STRING_SELECTOR = function_signature_to_4byte_selector("Error(string)")
PANIC_SELECTOR = function_signature_to_4byte_selector("Panic(uint256)")

KNOWN_CUSTOM_ERRORS = (
    "BadSignature()",
    "BitInvalidatedOrder()",
    "EpochManagerAndBitInvalidatorsAreIncompatible()",
    "InvalidatedOrder()",
    "InvalidExtensionHash()",
    "MakingAmountTooLow()",
    "MismatchArraysLengths()",
    "MissingOrderExtension()",
    "OrderExpired()",
    "OrderIsNotSuitableForMassInvalidation()",
    "PartialFillNotAllowed()",
    "PredicateIsNotTrue()",
    "PrivateOrder()",
    "ReentrancyDetected()",
    "RemainingInvalidatedOrder()",
    "SafeTransferFromFailed()",
    "SwapWithZeroAmount()",
    "TakingAmountExceeded()",
    "TakingAmountTooHigh()",
    "TransferFromMakerToTakerFailed()",
    "TransferFromTakerToMakerFailed()",
    "UnexpectedOrderExtension()",
    "WrongSeriesNonce()",
)
CUSTOM_ERROR_SELECTORS: dict[bytes, str] = {
    function_signature_to_4byte_selector(name): name for name in KNOWN_CUSTOM_ERRORS
}


class MalformedOrderError(ValueError):
    pass


@dataclass(slots=True, frozen=True)
class FillCall:
    function: str
    call_data: bytes
    amount: int
    taker_traits: int
    maker_amount_mode: bool
    making_amount: int
    taking_amount: int


def _address_word(value: str, *, field_name: str) -> int:
    if not is_address(value):
        raise MalformedOrderError(f"{field_name} is not a valid address: {value}")
    return int(value, 16)


def _uint256(value: int, *, field_name: str) -> int:
    if value < 0 or value > UINT256_MAX:
        raise MalformedOrderError(f"{field_name} is outside the uint256 range: {value}")
    return value


def order_struct(order: Order) -> tuple[int, ...]:
    if len(order.traits) > 32:
        raise MalformedOrderError(f"maker traits exceed 32 bytes: {len(order.traits)}")

    return (
        _uint256(order.salt, field_name="salt"),
        _address_word(order.maker_address, field_name="maker"),
        _address_word(order.receiver, field_name="receiver"),
        _address_word(order.maker_asset, field_name="maker_asset"),
        _address_word(order.taker_asset, field_name="taker_asset"),
        _uint256(order.making_amount, field_name="making_amount"),
        _uint256(order.taking_amount, field_name="taking_amount"),
        int.from_bytes(order.traits, "big"),
    )


def split_signature(signature: bytes) -> tuple[bytes, bytes]:
    if len(signature) == 64:
        return signature[:32], signature[32:]
    if len(signature) != 65:
        raise MalformedOrderError(f"signature must be 64 or 65 bytes, got {len(signature)}")

    r = signature[:32]
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        raise MalformedOrderError(f"signature recovery id is invalid: {signature[64]}")
    vs = (v << 255) | s
    return r, vs.to_bytes(32, "big")


def build_taker_traits(*, maker_amount_mode: bool, threshold: int, extension_length: int = 0) -> int:
    if threshold < 0 or threshold > THRESHOLD_MASK:
        raise MalformedOrderError(f"threshold does not fit taker traits: {threshold}")
    if extension_length > ARGS_LENGTH_MAX:
        raise MalformedOrderError(f"extension is too long for taker traits: {extension_length}")

    traits = threshold
    traits |= extension_length << ARGS_EXTENSION_LENGTH_OFFSET
    if maker_amount_mode:
        traits |= MAKER_AMOUNT_FLAG
    return traits


def verify_extension(order: Order) -> None:
    if not order.extension:
        return
    extension_hash = int.from_bytes(keccak(order.extension), "big")
    if (extension_hash & UINT160_MASK) != (order.salt & UINT160_MASK):
        raise MalformedOrderError("extension hash does not match the order salt")


def build_fill_call(order: Order) -> FillCall:
    """Rebuild the settlement call for the next fill of ``order``.

    Full fills of untouched orders go through taker-amount mode exactly as the
    maker signed them. Tranches and remainders use maker-amount mode so the
    contract fills a fixed slice of the maker side.
    """
    struct = order_struct(order)
    r, vs = split_signature(order.signature)
    verify_extension(order)

    making_amount = order.next_fill_making_amount()
    if making_amount <= 0:
        raise MalformedOrderError("order has nothing left to fill")
    taking_amount = order.taking_amount_for(making_amount)
    if taking_amount <= 0:
        raise MalformedOrderError("fill would transfer a zero taker amount")

    maker_amount_mode = order.is_incremental or order.filled_making_amount > 0
    if maker_amount_mode:
        amount = making_amount
        threshold = taking_amount
    else:
        amount = order.taking_amount
        threshold = order.making_amount

    taker_traits = build_taker_traits(
        maker_amount_mode=maker_amount_mode,
        threshold=threshold,
        extension_length=len(order.extension),
    )

    if order.extension:
        function = "fillOrderArgs"
        call_data = FILL_ORDER_ARGS_SELECTOR + encode(
            [ORDER_STRUCT_TYPE, "bytes32", "bytes32", "uint256", "uint256", "bytes"],
            [struct, r, vs, amount, taker_traits, order.extension],
        )
    else:
        function = "fillOrder"
        call_data = FILL_ORDER_SELECTOR + encode(
            [ORDER_STRUCT_TYPE, "bytes32", "bytes32", "uint256", "uint256"],
            [struct, r, vs, amount, taker_traits],
        )

    return FillCall(
        function=function,
        call_data=call_data,
        amount=amount,
        taker_traits=taker_traits,
        maker_amount_mode=maker_amount_mode,
        making_amount=making_amount,
        taking_amount=taking_amount,
    )


def encode_balance_of(owner: str) -> bytes:
    return BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(owner)])


def encode_allowance(owner: str, spender: str) -> bytes:
    return ALLOWANCE_SELECTOR + encode(
        ["address", "address"],
        [to_checksum_address(owner), to_checksum_address(spender)],
    )


def encode_approve(spender: str, amount: int = UINT256_MAX) -> bytes:
    return APPROVE_SELECTOR + encode(["address", "uint256"], [to_checksum_address(spender), amount])


def decode_uint256(data: bytes) -> int:
    if len(data) < 32:
        raise ValueError(f"expected a 32-byte word, got {len(data)} bytes")
    return int.from_bytes(data[:32], "big")


def decode_revert_reason(data: bytes) -> str:
    if not data:
        return "unknown revert reason"

    selector = data[:4]
    if selector == ERROR_STRING_SELECTOR:
        try:
            (message,) = decode(["string"], data[4:])
        except Exception:
            return "malformed Error(string) payload"
        return message or "empty revert message"

    if selector == PANIC_SELECTOR:
        try:
            (code,) = decode(["uint256"], data[4:])
        except Exception:
            return "malformed Panic(uint256) payload"
        return f"Panic(0x{code:02x})"

    known = CUSTOM_ERROR_SELECTORS.get(selector)
    if known is not None:
        return known
    return f"unknown error with selector 0x{selector.hex()}"
