from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak

from resolver.settlement.protocol import (
    ALLOWANCE_SELECTOR,
    APPROVE_SELECTOR,
    ARGS_EXTENSION_LENGTH_OFFSET,
    BALANCE_OF_SELECTOR,
    ERROR_STRING_SELECTOR,
    FILL_ORDER_ARGS_SELECTOR,
    FILL_ORDER_SELECTOR,
    MAKER_AMOUNT_FLAG,
    ORDER_STRUCT_TYPE,
    PANIC_SELECTOR,
    UINT160_MASK,
    MalformedOrderError,
    build_fill_call,
    build_taker_traits,
    decode_revert_reason,
    encode_approve,
    split_signature,
)
from resolver.settlement.types import Order

MAKER = "0x1111111111111111111111111111111111111111"
MAKER_ASSET = "0x2222222222222222222222222222222222222222"
TAKER_ASSET = "0x3333333333333333333333333333333333333333"
CONTRACT = "0x111111125421ca6dc452d289314280a0f8842a65"


def _make_signature(*, v: int = 28) -> bytes:
    return b"\x11" * 32 + (5).to_bytes(32, "big") + bytes([v])


def _make_order(**changes: object) -> Order:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    order = Order(
        order_hash="0xabc",
        salt=42,
        maker_asset=MAKER_ASSET,
        taker_asset=TAKER_ASSET,
        making_amount=100,
        taking_amount=200,
        maker_address=MAKER,
        expires_at=now + timedelta(hours=1),
        signature=_make_signature(),
        traits=(7).to_bytes(32, "big"),
        created_at=now,
        updated_at=now,
    )
    return replace(order, **changes)


class SelectorTests(unittest.TestCase):
    def test_erc20_and_error_selectors_match_known_values(self) -> None:
        self.assertEqual(BALANCE_OF_SELECTOR.hex(), "70a08231")
        self.assertEqual(ALLOWANCE_SELECTOR.hex(), "dd62ed3e")
        self.assertEqual(APPROVE_SELECTOR.hex(), "095ea7b3")
        self.assertEqual(ERROR_STRING_SELECTOR.hex(), "08c379a0")
        self.assertEqual(PANIC_SELECTOR.hex(), "4e487b71")

    def test_approve_encodes_unlimited_allowance_by_default(self) -> None:
        call_data = encode_approve(CONTRACT)
        spender, amount = decode(["address", "uint256"], call_data[4:])
        self.assertEqual(call_data[:4], APPROVE_SELECTOR)
        self.assertEqual(spender.lower(), CONTRACT)
        self.assertEqual(amount, 2**256 - 1)


class SignatureTests(unittest.TestCase):
    def test_compact_signature_passes_through(self) -> None:
        signature = b"\x01" * 32 + b"\x02" * 32
        self.assertEqual(split_signature(signature), (b"\x01" * 32, b"\x02" * 32))

    def test_recovery_id_is_folded_into_vs(self) -> None:
        r, vs = split_signature(_make_signature(v=28))
        self.assertEqual(r, b"\x11" * 32)
        self.assertEqual(int.from_bytes(vs, "big"), (1 << 255) | 5)

        _, vs_low = split_signature(_make_signature(v=27))
        self.assertEqual(int.from_bytes(vs_low, "big"), 5)

    def test_invalid_signatures_are_rejected(self) -> None:
        with self.assertRaises(MalformedOrderError):
            split_signature(b"\x00" * 10)
        with self.assertRaises(MalformedOrderError):
            split_signature(_make_signature(v=30))


class TakerTraitsTests(unittest.TestCase):
    def test_maker_amount_flag_and_extension_length(self) -> None:
        traits = build_taker_traits(maker_amount_mode=True, threshold=50, extension_length=3)
        self.assertTrue(traits & MAKER_AMOUNT_FLAG)
        self.assertEqual((traits >> ARGS_EXTENSION_LENGTH_OFFSET) & 0xFFFFFF, 3)
        self.assertEqual(traits & ((1 << 185) - 1), 50)

    def test_threshold_overflow_is_rejected(self) -> None:
        with self.assertRaises(MalformedOrderError):
            build_taker_traits(maker_amount_mode=False, threshold=1 << 185)


class BuildFillCallTests(unittest.TestCase):
    def test_untouched_order_fills_in_taker_amount_mode(self) -> None:
        fill = build_fill_call(_make_order())

        self.assertEqual(fill.function, "fillOrder")
        self.assertEqual(fill.call_data[:4], FILL_ORDER_SELECTOR)
        self.assertFalse(fill.maker_amount_mode)
        self.assertEqual(fill.amount, 200)
        self.assertEqual(fill.taker_traits, 100)

        struct, r, vs, amount, taker_traits = decode(
            [ORDER_STRUCT_TYPE, "bytes32", "bytes32", "uint256", "uint256"],
            fill.call_data[4:],
        )
        self.assertEqual(struct[0], 42)
        self.assertEqual(struct[1], int(MAKER, 16))
        self.assertEqual(struct[2], 0)
        self.assertEqual(struct[5:], (100, 200, 7))
        self.assertEqual(r, b"\x11" * 32)
        self.assertEqual(int.from_bytes(vs, "big"), (1 << 255) | 5)
        self.assertEqual((amount, taker_traits), (200, 100))

    def test_incremental_order_fills_one_tranche_in_maker_amount_mode(self) -> None:
        fill = build_fill_call(_make_order(number_of_orders=4))

        self.assertTrue(fill.maker_amount_mode)
        self.assertEqual(fill.making_amount, 25)
        self.assertEqual(fill.taking_amount, 50)
        self.assertEqual(fill.amount, 25)
        self.assertEqual(fill.taker_traits, MAKER_AMOUNT_FLAG | 50)

    def test_extension_uses_fill_order_args(self) -> None:
        extension = b"\x01\x02\x03"
        salt = (9 << 160) | (int.from_bytes(keccak(extension), "big") & UINT160_MASK)
        fill = build_fill_call(_make_order(salt=salt, extension=extension))

        self.assertEqual(fill.function, "fillOrderArgs")
        self.assertEqual(fill.call_data[:4], FILL_ORDER_ARGS_SELECTOR)
        self.assertEqual((fill.taker_traits >> ARGS_EXTENSION_LENGTH_OFFSET) & 0xFFFFFF, 3)
        decoded = decode(
            [ORDER_STRUCT_TYPE, "bytes32", "bytes32", "uint256", "uint256", "bytes"],
            fill.call_data[4:],
        )
        self.assertEqual(decoded[5], extension)

    def test_extension_must_match_salt(self) -> None:
        with self.assertRaises(MalformedOrderError):
            build_fill_call(_make_order(salt=1, extension=b"\x01"))

    def test_invalid_address_is_malformed(self) -> None:
        with self.assertRaises(MalformedOrderError):
            build_fill_call(_make_order(maker_address="0x1234"))

    def test_oversized_traits_are_malformed(self) -> None:
        with self.assertRaises(MalformedOrderError):
            build_fill_call(_make_order(traits=b"\x01" * 33))

    def test_fully_filled_order_has_nothing_to_fill(self) -> None:
        with self.assertRaises(MalformedOrderError):
            build_fill_call(_make_order(filled_making_amount=100))


class RevertReasonTests(unittest.TestCase):
    def test_error_string(self) -> None:
        data = ERROR_STRING_SELECTOR + encode(["string"], ["not enough"])
        self.assertEqual(decode_revert_reason(data), "not enough")

    def test_panic_code(self) -> None:
        data = PANIC_SELECTOR + encode(["uint256"], [0x11])
        self.assertEqual(decode_revert_reason(data), "Panic(0x11)")

    def test_known_custom_error(self) -> None:
        data = function_signature_to_4byte_selector("OrderExpired()")
        self.assertEqual(decode_revert_reason(data), "OrderExpired()")

    def test_unknown_and_empty_payloads(self) -> None:
        self.assertEqual(decode_revert_reason(b""), "unknown revert reason")
        self.assertEqual(
            decode_revert_reason(bytes.fromhex("deadbeef")),
            "unknown error with selector 0xdeadbeef",
        )


if __name__ == "__main__":
    unittest.main()
