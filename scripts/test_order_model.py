from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from resolver.settlement.types import (
    Order,
    OrderStatus,
    ProfitabilityResult,
    SettlementErrorKind,
    SettlementOutcome,
    parse_datetime,
)

CREATED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_order(**overrides: object) -> Order:
    fields: dict[str, object] = {
        "order_hash": "0xfeed",
        "salt": 1,
        "maker_asset": "0x2222222222222222222222222222222222222222",
        "taker_asset": "0x3333333333333333333333333333333333333333",
        "making_amount": 1000,
        "taking_amount": 3000,
        "maker_address": "0x1111111111111111111111111111111111111111",
        "expires_at": CREATED_AT + timedelta(days=1),
        "signature": b"\x01" * 65,
        "traits": b"\x00",
        "created_at": CREATED_AT,
        "updated_at": CREATED_AT,
    }
    fields.update(overrides)
    return Order(**fields)  # type: ignore[arg-type]


class OrderRecordTests(unittest.TestCase):
    def test_record_round_trip_keeps_blobs_and_optional_fields(self) -> None:
        order = _make_order(
            extension=b"\xaa\xbb",
            number_of_orders=3,
            filled_making_amount=333,
            status=OrderStatus.PARTIALLY_FILLED.value,
            last_settlement_at=CREATED_AT + timedelta(minutes=30),
            last_settlement_tx="0xtx",
        )
        record = order.to_record()

        self.assertEqual(record["signature"], "0x" + "01" * 65)
        self.assertEqual(record["extension"], "0xaabb")
        self.assertEqual(Order.from_record(record), order)

    def test_missing_optional_fields_use_defaults(self) -> None:
        record = _make_order().to_record()
        for key in ("number_of_orders", "last_settlement_at", "last_settlement_tx", "filled_making_amount"):
            record.pop(key)

        order = Order.from_record(record)
        self.assertIsNone(order.number_of_orders)
        self.assertIsNone(order.last_settlement_at)
        self.assertIsNone(order.last_settlement_tx)
        self.assertEqual(order.filled_making_amount, 0)

    def test_missing_timestamps_are_rejected(self) -> None:
        record = _make_order().to_record()
        record["expires_at"] = ""
        with self.assertRaises(ValueError):
            Order.from_record(record)

    def test_parse_datetime_accepts_zulu_and_naive_values(self) -> None:
        self.assertEqual(parse_datetime("2026-03-01T12:00:00Z"), CREATED_AT)
        self.assertEqual(parse_datetime("2026-03-01T12:00:00"), CREATED_AT)
        self.assertIsNone(parse_datetime(""))


class TrancheTests(unittest.TestCase):
    def test_single_fill_order_takes_the_whole_remainder(self) -> None:
        order = _make_order()
        self.assertFalse(order.is_incremental)
        self.assertEqual(order.next_fill_making_amount(), 1000)
        self.assertIsNone(order.next_tranche_at(1800))

    def test_tranche_is_capped_at_the_remainder(self) -> None:
        order = _make_order(number_of_orders=3, filled_making_amount=666)
        self.assertEqual(order.next_fill_making_amount(), 333)

        last = _make_order(number_of_orders=3, filled_making_amount=999)
        self.assertEqual(last.next_fill_making_amount(), 1)

    def test_taking_amount_rounds_up(self) -> None:
        order = _make_order(making_amount=3, taking_amount=10)
        self.assertEqual(order.taking_amount_for(1), 4)

    def test_next_tranche_is_anchored_on_latest_settlement(self) -> None:
        order = _make_order(number_of_orders=2)
        self.assertEqual(order.next_tranche_at(1800), CREATED_AT + timedelta(minutes=30))

        settled = _make_order(number_of_orders=2, last_settlement_at=CREATED_AT + timedelta(hours=2))
        self.assertEqual(settled.next_tranche_at(1800), CREATED_AT + timedelta(hours=2, minutes=30))

    def test_open_statuses(self) -> None:
        self.assertTrue(_make_order().is_open)
        self.assertTrue(_make_order(status="partiallyFilled").is_open)
        self.assertFalse(_make_order(status="expired").is_open)


class ResultSerializationTests(unittest.TestCase):
    def test_profitability_result_stringifies_decimals(self) -> None:
        payload = ProfitabilityResult(is_profitable=True, estimated_net_profit=Decimal("18.5")).to_dict()
        self.assertEqual(payload["estimated_net_profit"], "18.5")

    def test_outcome_serializes_error_kind_value(self) -> None:
        payload = SettlementOutcome(
            success=False,
            error_kind=SettlementErrorKind.CONFIRMATION_TIMEOUT,
        ).to_dict()
        self.assertEqual(payload["error_kind"], "confirmationTimeout")


if __name__ == "__main__":
    unittest.main()
