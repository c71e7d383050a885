"""Tests for the Amazon order history importer."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from finsync.dedup import dedupe
from finsync.models.transaction import DateRange
from finsync.parsers.amazon import ALTERNATIVE, PRIVACY_CENTRAL, UNKNOWN, AmazonCsvParser, detect_format

PRIVACY_CENTRAL_CSV = """\
Order ID,Order Date,Product Name,ASIN,Quantity,Currency,Unit Price,Total Owed
302-111,2024-03-05T10:00:00Z,USB-C Kabel,B000000001,1,EUR,8.40,10.00
302-111,2024-03-05T10:00:00Z,Ladegerät,B000000002,1,EUR,4.62,5.50
302-222,2024-04-01T09:00:00Z,Buch,B000000003,1,EUR,19.99,19.99
"""

REFUNDS_CSV = """\
OrderId,ContractId,DateOfReturn,ReturnAmount,ReturnAmountCurrency,ReturnReason,Resolution
302-111,C-1,2024-03-20,5.50,EUR,Defective,Refund
"""


@pytest.fixture
def parser() -> AmazonCsvParser:
    return AmazonCsvParser()


class TestDetectFormat:
    def test_privacy_central(self) -> None:
        assert detect_format(["Order ID", "Product Name", "ASIN", "Total Owed"]) == PRIVACY_CENTRAL

    def test_alternative(self) -> None:
        assert detect_format(["Order ID", "Order Date", "Title", "Item Total"]) == ALTERNATIVE
        assert detect_format(["order_number", "price"]) == ALTERNATIVE

    def test_unknown(self) -> None:
        assert detect_format(["foo", "bar"]) == UNKNOWN


class TestParseOrders:
    def test_multi_item_order_is_aggregated(self, parser: AmazonCsvParser) -> None:
        result = parser.parse_orders(PRIVACY_CENTRAL_CSV)

        assert result.success
        assert result.format == PRIVACY_CENTRAL
        assert result.stats.total_rows == 3
        assert result.stats.imported == 3
        assert len(result.transactions) == 2

        order = next(t for t in result.transactions if t.raw_data["order_id"] == "302-111")
        assert order.amount == Decimal("-15.50")
        assert order.date == date(2024, 3, 5)
        assert len(order.raw_data["items"]) == 2

    def test_reimport_yields_same_ids(self, parser: AmazonCsvParser) -> None:
        first = {t.external_id for t in parser.parse_orders(PRIVACY_CENTRAL_CSV).transactions}
        second = {t.external_id for t in parser.parse_orders(PRIVACY_CENTRAL_CSV).transactions}
        assert first == second

    def test_date_range_filter(self, parser: AmazonCsvParser) -> None:
        result = parser.parse_orders(
            PRIVACY_CENTRAL_CSV,
            DateRange(start=date(2024, 4, 1), end=date(2024, 4, 30)),
        )
        assert [t.raw_data["order_id"] for t in result.transactions] == ["302-222"]
        assert result.stats.skipped == 2

    def test_alternative_format(self, parser: AmazonCsvParser) -> None:
        csv = "Order ID,Order Date,Title,Item Total\nA-1,15.01.2024,Kaffee,\"12,34 €\"\n"
        result = parser.parse_orders(csv)
        assert result.format == ALTERNATIVE
        assert len(result.transactions) == 1
        assert result.transactions[0].amount == Decimal("-12.34")
        assert result.transactions[0].date == date(2024, 1, 15)

    def test_unknown_headers(self, parser: AmazonCsvParser) -> None:
        result = parser.parse_orders("foo,bar\n1,2\n")
        assert not result.success
        assert result.transactions == []
        assert any("Found headers: foo, bar" in e for e in result.errors)

    def test_bad_date_is_counted(self, parser: AmazonCsvParser) -> None:
        csv = PRIVACY_CENTRAL_CSV + "302-333,not-a-date,Lampe,B000000004,1,EUR,9.00,9.00\n"
        result = parser.parse_orders(csv)
        assert result.success
        assert result.stats.errors == 1
        assert any(e.startswith("Row 5:") for e in result.errors)

    def test_empty_file(self, parser: AmazonCsvParser, tmp_path: Path) -> None:
        path = tmp_path / "empty.csv"
        path.write_text("")
        result = parser.parse_orders(path)
        assert not result.success
        assert result.errors


class TestParseRefunds:
    def test_refund_is_positive(self, parser: AmazonCsvParser) -> None:
        result = parser.parse_refunds(REFUNDS_CSV)
        assert result.success
        refund = result.transactions[0]
        assert refund.amount == Decimal("5.50")
        assert refund.external_id == "amazon-return-302-111-C-1"
        assert refund.description == "Amazon Refund: Order 302-111 - Defective"

    def test_same_day_refunds_without_contract_are_kept(self, parser: AmazonCsvParser) -> None:
        csv = (
            "OrderId,ContractId,DateOfReturn,ReturnAmount,ReturnAmountCurrency,ReturnReason,Resolution\n"
            "302-111,,2024-03-20,5.50,EUR,Defective,Refund\n"
            "302-111,,2024-03-20,10.00,EUR,Wrong item,Refund\n"
            "302-111,,2024-03-20,5.50,EUR,Defective,Refund\n"
        )
        result = parser.parse_refunds(csv)

        ids = [t.external_id for t in result.transactions]
        assert ids == [
            "amazon-return-302-111-2024-03-20-5.50",
            "amazon-return-302-111-2024-03-20-10.00",
            "amazon-return-302-111-2024-03-20-5.50-2",
        ]
        kept, duplicates = dedupe(result.transactions)
        assert len(kept) == 3
        assert duplicates == 0
        assert ids == [t.external_id for t in parser.parse_refunds(csv).transactions]

    def test_rejects_order_file(self, parser: AmazonCsvParser) -> None:
        result = parser.parse_refunds(PRIVACY_CENTRAL_CSV)
        assert not result.success
        assert "returns/refunds" in result.errors[0]
