"""Tests for the PayPal app text parser."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from finsync.models.transaction import DateRange
from finsync.parsers.paypal_text import PayPalTextParser

ACTIVITY = """\
Pending
Spotify
−9,99 €
3 Feb . Automatic Payment
Repeat

Jan 2026
Netflix
−12,99 €
16 Jan . Automatic Payment
"Family plan"
Repeat

Anna Schmidt
+50,00 €
12 Jan . Money received

Dec 2025
Bäckerei
−3,20 €
24 Dec . Payment
"""


@pytest.fixture
def parser() -> PayPalTextParser:
    return PayPalTextParser(today=date(2026, 2, 10))


class TestPayPalTextParser:
    def test_parses_blocks(self, parser: PayPalTextParser) -> None:
        result = parser.parse(ACTIVITY)

        assert result.success
        assert result.format == "paypal_text"
        assert result.stats.imported == 4
        assert result.stats.recurring == 2

        by_merchant = {t.beneficiary: t for t in result.transactions}
        assert by_merchant["Spotify"].date == date(2026, 2, 3)
        assert by_merchant["Netflix"].amount == Decimal("-12.99")
        assert by_merchant["Netflix"].description == "Netflix - Family plan"
        assert by_merchant["Netflix"].raw_data["is_recurring"] is True
        assert by_merchant["Anna Schmidt"].amount == Decimal("50.00")
        assert by_merchant["Bäckerei"].date == date(2025, 12, 24)

    def test_section_headers_are_not_merchants(self, parser: PayPalTextParser) -> None:
        result = parser.parse(ACTIVITY)
        assert "Pending" not in {t.beneficiary for t in result.transactions}

    def test_month_after_reference_is_previous_year(self) -> None:
        parser = PayPalTextParser(today=date(2026, 1, 5))
        result = parser.parse("Shop\n−1,00 €\n20 Nov . Payment\n")
        assert result.transactions[0].date == date(2025, 11, 20)

    def test_identical_blocks_get_occurrence_suffix(self, parser: PayPalTextParser) -> None:
        block = "Kiosk\n−2,00 €\n5 Feb . Payment\n\n"
        ids = [t.external_id for t in parser.parse(block * 2).transactions]
        assert len(ids) == 2
        assert ids[1] == f"{ids[0]}-2"
        assert ids == [t.external_id for t in parser.parse(block * 2).transactions]

    def test_invalid_date_is_reported(self, parser: PayPalTextParser) -> None:
        result = parser.parse("Shop\n−1,00 €\n31 Feb . Payment\n")
        assert result.stats.errors == 1
        assert "Invalid date" in result.errors[0]
        assert not result.success

    def test_date_range(self, parser: PayPalTextParser) -> None:
        result = parser.parse(ACTIVITY, DateRange(start=date(2026, 1, 1), end=date(2026, 1, 31)))
        assert {t.beneficiary for t in result.transactions} == {"Netflix", "Anna Schmidt"}
        assert result.stats.skipped == 2

    def test_empty_text(self, parser: PayPalTextParser) -> None:
        result = parser.parse("")
        assert result.success
        assert result.transactions == []

    @pytest.mark.parametrize(
        "amount_line, expected, currency",
        [
            ("−$5,66 USD", Decimal("-5.66"), "USD"),
            ("12,34 EUR", Decimal("12.34"), "EUR"),
            ("−1.234,56 €", Decimal("-1234.56"), "EUR"),
        ],
    )
    def test_amounts_with_currency_codes(
        self, parser: PayPalTextParser, amount_line: str, expected: Decimal, currency: str
    ) -> None:
        result = parser.parse(f"Shop\n{amount_line}\n16 Jan . Payment\n")

        assert result.stats.imported == 1
        assert result.transactions[0].amount == expected
        assert result.transactions[0].currency == currency

    def test_unparseable_amount_is_reported(self, parser: PayPalTextParser) -> None:
        result = parser.parse("Shop\n1.2,3,4 €\n16 Jan . Payment\n")

        assert result.transactions == []
        assert result.stats.errors == 1
        assert "Unparseable amount" in result.errors[0]
