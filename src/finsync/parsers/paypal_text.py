"""
PayPal app text export parser.

The PayPal mobile app lets users copy their activity list as plain text.
Each transaction is a block of lines::

    Netflix
    −12,99 €
    16 Jan . Automatic Payment
    "Family plan"        (optional note)
    Repeat               (optional, marks a recurring payment)

Month headers such as ``Dec 2025`` set the year context for the blocks that
follow. Section headers such as ``Pending`` or ``This week`` are ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from finsync.models.results import MAX_REPORTED_ERRORS, ImportResult
from finsync.models.transaction import DateRange, FetchedTransaction
from finsync.parsers.amounts import parse_amount, stable_hash

logger = logging.getLogger("finsync.parsers.paypal_text")

SECTION_HEADERS = frozenset({
    "pending",
    "completed",
    "this week",
    "last week",
    "2 weeks ago",
    "3 weeks ago",
    "earlier this month",
})

MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

_MONTH_HEADER_RE = re.compile(r"^([A-Za-z]+)\s+(\d{4})$")
_AMOUNT_RE = re.compile(r"^[−+-]?\s*\$?\s*\d[\d.,]*\s*(?:€|\$|EUR|USD)?$")
_DATE_LINE_RE = re.compile(r"^(?:Today,\s*)?(\d{1,2})\s+([A-Za-z]+)\s*\.\s*(.+)$")


@dataclass
class _Block:
    merchant: str
    amount: Decimal
    currency: str
    date: date
    payment_type: str
    note: str | None
    recurring: bool
    raw_text: str


def _month_index(name: str) -> int | None:
    key = name[:3].lower()
    if key in MONTHS:
        return MONTHS.index(key) + 1
    return None


def _parse_month_header(line: str) -> tuple[int, int] | None:
    match = _MONTH_HEADER_RE.match(line)
    if not match:
        return None
    month = _month_index(match.group(1))
    if month is None:
        return None
    return month, int(match.group(2))


def _is_section_header(line: str) -> bool:
    return line.lower() in SECTION_HEADERS


def _currency_of(line: str) -> str:
    return "USD" if ("$" in line or "USD" in line) else "EUR"


class PayPalTextParser:
    """Parse PayPal app text exports into canonical transactions.

    Args:
        today: Reference date for resolving the year of blocks that appear
            before any month header. Defaults to ``date.today()``.
    """

    source_id = "paypal"

    def __init__(self, *, today: date | None = None, max_reported_errors: int = MAX_REPORTED_ERRORS) -> None:
        self.today = today or date.today()
        self.max_reported_errors = max_reported_errors

    def parse(self, text: str, date_range: DateRange | None = None) -> ImportResult:
        result = ImportResult(format="paypal_text")
        lines = [line.strip() for line in text.splitlines()]
        seen_ids: dict[str, int] = {}
        month_context: tuple[int, int] | None = None

        i = 0
        while i < len(lines):
            line = lines[i]
            if not line:
                i += 1
                continue

            header = _parse_month_header(line)
            if header:
                month_context = header
                i += 1
                continue

            if _is_section_header(line):
                i += 1
                continue

            block, next_index, error = self._parse_block(lines, i, month_context)
            i = next_index
            if error:
                result.stats.errors += 1
                result.add_error(error, limit=self.max_reported_errors)
                logger.debug("PayPal text: %s", error)
                continue
            if block is None:
                continue

            result.stats.total_rows += 1
            if date_range and not date_range.contains(block.date):
                result.stats.skipped += 1
                continue

            result.transactions.append(self._to_transaction(block, seen_ids))
            result.stats.imported += 1
            if block.recurring:
                result.stats.recurring += 1

        result.success = result.stats.imported > 0 or result.stats.errors == 0
        logger.info(
            "Parsed %d PayPal transactions (%d recurring, %d skipped)",
            result.stats.imported,
            result.stats.recurring,
            result.stats.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # Block parsing
    # ------------------------------------------------------------------

    def _parse_block(
        self,
        lines: list[str],
        start: int,
        month_context: tuple[int, int] | None,
    ) -> tuple[_Block | None, int, str | None]:
        """Parse one block starting at ``start``.

        Returns the block (or None), the index to continue from, and an error
        message when the block looked like a transaction but was malformed.
        """
        merchant = lines[start]
        if start + 2 >= len(lines):
            return None, start + 1, None

        amount_line = lines[start + 1]
        if not _AMOUNT_RE.match(amount_line):
            return None, start + 1, None
        amount = parse_amount(amount_line)
        if amount is None:
            return None, start + 2, f"Unparseable amount '{amount_line}' for {merchant}"

        date_line = lines[start + 2]
        match = _DATE_LINE_RE.match(date_line)
        if not match:
            return None, start + 1, None

        day = int(match.group(1))
        month = _month_index(match.group(2))
        if month is None:
            return None, start + 3, f"Unknown month in '{date_line}' for {merchant}"

        year = self._resolve_year(month, month_context)
        try:
            tx_date = date(year, month, day)
        except ValueError:
            return None, start + 3, f"Invalid date '{date_line}' for {merchant}"

        raw_lines = [merchant, amount_line, date_line]
        note: str | None = None
        recurring = False
        i = start + 3
        while i < len(lines) and lines[i]:
            extra = lines[i]
            if len(extra) >= 2 and extra.startswith('"') and extra.endswith('"'):
                note = extra[1:-1]
            elif extra.lower() == "repeat":
                recurring = True
            else:
                break
            raw_lines.append(extra)
            i += 1

        block = _Block(
            merchant=merchant,
            amount=amount,
            currency=_currency_of(amount_line),
            date=tx_date,
            payment_type=match.group(3).strip(),
            note=note,
            recurring=recurring,
            raw_text="\n".join(raw_lines),
        )
        return block, i, None

    def _resolve_year(self, month: int, month_context: tuple[int, int] | None) -> int:
        # A month later than the reference month belongs to the previous year.
        if month_context:
            ref_month, ref_year = month_context
        else:
            ref_month, ref_year = self.today.month, self.today.year
        return ref_year - 1 if month > ref_month else ref_year

    def _to_transaction(self, block: _Block, seen_ids: dict[str, int]) -> FetchedTransaction:
        base_id = f"{self.source_id}-{block.date.isoformat()}-{stable_hash(block.merchant, block.amount)}"
        # Identical blocks on the same day get an occurrence suffix, stable across re-imports.
        occurrence = seen_ids.get(base_id, 0) + 1
        seen_ids[base_id] = occurrence
        external_id = base_id if occurrence == 1 else f"{base_id}-{occurrence}"

        description = block.merchant
        if block.note:
            description = f"{block.merchant} - {block.note}"

        return FetchedTransaction(
            external_id=external_id,
            date=block.date,
            description=description,
            amount=block.amount,
            beneficiary=block.merchant,
            currency=block.currency,
            raw_data={
                "merchant": block.merchant,
                "payment_type": block.payment_type,
                "note": block.note,
                "is_recurring": block.recurring,
                "raw_text": block.raw_text,
            },
        )
