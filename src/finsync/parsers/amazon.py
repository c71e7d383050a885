"""
Amazon order history importer.

Reads the CSV files from an Amazon "Request my data" export
(``Retail.OrderHistory.*.csv`` and ``Retail.OrderHistory.Refunds.csv``) as
well as the simpler order reports produced by older exports and third-party
tools.

Two order schemas are recognized from the header row:

- ``privacy_central``: has ``Order ID``, ``Product Name`` and ``ASIN``.
- ``alternative``: has ``Order ID`` plus ``Title`` or ``Item Total``, or any
  order-ish column together with a price/total column.

Anything else is rejected with an error listing the headers found.
"""

from __future__ import annotations

import io
import logging
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import pandas as pd

from finsync.dedup import aggregate_orders, stable_external_id
from finsync.errors import RowParseError
from finsync.models.results import MAX_REPORTED_ERRORS, ImportResult
from finsync.models.transaction import DateRange, FetchedTransaction
from finsync.parsers.amounts import parse_amount, parse_date

logger = logging.getLogger("finsync.parsers.amazon")

PRIVACY_CENTRAL = "privacy_central"
ALTERNATIVE = "alternative"
UNKNOWN = "unknown"

_REFUND_HEADER_HINTS = ("return", "refund", "dateofreturn")
_ZERO = Decimal("0")

CsvSource = str | Path | io.IOBase


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def detect_format(headers: list[str]) -> str:
    """Classify an order CSV by its header row."""
    lower = [h.strip().lower() for h in headers]

    if "order id" in lower and "product name" in lower and "asin" in lower:
        return PRIVACY_CENTRAL
    if "order id" in lower and ("title" in lower or "item total" in lower):
        return ALTERNATIVE
    if any("order" in h for h in lower) and any("price" in h or "total" in h for h in lower):
        return ALTERNATIVE
    return UNKNOWN


class _Row:
    """Case-insensitive view over one CSV record."""

    def __init__(self, record: dict[str, Any]) -> None:
        self._values = {
            str(k).strip().lower(): "" if pd.isna(v) else str(v).strip()
            for k, v in record.items()
        }

    def get(self, *names: str) -> str:
        for name in names:
            value = self._values.get(name.lower(), "")
            if value:
                return value
        return ""

    @property
    def filled(self) -> int:
        return sum(1 for v in self._values.values() if v)


class AmazonCsvParser:
    """Turn Amazon order and refund exports into canonical transactions.

    Usage::

        parser = AmazonCsvParser()
        result = parser.parse_orders(Path("Retail.OrderHistory.1.csv"))
        refunds = parser.parse_refunds(Path("Retail.OrderHistory.Refunds.csv"))
    """

    source_id = "amazon"

    def __init__(
        self,
        *,
        default_currency: str = "EUR",
        max_reported_errors: int = MAX_REPORTED_ERRORS,
    ) -> None:
        self.default_currency = default_currency
        self.max_reported_errors = max_reported_errors

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse_orders(self, source: CsvSource, date_range: DateRange | None = None) -> ImportResult:
        """Parse an order history CSV. Multi-item orders are merged into one transaction."""
        result, df = self._load(source)
        if df is None:
            return result

        headers = list(df.columns)
        fmt = detect_format(headers)
        result.format = fmt
        if fmt == UNKNOWN:
            result.success = False
            result.add_error(
                "Unknown CSV format. Expected an Amazon Privacy Central export "
                "or a standard Amazon order export."
            )
            result.add_error(f"Found headers: {', '.join(headers)}")
            return result

        row_parser = self._parse_privacy_central_row if fmt == PRIVACY_CENTRAL else self._parse_alternative_row
        self._parse_rows(df, row_parser, result, date_range)
        result.transactions = aggregate_orders(result.transactions)

        logger.info(
            "Imported %d Amazon order rows (%d skipped, %d errors) as %d transactions",
            result.stats.imported,
            result.stats.skipped,
            result.stats.errors,
            len(result.transactions),
        )
        return result

    def parse_refunds(self, source: CsvSource, date_range: DateRange | None = None) -> ImportResult:
        """Parse a returns/refunds CSV into positive transactions."""
        result, df = self._load(source)
        if df is None:
            return result

        headers = list(df.columns)
        lower = [h.strip().lower() for h in headers]
        if not any(hint in h for h in lower for hint in _REFUND_HEADER_HINTS):
            result.success = False
            result.add_error(
                "This does not appear to be a returns/refunds CSV. "
                'Expected columns with "return" or "refund" in the name.'
            )
            result.add_error(f"Found headers: {', '.join(headers)}")
            return result

        result.format = "refunds"
        seen: dict[str, int] = {}
        self._parse_rows(df, lambda row: self._parse_refund_row(row, seen), result, date_range)
        logger.info("Imported %d Amazon refunds", result.stats.imported)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, source: CsvSource) -> tuple[ImportResult, pd.DataFrame | None]:
        result = ImportResult()
        if isinstance(source, str) and "\n" in source:
            source = io.StringIO(source)

        try:
            df = pd.read_csv(
                source,
                dtype=str,
                keep_default_na=False,
                skipinitialspace=True,
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError:
            df = None
        except (OSError, pd.errors.ParserError, UnicodeDecodeError) as e:
            result.success = False
            result.add_error(f"Failed to parse CSV: {e}")
            return result, None

        if df is None or df.empty:
            result.success = False
            result.add_error("CSV file is empty or has no data rows")
            return result, None

        df.columns = [str(c).strip() for c in df.columns]
        result.stats.total_rows = len(df)
        return result, df

    def _parse_rows(
        self,
        df: pd.DataFrame,
        row_parser: Callable[[_Row], FetchedTransaction | None],
        result: ImportResult,
        date_range: DateRange | None,
    ) -> None:
        min_filled = len(df.columns) / 2
        for idx, record in enumerate(df.to_dict(orient="records")):
            line_no = idx + 2  # header is line 1
            row = _Row(record)
            if row.filled < min_filled:
                result.stats.skipped += 1
                continue

            try:
                tx = row_parser(row)
            except RowParseError as e:
                result.stats.errors += 1
                result.add_error(f"Row {line_no}: {e.message}", limit=self.max_reported_errors)
                logger.debug("Skipping row %d: %s", line_no, e.message)
                continue

            if tx is None or (date_range and not date_range.contains(tx.date)):
                result.stats.skipped += 1
                continue

            result.transactions.append(tx)
            result.stats.imported += 1

        result.success = result.stats.imported > 0 or result.stats.errors == 0

    def _row_date(self, row: _Row, *names: str) -> date:
        raw = row.get(*names)
        parsed = parse_date(raw)
        if parsed is None:
            raise RowParseError(f"Invalid date '{raw}'")
        return parsed

    @staticmethod
    def _amount(row: _Row, *names: str) -> Decimal:
        value = parse_amount(row.get(*names))
        return _ZERO if value is None else value

    def _parse_privacy_central_row(self, row: _Row) -> FetchedTransaction | None:
        order_id = row.get("Order ID")
        product = row.get("Product Name")
        if not order_id or not product or not row.get("Order Date"):
            return None
        order_date = self._row_date(row, "Order Date")

        currency = row.get("Currency") or self.default_currency
        try:
            qty = int(row.get("Quantity") or "1")
        except ValueError:
            qty = 1
        total_owed = self._amount(row, "Total Owed")
        unit_price = self._amount(row, "Unit Price")
        unit_tax = self._amount(row, "Unit Price Tax")
        shipping = self._amount(row, "Shipping Charge")
        discounts = self._amount(row, "Total Discounts")
        subtotal = self._amount(row, "Shipment Item Subtotal")
        subtotal_tax = self._amount(row, "Shipment Item Subtotal Tax")

        # Total Owed is what was actually charged to the payment method.
        if total_owed > 0:
            total = total_owed
        elif subtotal > 0:
            total = subtotal + subtotal_tax
        else:
            total = unit_price * qty + unit_tax + shipping - abs(discounts)

        if total == 0:
            return None

        return FetchedTransaction(
            external_id=stable_external_id(self.source_id, order_id, product),
            date=order_date,
            description=_truncate(product, 200),
            amount=-abs(total),
            beneficiary="Amazon",
            currency=currency,
            raw_data={
                "order_id": order_id,
                "product_name": product,
                "quantity": qty,
                "unit_price": str(unit_price),
                "total_owed": str(total_owed),
                "asin": row.get("ASIN"),
                "order_status": row.get("Order Status"),
                "payment_method": row.get("Payment Instrument Type"),
            },
        )

    def _parse_alternative_row(self, row: _Row) -> FetchedTransaction | None:
        order_id = row.get("Order ID", "order_id", "OrderId")
        title = row.get("Title", "Product Name", "Item")
        if not order_id or not title or not row.get("Order Date", "order_date", "Date"):
            return None
        order_date = self._row_date(row, "Order Date", "order_date", "Date")

        amount = self._amount(row, "Item Total", "Total", "Price", "Amount")
        if amount == 0:
            return None

        return FetchedTransaction(
            external_id=stable_external_id(self.source_id, order_id, title),
            date=order_date,
            description=_truncate(title, 200),
            amount=-abs(amount),
            beneficiary="Amazon",
            currency=row.get("Currency") or self.default_currency,
            raw_data={
                "order_id": order_id,
                "title": title,
                "category": row.get("Category"),
                "payment_method": row.get("Payment Method", "payment_method"),
            },
        )

    def _parse_refund_row(self, row: _Row, seen: dict[str, int]) -> FetchedTransaction | None:
        order_id = row.get("OrderId", "Order ID", "order_id")
        date_names = ("DateOfReturn", "Date Of Return", "Refund Date", "RefundDate")
        if not order_id or not row.get(*date_names):
            return None
        refund_date = self._row_date(row, *date_names)

        amount = self._amount(row, "ReturnAmount", "Return Amount", "Refund Amount", "RefundAmount")
        if amount == 0:
            return None

        reason = row.get("ReturnReason", "Return Reason", "Refund Reason")
        resolution = row.get("Resolution")
        contract_id = row.get("ContractId", "Contract Id")

        label = "Refund" if resolution.lower() == "refund" else "Return"
        description = f"Amazon {label}: Order {order_id}"
        if reason:
            description += f" - {_truncate(reason, 100)}"

        if contract_id:
            base_id = f"{self.source_id}-return-{order_id}-{contract_id}"
        else:
            base_id = f"{self.source_id}-return-{order_id}-{refund_date.isoformat()}-{abs(amount)}"
        # Same order, day and amount twice: keep both, numbered in file order.
        occurrence = seen.get(base_id, 0) + 1
        seen[base_id] = occurrence

        return FetchedTransaction(
            external_id=base_id if occurrence == 1 else f"{base_id}-{occurrence}",
            date=refund_date,
            description=description,
            amount=abs(amount),
            beneficiary="Amazon Refund",
            currency=row.get("ReturnAmountCurrency", "Return Amount Currency", "Currency")
            or self.default_currency,
            raw_data={
                "order_id": order_id,
                "contract_id": contract_id or None,
                "return_reason": reason or None,
                "resolution": resolution or None,
                "is_refund": True,
            },
        )
