"""
Amazon Connector — order history from exported CSV files.

Amazon has no transaction API; users request their data export (Privacy
Central) or download an order report. The connector reads the files named in
its options (``orders_path``, optionally ``refunds_path``) on every fetch, so
re-exporting and fetching again picks up new orders.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from finsync.connectors.base import BaseConnector
from finsync.errors import ConnectionFailedError, UnsupportedFormatError
from finsync.models.connector import ConnectorType
from finsync.models.results import ConnectResult, FetchResult, ImportResult
from finsync.models.transaction import AccountInfo, DateRange
from finsync.parsers.amazon import AmazonCsvParser

logger = logging.getLogger("finsync.connectors.amazon")


class AmazonConnector(BaseConnector):
    """Serve Amazon orders (and refunds) from local CSV exports."""

    name = "amazon"
    description = "Amazon order history CSV export"
    connector_type = ConnectorType.AMAZON

    def __init__(self, connector_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(connector_id, **kwargs)
        self.parser = AmazonCsvParser(
            default_currency=self.config.imports.default_currency,
            max_reported_errors=self.config.imports.max_reported_errors,
        )

    @property
    def orders_path(self) -> Path | None:
        value = self.options.get("orders_path")
        return Path(value).expanduser() if value else None

    @property
    def refunds_path(self) -> Path | None:
        value = self.options.get("refunds_path")
        return Path(value).expanduser() if value else None

    async def _connect(self) -> ConnectResult:
        path = self.orders_path
        if path is None:
            raise ConnectionFailedError("No orders_path configured for the Amazon connector")
        if not path.is_file():
            raise ConnectionFailedError(f"Amazon export not found: {path}")
        return ConnectResult.done([AccountInfo(account_number=self.user_id or "amazon", account_type="orders")])

    async def _fetch(self, date_range: DateRange, account: str | None) -> FetchResult:
        orders = self.parser.parse_orders(self.orders_path, date_range)
        if not orders.success:
            raise UnsupportedFormatError("; ".join(orders.errors) or "Unsupported Amazon export")

        result = _to_fetch_result(orders)
        refunds_path = self.refunds_path
        if refunds_path is not None and refunds_path.is_file():
            refunds = self.parser.parse_refunds(refunds_path, date_range)
            if refunds.success:
                _merge(result, refunds)
            else:
                for error in refunds.errors:
                    result.add_error(error)
        return result


def _to_fetch_result(imported: ImportResult) -> FetchResult:
    result = FetchResult(success=True, stats=imported.stats.model_copy())
    result.transactions = list(imported.transactions)
    for error in imported.errors:
        result.add_error(error)
    return result


def _merge(result: FetchResult, extra: ImportResult) -> None:
    result.transactions.extend(extra.transactions)
    for field in ("total_rows", "imported", "skipped", "errors"):
        setattr(result.stats, field, getattr(result.stats, field) + getattr(extra.stats, field))
    for error in extra.errors:
        result.add_error(error)
