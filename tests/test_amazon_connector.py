"""Tests for the file-based Amazon connector."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from finsync.connectors.amazon_connector import AmazonConnector
from finsync.errors import ErrorCode
from finsync.models.connector import ConnectorCredentials
from finsync.models.transaction import DateRange

ORDERS = """\
Order ID,Order Date,Product Name,ASIN,Quantity,Currency,Unit Price,Total Owed
302-111,2024-03-05,USB-C Kabel,B000000001,1,EUR,8.40,10.00
302-111,2024-03-05,Ladegerät,B000000002,1,EUR,4.62,5.50
"""

REFUNDS = """\
OrderId,ContractId,DateOfReturn,ReturnAmount,ReturnAmountCurrency,ReturnReason,Resolution
302-111,C-1,2024-03-20,5.50,EUR,Defective,Refund
"""

MARCH = DateRange(start=date(2024, 3, 1), end=date(2024, 3, 31))


@pytest.fixture
def credentials() -> ConnectorCredentials:
    return ConnectorCredentials(user_id="me@example.com", pin="unused")


class TestAmazonConnector:
    @pytest.mark.asyncio
    async def test_orders_and_refunds(self, tmp_path: Path, credentials: ConnectorCredentials) -> None:
        orders = tmp_path / "orders.csv"
        refunds = tmp_path / "refunds.csv"
        orders.write_text(ORDERS)
        refunds.write_text(REFUNDS)

        connector = AmazonConnector("amazon", orders_path=str(orders), refunds_path=str(refunds))
        await connector.initialize(credentials)
        result = await connector.connect()
        assert result.connected
        assert result.accounts[0].account_type == "orders"

        fetched = await connector.fetch_transactions(MARCH)
        assert fetched.success
        amounts = sorted(t.amount for t in fetched.transactions)
        assert amounts == [Decimal("-15.50"), Decimal("5.50")]
        assert fetched.stats.total_rows == 3

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path, credentials: ConnectorCredentials) -> None:
        connector = AmazonConnector("amazon", orders_path=str(tmp_path / "nope.csv"))
        await connector.initialize(credentials)
        result = await connector.connect()
        assert result.error_code == ErrorCode.CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_unsupported_export(self, tmp_path: Path, credentials: ConnectorCredentials) -> None:
        orders = tmp_path / "orders.csv"
        orders.write_text("foo,bar\n1,2\n")
        connector = AmazonConnector("amazon", orders_path=str(orders))
        await connector.initialize(credentials)
        await connector.connect()

        result = await connector.fetch_transactions(MARCH)
        assert result.error_code == ErrorCode.UNSUPPORTED_FORMAT
        assert "Found headers: foo, bar" in result.errors[0]
