"""Tests for the N26 connector with mocked API responses."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from finsync.connectors.n26_connector import N26Connector, device_token_for
from finsync.errors import ErrorCode
from finsync.models.connector import ConnectorCredentials, MFAType
from finsync.models.transaction import DateRange

# ---------------------------------------------------------------------------
# Mock data
# ---------------------------------------------------------------------------

MOCK_MFA_REQUIRED = {"error": "mfa_required", "mfaToken": "mfa-token-1"}
MOCK_PENDING = {"error": "authorization_pending"}
MOCK_TOKEN = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 1200,
    "token_type": "bearer",
}
MOCK_ACCOUNT = {
    "id": "acc-1",
    "iban": "DE89370400440532013000",
    "bic": "NTSBDEB1XXX",
    "currency": "EUR",
    "availableBalance": 1234.56,
}
MOCK_TRANSACTIONS = [
    {
        "id": "tx-1",
        "amount": -12.5,
        "currencyCode": "EUR",
        "visibleTS": 1714600000000,  # 2024-05-01T21:46:40Z
        "merchantName": "REWE",
        "referenceText": "Einkauf",
        "type": "PT",
    },
    {
        "id": "tx-2",
        "amount": 2500,
        "visibleTS": 1714700000000,  # 2024-05-03
        "partnerName": "Arbeitgeber AG",
        "partnerIban": "DE02120300000000202051",
        "type": "CT",
    },
]


def _response(status: int, body) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status
    mock_response.json.return_value = body
    return mock_response


@pytest.fixture
def credentials() -> ConnectorCredentials:
    return ConnectorCredentials(user_id="me@example.com", pin="s3cret")


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock()
    client.is_closed = False
    return client


@pytest_asyncio.fixture
async def connector(credentials: ConnectorCredentials, mock_client: AsyncMock) -> N26Connector:
    conn = N26Connector("n26")
    await conn.initialize(credentials)
    conn._http = mock_client
    return conn


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestN26Login:
    def test_device_token_is_stable(self) -> None:
        assert device_token_for("Me@Example.com") == device_token_for("me@example.com")
        assert device_token_for("a@example.com") != device_token_for("b@example.com")

    @pytest.mark.asyncio
    async def test_connect_without_mfa(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        mock_client.post.return_value = _response(200, MOCK_TOKEN)
        mock_client.get.return_value = _response(200, MOCK_ACCOUNT)

        result = await connector.connect()

        assert result.success and result.connected
        assert result.accounts[0].iban == "DE89370400440532013000"
        assert result.accounts[0].balance == Decimal("1234.56")
        assert connector.is_connected()

        grant = mock_client.post.call_args_list[0]
        assert grant[0][0] == "https://api.tech26.de/oauth2/token"
        assert grant[1]["data"]["grant_type"] == "password"
        assert grant[1]["headers"]["device-token"] == device_token_for("me@example.com")

    @pytest.mark.asyncio
    async def test_app_approval_polls_until_done(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        mock_client.post.side_effect = [
            _response(403, MOCK_MFA_REQUIRED),
            _response(200, {}),  # challenge delivery
            _response(400, MOCK_PENDING),
            _response(400, MOCK_PENDING),
            _response(400, MOCK_PENDING),
            _response(200, MOCK_TOKEN),
        ]
        mock_client.get.return_value = _response(200, [MOCK_ACCOUNT])

        result = await connector.connect()
        assert result.requires_mfa
        challenge = result.mfa_challenge
        assert challenge.decoupled
        assert challenge.type == MFAType.PUSH

        challenge_call = mock_client.post.call_args_list[1]
        assert challenge_call[1]["json"] == {"challengeType": "oob", "mfaToken": "mfa-token-1"}

        for _ in range(3):
            result = await connector.submit_mfa(None, challenge.reference)
            assert result.requires_mfa
            assert result.mfa_challenge.reference == challenge.reference

        result = await connector.submit_mfa(None, challenge.reference)
        assert result.connected
        assert connector.pending is None
        assert mock_client.post.call_args_list[-1][1]["data"]["grant_type"] == "mfa_oob"

    @pytest.mark.asyncio
    async def test_sms_code(self, credentials: ConnectorCredentials, mock_client: AsyncMock) -> None:
        conn = N26Connector("n26")
        await conn.initialize(credentials.model_copy(update={"mfa_method": "sms"}))
        conn._http = mock_client
        mock_client.post.side_effect = [
            _response(403, MOCK_MFA_REQUIRED),
            _response(200, {}),
            _response(200, MOCK_TOKEN),
        ]
        mock_client.get.return_value = _response(200, MOCK_ACCOUNT)

        result = await conn.connect()
        assert result.mfa_challenge.type == MFAType.SMS
        assert not result.mfa_challenge.decoupled

        missing = await conn.submit_mfa("")
        assert missing.error_code == ErrorCode.MFA_INVALID
        assert conn.pending is not None

        result = await conn.submit_mfa("123456")
        assert result.connected
        otp = mock_client.post.call_args_list[-1][1]["data"]
        assert otp == {"grant_type": "mfa_otp", "mfaToken": "mfa-token-1", "otp": "123456"}

    @pytest.mark.asyncio
    async def test_rejected_code_is_terminal(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        mock_client.post.side_effect = [
            _response(403, MOCK_MFA_REQUIRED),
            _response(200, {}),
            _response(400, {"error": "invalid_otp"}),
        ]
        await connector.connect()
        result = await connector.submit_mfa("000000")
        assert result.error_code == ErrorCode.MFA_INVALID
        assert connector.pending is None

    @pytest.mark.asyncio
    async def test_wrong_password(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        mock_client.post.return_value = _response(401, {"error": "invalid_grant", "error_description": "Bad credentials"})
        result = await connector.connect()
        assert not result.success
        assert result.error == "Bad credentials"
        assert result.error_code == ErrorCode.CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_submit_without_challenge(self, connector: N26Connector) -> None:
        result = await connector.submit_mfa("123456")
        assert result.error_code == ErrorCode.NO_PENDING_CHALLENGE

    @pytest.mark.asyncio
    async def test_secret_not_in_repr(self, credentials: ConnectorCredentials) -> None:
        assert "s3cret" not in repr(credentials)
        assert "s3cret" not in credentials.partial().model_dump_json()


class TestN26Fetch:
    async def _connected(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        mock_client.post.return_value = _response(200, MOCK_TOKEN)
        mock_client.get.return_value = _response(200, MOCK_ACCOUNT)
        await connector.connect()

    @pytest.mark.asyncio
    async def test_fetch_transactions(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        mock_client.get.return_value = _response(200, MOCK_TRANSACTIONS)

        result = await connector.fetch_transactions(DateRange(start=date(2024, 5, 1), end=date(2024, 5, 31)))

        assert result.success
        assert result.stats.imported == 2
        first, second = result.transactions
        assert first.external_id == "n26-tx-1"
        assert first.date == date(2024, 5, 1)
        assert first.amount == Decimal("-12.5")
        assert first.description == "REWE - Einkauf"
        assert second.beneficiary == "Arbeitgeber AG (DE02120300000000202051)"

        params = mock_client.get.call_args[1]["params"]
        assert params["limit"] == 500
        assert mock_client.get.call_args[1]["headers"]["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_out_of_range_is_skipped(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        mock_client.get.return_value = _response(200, MOCK_TRANSACTIONS)

        result = await connector.fetch_transactions(DateRange(start=date(2024, 5, 2), end=date(2024, 5, 31)))
        assert [t.external_id for t in result.transactions] == ["n26-tx-2"]
        assert result.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_bad_row_is_counted(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        mock_client.get.return_value = _response(200, [{"id": "broken", "amount": "abc", "visibleTS": 0}])

        result = await connector.fetch_transactions(DateRange.last_days(30))
        assert result.success
        assert result.stats.errors == 1
        assert result.errors[0].startswith("Transaction broken")

    @pytest.mark.asyncio
    async def test_expired_session(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        mock_client.get.return_value = _response(401, {})

        result = await connector.fetch_transactions(DateRange.last_days(30))
        assert result.error_code == ErrorCode.SESSION_EXPIRED
        assert not connector.is_connected()

    @pytest.mark.asyncio
    async def test_fetch_requires_connection(self, connector: N26Connector) -> None:
        result = await connector.fetch_transactions(DateRange.last_days(7))
        assert result.error_code == ErrorCode.INVALID_STATE

    @pytest.mark.asyncio
    async def test_fetch_never_needs_mfa(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        result = await connector.fetch_transactions_with_mfa("123456")
        assert result.error_code == ErrorCode.NO_PENDING_CHALLENGE

    @pytest.mark.asyncio
    async def test_disconnect_wipes_secret(self, connector: N26Connector, mock_client: AsyncMock) -> None:
        await self._connected(connector, mock_client)
        await connector.disconnect()
        assert not connector.is_connected()
        assert connector._secret is None
        mock_client.aclose.assert_awaited()
