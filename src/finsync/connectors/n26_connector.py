"""
N26 Connector — the N26 mobile banking API.

Uses the (unofficial) API the N26 apps talk to. Login is an OAuth2 password
grant that answers with an MFA token; the second factor is either an SMS code
(``mfa_otp`` grant) or an approval in the N26 app (``mfa_oob`` grant, polled
until it stops answering ``authorization_pending``).

N26 does not officially support third-party access. The API may change
without notice.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timezone
from typing import Any

import httpx

from finsync.auth.tokens import OAuth2TokenManager
from finsync.connectors.base import BaseConnector, PendingOperation
from finsync.errors import (
    ConnectionFailedError,
    MFAInvalidError,
    SessionExpiredError,
)
from finsync.models.connector import ConnectorType, MFAChallenge, MFAType
from finsync.models.results import ConnectResult, FetchResult, ImportStats
from finsync.models.transaction import AccountInfo, DateRange, FetchedTransaction
from finsync.parsers.amounts import parse_amount

logger = logging.getLogger("finsync.connectors.n26")

_STILL_WAITING = "Still waiting for approval in your N26 app..."


def device_token_for(user_id: str) -> str:
    """Stable per-user device id, so N26 sees the same "device" on every login."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"finsync:n26:{user_id.lower()}"))


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class N26Connector(BaseConnector):
    """Fetch transactions from an N26 account.

    Usage::

        connector = N26Connector("n26-main")
        await connector.initialize(ConnectorCredentials(user_id="me@example.com", pin="..."))
        result = await connector.connect()          # usually requires_mfa
        result = await connector.submit_mfa(None)   # poll app approval
        fetched = await connector.fetch_transactions(DateRange.last_days(30))

    Set ``mfa_method="sms"`` in the credentials to receive an SMS code
    instead of an app approval.
    """

    name = "n26"
    description = "N26 mobile banking API"
    connector_type = ConnectorType.N26

    def __init__(self, connector_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(connector_id, **kwargs)
        self.settings = self.config.n26
        self._base_url = self.settings.base_url.rstrip("/")
        self._http: httpx.AsyncClient | None = None
        self._tokens: OAuth2TokenManager | None = None
        self.device_token = ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.settings.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def _disconnect(self) -> None:
        if self._tokens is not None:
            self._tokens.clear()
        self._tokens = None
        self._accounts = []
        if self._http and not self._http.is_closed:
            await self._http.aclose()
        logger.info("N26 connector %s disconnected", self.connector_id)

    @property
    def tokens(self) -> OAuth2TokenManager:
        if self._tokens is None:
            self._tokens = OAuth2TokenManager(
                provider="n26",
                client_id=self.settings.client_id,
                client_secret=self.settings.client_secret,
                token_url=f"{self._base_url}/oauth2/token",
                headers={"device-token": self.device_token},
                refresh_margin=self.settings.refresh_margin_seconds,
                client_factory=self._get_client,
            )
        return self._tokens

    @property
    def _uses_sms(self) -> bool:
        return (self.mfa_method or "").lower() == "sms"

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _connect(self) -> ConnectResult:
        self.device_token = device_token_for(self.user_id or "")
        self._tokens = None
        logger.info("Requesting N26 token for %s", self.user_id)

        status, body = await self.tokens.request_grant(
            "password",
            username=self.user_id or "",
            password=self.secret,
        )

        if status == 200 and "access_token" in body:
            return await self._complete_login(body)

        mfa_token = body.get("mfaToken") or (body.get("userMessage") or {}).get("token")
        if mfa_token or body.get("error") == "mfa_required":
            if not mfa_token:
                raise ConnectionFailedError("N26 requires MFA but returned no MFA token")
            await self._request_challenge(mfa_token)
            challenge = MFAChallenge(
                type=MFAType.SMS if self._uses_sms else MFAType.PUSH,
                message=(
                    "Please enter the verification code sent to your phone."
                    if self._uses_sms
                    else "Please approve the login request in your N26 app."
                ),
                decoupled=not self._uses_sms,
                expires_at=self._challenge_expiry(self.settings.challenge_ttl_seconds),
            )
            return self._pause_connect(challenge, continuation=mfa_token)

        detail = body.get("error_description") or body.get("detail") or body.get("error")
        if status in (400, 401, 403):
            raise ConnectionFailedError(detail or "N26 rejected the credentials")
        raise ConnectionFailedError(f"Unexpected response from N26 API (HTTP {status})")

    async def _request_challenge(self, mfa_token: str) -> None:
        """Ask N26 to deliver the second factor (SMS code or app push)."""
        client = await self._get_client()
        resp = await client.post(
            f"{self._base_url}/api/mfa/challenge",
            json={"challengeType": "otp" if self._uses_sms else "oob", "mfaToken": mfa_token},
            auth=(self.settings.client_id, self.settings.client_secret),
            headers={"device-token": self.device_token},
        )
        if resp.status_code >= 400:
            raise ConnectionFailedError(f"N26 could not send the MFA challenge (HTTP {resp.status_code})")

    async def _submit_mfa(self, pending: PendingOperation, code: str | None) -> ConnectResult:
        mfa_token = pending.continuation
        if code and code.strip():
            status, body = await self.tokens.request_grant("mfa_otp", mfaToken=mfa_token, otp=code.strip())
        else:
            status, body = await self.tokens.request_grant("mfa_oob", mfaToken=mfa_token)

        if status == 200 and "access_token" in body:
            return await self._complete_login(body)

        if body.get("error") == "authorization_pending":
            logger.debug("N26 app approval still pending for %s", self.connector_id)
            return ConnectResult.pending(self._still_pending(pending, _STILL_WAITING))

        raise MFAInvalidError(body.get("error_description") or body.get("error") or f"HTTP {status}")

    async def _complete_login(self, body: dict[str, Any]) -> ConnectResult:
        self.tokens.set_token(body)
        accounts = await self._load_accounts()
        logger.info("N26 login complete for %s (%d account(s))", self.user_id, len(accounts))
        return ConnectResult.done(accounts)

    async def _api_headers(self) -> dict[str, str]:
        headers = await self.tokens.get_auth_header()
        headers["device-token"] = self.device_token
        return headers

    async def validate_session(self) -> bool:
        if not self._connected:
            return False
        client = await self._get_client()
        resp = await client.get(f"{self._base_url}/api/me", headers=await self._api_headers())
        return resp.status_code == 200

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _load_accounts(self) -> list[AccountInfo]:
        client = await self._get_client()
        resp = await client.get(f"{self._base_url}/api/accounts", headers=await self._api_headers())
        if resp.status_code != 200:
            logger.warning("Could not load N26 account info (HTTP %d)", resp.status_code)
            return []

        data = resp.json() or {}
        items = data if isinstance(data, list) else [data]
        accounts = []
        for item in items:
            if not item.get("id"):
                continue
            accounts.append(
                AccountInfo(
                    account_number=str(item["id"]),
                    iban=item.get("iban"),
                    bic=item.get("bic"),
                    account_type="current",
                    currency=item.get("currency") or "EUR",
                    balance=parse_amount(item.get("availableBalance")),
                )
            )
        return accounts

    async def _fetch(self, date_range: DateRange, account: str | None) -> FetchResult:
        client = await self._get_client()
        start = datetime.combine(date_range.start, time.min, tzinfo=timezone.utc)
        end = datetime.combine(date_range.end, time.max, tzinfo=timezone.utc)
        params: dict[str, Any] = {
            "from": _epoch_ms(start),
            "to": _epoch_ms(end),
            "limit": self.settings.page_size,
        }

        result = FetchResult(success=True, stats=ImportStats())
        for page in range(self.settings.max_pages):
            resp = await client.get(
                f"{self._base_url}/api/smrt/transactions",
                params=params,
                headers=await self._api_headers(),
            )
            if resp.status_code == 401:
                raise SessionExpiredError()
            if resp.status_code != 200:
                raise ConnectionFailedError(f"N26 API error: HTTP {resp.status_code}")

            batch = resp.json() or []
            for item in batch:
                result.stats.total_rows += 1
                try:
                    tx = self._transform(item)
                except (KeyError, TypeError, ValueError) as e:
                    result.stats.errors += 1
                    result.add_error(f"Transaction {item.get('id', '?')}: {e}")
                    continue
                if not date_range.contains(tx.date):
                    result.stats.skipped += 1
                    continue
                result.transactions.append(tx)
                result.stats.imported += 1

            self._report_progress(page + 1, None, f"{len(result.transactions)} transactions")
            if len(batch) < self.settings.page_size or not batch[-1].get("id"):
                break
            params["lastId"] = batch[-1]["id"]

        logger.info("Fetched %d N26 transactions", len(result.transactions))
        return result

    def _transform(self, tx: dict[str, Any]) -> FetchedTransaction:
        amount = parse_amount(tx["amount"])
        if amount is None:
            raise ValueError(f"invalid amount {tx['amount']!r}")
        booked = datetime.fromtimestamp(int(tx["visibleTS"]) / 1000, tz=timezone.utc).date()

        reference = tx.get("referenceText")
        description = (
            tx.get("merchantName") or tx.get("partnerName") or reference or tx.get("type") or "N26 Transaction"
        )
        if reference and reference != description:
            description = f"{description} - {reference}"

        beneficiary = tx.get("partnerName") or tx.get("merchantName")
        if tx.get("partnerIban"):
            beneficiary = f"{beneficiary} ({tx['partnerIban']})" if beneficiary else tx["partnerIban"]

        return FetchedTransaction(
            external_id=f"n26-{tx['id']}",
            date=booked,
            description=description.strip(),
            amount=amount,
            beneficiary=beneficiary,
            currency=tx.get("currencyCode") or "EUR",
            raw_data={
                "type": tx.get("type"),
                "merchant_city": tx.get("merchantCity"),
                "mcc": tx.get("mcc"),
                "original_amount": tx.get("originalAmount"),
                "original_currency": tx.get("originalCurrency"),
                "exchange_rate": tx.get("exchangeRate"),
                "recurring": tx.get("recurring", False),
                "pending": tx.get("pending", False),
                "category": tx.get("category"),
            },
        )
