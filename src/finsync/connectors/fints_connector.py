"""
FinTS Connector — German banks over FinTS 3.0 PIN/TAN (HBCI).

Works with Sparkassen and most other German banks that expose a PIN/TAN
endpoint. Login runs in phases (``sync`` -> ``open`` -> ``accounts``); the
bank may demand a TAN when the dialog opens, and again when statements older
than its SCA window are requested. Each paused phase resumes where it stopped.

The protocol itself lives in ``fints_dialog``; everything here is async and
runs the blocking dialog calls in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable, Iterable

from finsync.connectors.base import BaseConnector, PendingOperation
from finsync.connectors.fints_dialog import BankingDialog, PinTanDialog, TanMethod, TanRequest
from finsync.errors import ConnectionFailedError
from finsync.models.connector import ConnectorCredentials, ConnectorType, MFAChallenge, MFAType
from finsync.models.results import ConnectResult, FetchResult, ImportStats
from finsync.models.transaction import AccountInfo, DateRange
from finsync.parsers.statements import StatementParser

logger = logging.getLogger("finsync.connectors.fints")

# Known PIN/TAN endpoints by bank code (BLZ).
KNOWN_ENDPOINTS: dict[str, str] = {
    "10050000": "https://banking-be3.s-fints-pt-be.de/fints30",
    "20050550": "https://banking-hh7.s-fints-pt-hh.de/fints30",
    "25050180": "https://banking.s-fints-pt-ni.de/PinTanServlet",
    "37050299": "https://hbci-pintan-rl.s-hbci.de/PinTanServlet",
    "30050110": "https://hbci-pintan-rl.s-hbci.de/PinTanServlet",
    "50850150": "https://banking-hs3.s-fints-pt-hs.de/fints30",
    "50050201": "https://banking-hs3.s-fints-pt-hs.de/fints30",
    "66050101": "https://hbci-pintan-bw.s-hbci.de/PinTanServlet",
    "60050101": "https://hbci-pintan-bw.s-hbci.de/PinTanServlet",
    "76050101": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
    "70050000": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
    "71151020": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
}

# Regional fallbacks by the first two digits of the bank code.
REGIONAL_ENDPOINTS: dict[str, str] = {
    "10": "https://banking-be3.s-fints-pt-be.de/fints30",
    "20": "https://banking-hh7.s-fints-pt-hh.de/fints30",
    "25": "https://banking.s-fints-pt-ni.de/PinTanServlet",
    "30": "https://hbci-pintan-rl.s-hbci.de/PinTanServlet",
    "37": "https://hbci-pintan-rl.s-hbci.de/PinTanServlet",
    "50": "https://banking-hs3.s-fints-pt-hs.de/fints30",
    "60": "https://hbci-pintan-bw.s-hbci.de/PinTanServlet",
    "66": "https://hbci-pintan-bw.s-hbci.de/PinTanServlet",
    "70": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
    "76": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
    "80": "https://hbci-pintan-by.s-hbci.de/PinTanServlet",
    "86": "https://banking-sn3.s-fints-pt-sn.de/fints30",
}

PHASE_SYNC = "sync"
PHASE_OPEN = "open"
PHASE_ACCOUNTS = "accounts"

# A decoupled challenge is confirmed out of band; this code is accepted in place of a TAN.
PUSH_CONFIRMED = "push_confirmed"

DialogFactory = Callable[..., BankingDialog]


def resolve_endpoint(bank_code: str, overrides: dict[str, str] | None = None) -> str | None:
    """Find the PIN/TAN URL for ``bank_code``: overrides, known banks, then region."""
    code = (bank_code or "").replace(" ", "")
    if overrides and code in overrides:
        return overrides[code]
    if code in KNOWN_ENDPOINTS:
        return KNOWN_ENDPOINTS[code]
    return REGIONAL_ENDPOINTS.get(code[:2])


def classify_decoupled(
    flag: bool | None,
    message: str,
    method_name: str,
    message_phrases: Iterable[str],
    method_phrases: Iterable[str],
) -> tuple[bool, str]:
    """Decide whether a challenge is confirmed out of band.

    Checks, in order, the protocol flag, the challenge text and the TAN
    method name. Returns the decision and the signal that produced it.
    """
    if flag:
        return True, "protocol_flag"
    text = (message or "").lower()
    for phrase in message_phrases:
        if phrase.lower() in text:
            return True, f"message:{phrase}"
    name = (method_name or "").lower()
    for phrase in method_phrases:
        if phrase.lower() in name:
            return True, f"method:{phrase}"
    return False, "none"


def challenge_type_for(method_name: str, decoupled: bool) -> MFAType:
    if decoupled:
        return MFAType.DECOUPLED
    name = (method_name or "").lower()
    if "photo" in name:
        return MFAType.PHOTO_TAN
    if "chip" in name:
        return MFAType.CHIP_TAN
    if "sms" in name:
        return MFAType.SMS
    if "push" in name or "app" in name:
        return MFAType.APP_TAN
    return MFAType.PUSH


class FinTSConnector(BaseConnector):
    """Fetch transactions over FinTS PIN/TAN.

    Usage::

        connector = FinTSConnector("sparkasse")
        await connector.initialize(
            ConnectorCredentials(user_id="12345678", pin="...", bank_code="10050000")
        )
        result = await connector.connect()
        if result.requires_mfa:
            result = await connector.submit_mfa("123456")
        fetched = await connector.fetch_transactions(DateRange.last_days(30))
    """

    name = "fints"
    description = "German banks via FinTS 3.0 PIN/TAN"
    connector_type = ConnectorType.FINTS

    def __init__(
        self,
        connector_id: str | None = None,
        *,
        dialog_factory: DialogFactory | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(connector_id, **kwargs)
        self.settings = self.config.fints
        self._dialog_factory = dialog_factory or PinTanDialog
        self._dialog: BankingDialog | None = None
        self._tan_method: TanMethod | None = None
        self.endpoint: str | None = None
        self.parser = StatementParser(
            source_id="fints",
            default_currency=self.config.imports.default_currency,
        )

    def _validate_credentials(self, credentials: ConnectorCredentials) -> None:
        if not credentials.bank_code:
            raise ConnectionFailedError("FinTS requires a bank code (BLZ)")
        endpoint = resolve_endpoint(credentials.bank_code, self.settings.endpoints)
        if endpoint is None:
            raise ConnectionFailedError(f"No FinTS endpoint known for bank code {credentials.bank_code}")
        self.endpoint = endpoint

    @property
    def dialog(self) -> BankingDialog:
        if self._dialog is None:
            raise ConnectionFailedError("No open banking dialog")
        return self._dialog

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def _connect(self) -> ConnectResult:
        await self._close_dialog()
        logger.info("Opening FinTS dialog with %s for bank %s", self.endpoint, self.bank_code)
        self._dialog = self._dialog_factory(
            self.bank_code,
            self.user_id,
            self.secret,
            self.endpoint,
            product_id=self.settings.product_id,
            product_version=self.settings.product_version,
        )
        return await self._handshake(PHASE_SYNC)

    async def _handshake(self, phase: str) -> ConnectResult:
        if phase == PHASE_SYNC:
            await self._choose_tan_method()
            phase = PHASE_OPEN

        if phase == PHASE_OPEN:
            request = await self._call(self.dialog.open)
            if request is not None:
                return self._pause_connect(self._challenge_for(request), phase=PHASE_OPEN, continuation=request)

        accounts = await self._load_accounts()
        logger.info("FinTS login complete for bank %s (%d account(s))", self.bank_code, len(accounts))
        return ConnectResult.done(accounts)

    async def _choose_tan_method(self) -> None:
        methods: list[TanMethod] = await self._call(self.dialog.load_tan_methods)
        self._tan_method = None
        if not methods:
            logger.info("Bank %s offers no two-step TAN methods", self.bank_code)
            return

        preferred = (self.mfa_method or self.settings.preferred_tan_method or "").lower()
        chosen = methods[0]
        if preferred:
            for method in methods:
                if preferred in (method.code.lower(), method.name.lower()):
                    chosen = method
                    break
        else:
            for method in methods:
                if method.decoupled:
                    chosen = method
                    break

        await self._call(self.dialog.select_tan_method, chosen)
        self._tan_method = chosen
        logger.info("Using TAN method %s (%s)", chosen.name, chosen.code)

        if await self._call(self.dialog.tan_media_required):
            media = await self._call(self.dialog.tan_media)
            if media:
                await self._call(self.dialog.select_tan_medium, media[0])
                logger.info("Using TAN medium %s", media[0])

    async def _submit_mfa(self, pending: PendingOperation, code: str | None) -> ConnectResult:
        outcome = await self._send_tan(pending, code)
        if isinstance(outcome, TanRequest):
            if self._awaiting_approval(pending, code):
                pending.continuation = outcome
                return ConnectResult.pending(self._still_pending(pending, self._waiting_message()))
            return self._pause_connect(self._challenge_for(outcome), phase=pending.phase, continuation=outcome)
        return await self._handshake(_next_phase(pending.phase))

    async def _load_accounts(self) -> list[AccountInfo]:
        raw = await self._call(self.dialog.load_accounts)
        return [
            AccountInfo(
                account_number=str(item.get("account_number") or item.get("iban") or ""),
                iban=item.get("iban"),
                bic=item.get("bic"),
                account_type=item.get("account_type") or "checking",
                currency=item.get("currency") or "EUR",
                owner_name=item.get("owner_name"),
            )
            for item in raw
        ]

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _fetch(self, date_range: DateRange, account: str | None) -> FetchResult:
        account_id = account or self._default_account()
        logger.info("Fetching FinTS statements for %s (%s to %s)", account_id, date_range.start, date_range.end)
        outcome = await self._call(self.dialog.fetch_statements, account_id, date_range.start, date_range.end)
        if isinstance(outcome, TanRequest):
            return self._pause_fetch(
                self._challenge_for(outcome),
                date_range=date_range,
                account=account_id,
                continuation=outcome,
            )
        return self._to_result(outcome, date_range)

    async def _fetch_with_mfa(self, pending: PendingOperation, code: str | None) -> FetchResult:
        outcome = await self._send_tan(pending, code)
        if isinstance(outcome, TanRequest):
            if self._awaiting_approval(pending, code):
                pending.continuation = outcome
                return FetchResult.pending(self._still_pending(pending, self._waiting_message()))
            return self._pause_fetch(
                self._challenge_for(outcome),
                date_range=pending.date_range,
                account=pending.account,
                continuation=outcome,
            )
        return self._to_result(outcome or [], pending.date_range)

    def _default_account(self) -> str:
        if not self._accounts:
            raise ConnectionFailedError("No bank account available for this login")
        first = self._accounts[0]
        return first.iban or first.account_number

    def _to_result(self, statements: list[dict[str, Any]], date_range: DateRange | None) -> FetchResult:
        parsed = self.parser.parse(statements)
        stats = ImportStats(total_rows=len(parsed.transactions) + parsed.skipped, skipped=parsed.skipped)
        transactions = []
        for tx in parsed.transactions:
            if date_range is not None and not date_range.contains(tx.date):
                stats.skipped += 1
                continue
            transactions.append(tx)
        stats.imported = len(transactions)
        return FetchResult.ok(transactions, stats)

    # ------------------------------------------------------------------
    # TAN handling
    # ------------------------------------------------------------------

    async def _send_tan(self, pending: PendingOperation, code: str | None) -> Any:
        request: TanRequest = pending.continuation
        tan = (code or "").strip()
        if pending.challenge.decoupled and tan == PUSH_CONFIRMED:
            tan = ""
        return await self._call(self.dialog.send_tan, request, tan)

    @staticmethod
    def _awaiting_approval(pending: PendingOperation, code: str | None) -> bool:
        tan = (code or "").strip()
        return bool(pending.challenge.decoupled) and tan in ("", PUSH_CONFIRMED)

    def _waiting_message(self) -> str:
        return "Still waiting for confirmation in your banking app..."

    def _challenge_for(self, request: TanRequest) -> MFAChallenge:
        method_name = self._tan_method.name if self._tan_method else ""
        flag = request.decoupled or (self._tan_method.decoupled if self._tan_method else None)
        decoupled, signal = classify_decoupled(
            flag,
            request.challenge,
            method_name,
            self.settings.decoupled_message_phrases,
            self.settings.decoupled_method_phrases,
        )
        challenge_type = challenge_type_for(method_name, decoupled)
        logger.info("FinTS challenge type=%s decoupled=%s (signal: %s)", challenge_type.value, decoupled, signal)

        image = None
        if request.image:
            image = base64.b64encode(request.image).decode("ascii")
        return MFAChallenge(
            type=challenge_type,
            message=request.challenge or (
                "Please confirm in your banking app" if decoupled else "Please enter the TAN"
            ),
            image=image,
            image_mime_type=request.image_mime_type if image else None,
            decoupled=decoupled,
            expires_at=self._challenge_expiry(self.settings.challenge_ttl_seconds),
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _close_dialog(self) -> None:
        dialog, self._dialog = self._dialog, None
        if dialog is not None:
            try:
                await self._call(dialog.close)
            except Exception as e:
                logger.warning("Error closing FinTS dialog: %s", e)

    async def _release_resources(self) -> None:
        await self._close_dialog()

    async def _disconnect(self) -> None:
        await self._close_dialog()
        self._accounts = []
        self._tan_method = None
        logger.info("FinTS connector %s disconnected", self.connector_id)


def _next_phase(phase: str | None) -> str:
    if phase == PHASE_SYNC:
        return PHASE_OPEN
    return PHASE_ACCOUNTS
