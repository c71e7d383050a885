"""
FinTS dialog — the thin layer between the FinTS connector and python-fints.

This is the only module that imports ``fints``. It exposes the small
synchronous ``BankingDialog`` protocol the connector drives, and normalizes
vendor objects (TAN responses, SEPA accounts, MT940 records) into plain data.
The connector runs every call in a worker thread.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

from fints.client import FinTS3PinTanClient, NeedTANResponse
from fints.exceptions import FinTSClientPINError, FinTSError

from finsync.errors import ConnectionFailedError, FinSyncError, MFAInvalidError

logger = logging.getLogger("finsync.connectors.fints.dialog")

OPEN = "open"
STATEMENTS = "statements"


@contextlib.contextmanager
def bank_errors(action: str, error: type[FinSyncError] = ConnectionFailedError):
    """Re-raise python-fints errors as ``error``, joining the bank answers with ``; ``."""
    try:
        yield
    except FinTSClientPINError as e:
        raise ConnectionFailedError(str(e) or "The bank rejected the PIN") from e
    except FinTSError as e:
        answers = [str(a).strip() for a in e.args if str(a).strip()]
        logger.warning("%s failed: %s", action, answers)
        raise error("; ".join(answers) or f"{action} failed") from e


@dataclass
class TanMethod:
    code: str
    name: str
    decoupled: bool | None = None


@dataclass
class TanRequest:
    """The bank demands a TAN before ``operation`` can finish."""

    operation: str
    challenge: str
    decoupled: bool | None = None
    image: bytes | None = None
    image_mime_type: str | None = None
    hhduc: str | None = None
    raw: Any = None


class BankingDialog(Protocol):
    """Synchronous PIN/TAN dialog with one bank."""

    def load_tan_methods(self) -> list[TanMethod]: ...

    def select_tan_method(self, method: TanMethod) -> None: ...

    def tan_media_required(self) -> bool: ...

    def tan_media(self) -> list[str]: ...

    def select_tan_medium(self, name: str) -> None: ...

    def open(self) -> TanRequest | None: ...

    def load_accounts(self) -> list[dict[str, Any]]: ...

    def fetch_statements(self, account: str, start: date, end: date) -> TanRequest | list[dict[str, Any]]: ...

    def send_tan(self, request: TanRequest, tan: str) -> TanRequest | list[dict[str, Any]] | None: ...

    def close(self) -> None: ...


def normalize_mt940(tx: Any) -> dict[str, Any]:
    """Flatten an ``mt940`` transaction into the ``transactions`` statement encoding."""
    data = getattr(tx, "data", tx)
    amount = data.get("amount")
    return {
        "date": data.get("date"),
        "entry_date": data.get("entry_date"),
        "amount": getattr(amount, "amount", amount),
        "currency": getattr(amount, "currency", None),
        "purpose": data.get("purpose"),
        "partner_name": data.get("applicant_name"),
        "partner_iban": data.get("applicant_iban"),
        "partner_bic": data.get("applicant_bin"),
        "posting_text": data.get("posting_text"),
        "end_to_end_reference": data.get("end_to_end_reference"),
        "customer_reference": data.get("customer_reference"),
        "bank_reference": data.get("bank_reference"),
        "transaction_code": data.get("transaction_code"),
    }


class PinTanDialog:
    """``BankingDialog`` backed by ``fints.client.FinTS3PinTanClient``.

    The standing dialog is opened once and kept until ``close()``.
    """

    def __init__(
        self,
        bank_code: str,
        user_id: str,
        pin: str,
        endpoint: str,
        *,
        product_id: str,
        product_version: str = "1.0.0",
    ) -> None:
        self._client = FinTS3PinTanClient(
            bank_code,
            user_id,
            pin,
            endpoint,
            product_id=product_id,
            product_version=product_version,
        )
        self._stack = contextlib.ExitStack()
        self._media: dict[str, Any] = {}
        self._sepa_accounts: dict[str, Any] = {}

    def load_tan_methods(self) -> list[TanMethod]:
        with bank_errors("Synchronization"):
            self._client.fetch_tan_mechanisms()
        methods = []
        for code, params in self._client.get_tan_mechanisms().items():
            poll_limit = getattr(params, "decoupled_max_poll_number", None)
            methods.append(
                TanMethod(
                    code=str(code),
                    name=getattr(params, "name", str(code)),
                    decoupled=True if poll_limit else None,
                )
            )
        return methods

    def select_tan_method(self, method: TanMethod) -> None:
        self._client.set_tan_mechanism(method.code)

    def tan_media_required(self) -> bool:
        return bool(self._client.is_tan_media_required())

    def tan_media(self) -> list[str]:
        with bank_errors("Loading TAN media"):
            _usage, media = self._client.get_tan_media()
        self._media = {m.tan_medium_name: m for m in media if getattr(m, "tan_medium_name", None)}
        return list(self._media)

    def select_tan_medium(self, name: str) -> None:
        self._client.set_tan_medium(self._media[name])

    def open(self) -> TanRequest | None:
        with bank_errors("Dialog initialization"):
            self._stack.enter_context(self._client)
        init = self._client.init_tan_response
        if isinstance(init, NeedTANResponse):
            return self._tan_request(OPEN, init)
        return None

    def load_accounts(self) -> list[dict[str, Any]]:
        with bank_errors("Loading accounts"):
            sepa = self._client.get_sepa_accounts()
            info = self._client.get_information() or {}
        details: dict[str, dict[str, Any]] = {}
        for item in info.get("accounts", []):
            if item.get("iban"):
                details[item["iban"]] = item

        accounts = []
        self._sepa_accounts = {}
        for acc in sepa:
            extra = details.get(acc.iban, {})
            self._sepa_accounts[acc.iban] = acc
            self._sepa_accounts[acc.accountnumber] = acc
            accounts.append({
                "iban": acc.iban,
                "bic": acc.bic,
                "account_number": acc.accountnumber,
                "currency": extra.get("currency") or "EUR",
                "owner_name": ", ".join(extra.get("owner_name") or []) or None,
                "account_type": extra.get("product_name") or extra.get("type"),
            })
        return accounts

    def fetch_statements(self, account: str, start: date, end: date) -> TanRequest | list[dict[str, Any]]:
        sepa = self._sepa_accounts.get(account)
        if sepa is None:
            raise ConnectionFailedError(f"Unknown account {account}")
        with bank_errors("Statement fetch"):
            response = self._client.get_transactions(sepa, start, end)
        if isinstance(response, NeedTANResponse):
            return self._tan_request(STATEMENTS, response)
        return self._statements(response)

    def send_tan(self, request: TanRequest, tan: str) -> TanRequest | list[dict[str, Any]] | None:
        with bank_errors("TAN verification", MFAInvalidError):
            response = self._client.send_tan(request.raw, tan)
        if isinstance(response, NeedTANResponse):
            return self._tan_request(request.operation, response)
        if request.operation == STATEMENTS:
            return self._statements(response)
        return None

    def close(self) -> None:
        self._stack.close()

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _statements(transactions: Any) -> list[dict[str, Any]]:
        return [{"transactions": [normalize_mt940(tx) for tx in transactions or []]}]

    @staticmethod
    def _tan_request(operation: str, response: Any) -> TanRequest:
        image = mime = None
        matrix = getattr(response, "challenge_matrix", None)
        if matrix:
            mime, image = matrix
        return TanRequest(
            operation=operation,
            challenge=getattr(response, "challenge", "") or "",
            decoupled=bool(getattr(response, "decoupled", False)) or None,
            image=image,
            image_mime_type=mime,
            hhduc=getattr(response, "challenge_hhduc", None),
            raw=response,
        )
