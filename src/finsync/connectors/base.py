"""
Base connector — the contract every transaction source adapter implements.

Connectors are the bridge between finsync and external financial systems.
They log in (possibly through several MFA rounds), pull transactions, and
normalize them into ``FetchedTransaction`` records.

The public methods are implemented once here. They call the protected
``_connect`` / ``_submit_mfa`` / ``_fetch`` / ``_fetch_with_mfa`` hooks and
turn every exception into a typed result, so nothing raises across the
adapter boundary.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import SecretStr

from finsync.config import FinSyncConfig
from finsync.errors import (
    ErrorCode,
    FinSyncError,
    MFAExpiredError,
    NoPendingChallengeError,
    NotInitializedError,
)
from finsync.models.connector import (
    ConnectorCredentials,
    ConnectorType,
    MFAChallenge,
    OperationKind,
    PendingOperationInfo,
    utcnow,
)
from finsync.models.results import ConnectResult, FetchResult
from finsync.models.transaction import AccountInfo, DateRange

logger = logging.getLogger("finsync.connectors.base")

ProgressCallback = Callable[[int, int | None, str], None]


def new_reference() -> str:
    """Opaque token identifying one pending challenge."""
    return secrets.token_urlsafe(16)


@dataclass
class PendingOperation:
    """An operation paused on a challenge, plus what is needed to resume it.

    ``continuation`` holds protocol-specific resume data (a FinTS TAN
    response, an N26 MFA token) and never leaves the adapter.
    """

    kind: OperationKind
    challenge: MFAChallenge
    reference: str = field(default_factory=new_reference)
    phase: str | None = None
    date_range: DateRange | None = None
    account: str | None = None
    continuation: Any = None

    def info(self) -> PendingOperationInfo:
        return PendingOperationInfo(kind=self.kind, reference=self.reference)


class BaseConnector(ABC):
    """Abstract base class for all transaction source adapters.

    To create a new connector, subclass this and implement:
    - `name` and `connector_type`.
    - `_connect()`: log in, returning a connected or MFA-pending result.
    - `_fetch()`: pull transactions for a date range.
    - `_submit_mfa()` / `_fetch_with_mfa()` if the source has second factors.

    Adapters pause on a challenge with `_pause_connect()` / `_pause_fetch()`
    and report a decoupled approval that is still outstanding with
    `_still_pending()`.
    """

    name: str = "base"
    description: str = "Base connector"
    connector_type: ConnectorType

    def __init__(
        self,
        connector_id: str | None = None,
        *,
        config: FinSyncConfig | None = None,
        **options: Any,
    ) -> None:
        self.connector_id = connector_id or self.name
        self.config = config or FinSyncConfig()
        self.options = options
        self.user_id: str | None = None
        self.bank_code: str | None = None
        self.mfa_method: str | None = None
        self._secret: SecretStr | None = None
        self._initialized = False
        self._connected = False
        self._accounts: list[AccountInfo] = []
        self.pending: PendingOperation | None = None
        self.on_progress: ProgressCallback | None = None

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def initialize(self, credentials: ConnectorCredentials) -> None:
        """Store credentials for later use. Performs no network I/O.

        Raises:
            FinSyncError: If the credentials are unusable for this source.
        """
        self._validate_credentials(credentials)
        self.user_id = credentials.user_id
        self.bank_code = credentials.bank_code
        self.mfa_method = credentials.mfa_method
        self._secret = credentials.pin
        self._initialized = True
        logger.debug("Initialized %s connector %s for user %s", self.name, self.connector_id, self.user_id)

    async def connect(self) -> ConnectResult:
        if not self._initialized:
            return ConnectResult.failure(NotInitializedError().message, ErrorCode.NOT_INITIALIZED)
        self.pending = None
        return await self._run_connect(self._connect)

    async def submit_mfa(self, code: str | None = None, reference: str | None = None) -> ConnectResult:
        """Answer a login challenge. ``code`` may be omitted for decoupled challenges."""
        try:
            pending = self._require_pending(OperationKind.CONNECT, reference)
        except MFAExpiredError as e:
            await self._after_failure()
            return ConnectResult.failure(e.message, e.code)
        except FinSyncError as e:
            return ConnectResult.failure(e.message, e.code)
        if not pending.challenge.decoupled and not (code and code.strip()):
            return ConnectResult.failure("A verification code is required", ErrorCode.MFA_INVALID)
        return await self._run_connect(lambda: self._submit_mfa(pending, code))

    async def fetch_transactions(self, date_range: DateRange, account: str | None = None) -> FetchResult:
        if not self._initialized:
            return FetchResult.failure(NotInitializedError().message, ErrorCode.NOT_INITIALIZED)
        if not self._connected:
            return FetchResult.failure("Not connected. Please connect first.", ErrorCode.INVALID_STATE)
        self.pending = None
        return await self._run_fetch(lambda: self._fetch(date_range, account))

    async def fetch_transactions_with_mfa(
        self,
        code: str | None = None,
        reference: str | None = None,
    ) -> FetchResult:
        """Resume a fetch that paused on a challenge."""
        try:
            pending = self._require_pending(OperationKind.FETCH, reference)
        except MFAExpiredError as e:
            await self._after_failure()
            return FetchResult.failure(e.message, e.code)
        except FinSyncError as e:
            return FetchResult.failure(e.message, e.code)
        if not pending.challenge.decoupled and not (code and code.strip()):
            return FetchResult.failure("A verification code is required", ErrorCode.MFA_INVALID)
        return await self._run_fetch(lambda: self._fetch_with_mfa(pending, code))

    async def disconnect(self) -> None:
        """Release every session resource. Safe to call repeatedly."""
        self.pending = None
        self._connected = False
        self._secret = None
        self._initialized = False
        try:
            await self._disconnect()
        except Exception as e:
            logger.warning("Error while disconnecting %s: %s", self.connector_id, e)
        await self._safe_release()

    async def cancel_pending(self) -> None:
        """Drop the pending challenge. The login is abandoned and must be retried."""
        if self.pending is not None:
            logger.info("%s connector %s: pending challenge cancelled", self.name, self.connector_id)
        await self._after_failure()

    def is_connected(self) -> bool:
        return self._connected

    def get_accounts(self) -> list[AccountInfo]:
        return list(self._accounts)

    async def validate_session(self) -> bool:
        """Check that the remote session is still usable."""
        return self._connected

    async def health_check(self) -> dict[str, Any]:
        """Check connector health and connectivity."""
        try:
            healthy = await self.validate_session()
            return {"connector": self.name, "healthy": healthy, "error": None}
        except Exception as e:
            return {"connector": self.name, "healthy": False, "error": str(e)}

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    def _validate_credentials(self, credentials: ConnectorCredentials) -> None:
        """Raise a FinSyncError if ``credentials`` cannot work for this source."""

    @abstractmethod
    async def _connect(self) -> ConnectResult:
        ...

    @abstractmethod
    async def _fetch(self, date_range: DateRange, account: str | None) -> FetchResult:
        ...

    async def _submit_mfa(self, pending: PendingOperation, code: str | None) -> ConnectResult:
        raise NoPendingChallengeError()

    async def _fetch_with_mfa(self, pending: PendingOperation, code: str | None) -> FetchResult:
        raise NoPendingChallengeError()

    async def _disconnect(self) -> None:
        """Close protocol sessions (HTTP clients, banking dialogs)."""

    async def _release_resources(self) -> None:
        """Release resources that must not outlive a failed operation (browser pages)."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    @property
    def secret(self) -> str:
        if self._secret is None:
            raise NotInitializedError()
        return self._secret.get_secret_value()

    def _challenge_expiry(self, seconds: int) -> datetime:
        return utcnow() + timedelta(seconds=seconds)

    def _pause(
        self,
        kind: OperationKind,
        challenge: MFAChallenge,
        **pending_fields: Any,
    ) -> MFAChallenge:
        pending = PendingOperation(kind=kind, challenge=challenge, **pending_fields)
        pending.challenge = challenge.model_copy(update={"reference": pending.reference})
        self.pending = pending
        logger.info(
            "%s connector %s waiting for %s challenge (%s)",
            self.name,
            self.connector_id,
            challenge.type.value,
            kind.value,
        )
        return pending.challenge

    def _pause_connect(self, challenge: MFAChallenge, **pending_fields: Any) -> ConnectResult:
        return ConnectResult.pending(self._pause(OperationKind.CONNECT, challenge, **pending_fields))

    def _pause_fetch(self, challenge: MFAChallenge, **pending_fields: Any) -> FetchResult:
        return FetchResult.pending(self._pause(OperationKind.FETCH, challenge, **pending_fields))

    def _still_pending(self, pending: PendingOperation, message: str) -> MFAChallenge:
        """Keep ``pending`` (same reference, same type) with a refreshed message."""
        pending.challenge = pending.challenge.model_copy(update={"message": message})
        self.pending = pending
        return pending.challenge

    def _report_progress(self, current: int, total: int | None = None, message: str = "") -> None:
        if self.on_progress is not None:
            self.on_progress(current, total, message)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_pending(self, kind: OperationKind, reference: str | None) -> PendingOperation:
        if not self._initialized:
            raise NotInitializedError()
        pending = self.pending
        if pending is None or pending.kind != kind:
            raise NoPendingChallengeError(
                "No pending fetch operation" if kind == OperationKind.FETCH else None
            )
        if reference is not None and reference != pending.reference:
            raise NoPendingChallengeError(f"No pending challenge with reference {reference}")
        if pending.challenge.is_expired():
            raise MFAExpiredError()
        return pending

    async def _run_connect(self, operation: Callable[[], Awaitable[ConnectResult]]) -> ConnectResult:
        try:
            result = await operation()
        except FinSyncError as e:
            logger.warning("%s connector %s failed: %s", self.name, self.connector_id, e.message)
            result = ConnectResult.failure(e.message, e.code)
        except Exception as e:
            logger.exception("Unexpected error in %s connector %s", self.name, self.connector_id)
            result = ConnectResult.failure(str(e) or type(e).__name__, ErrorCode.CONNECTION_FAILED)

        if result.requires_mfa and self.pending is None:
            logger.error("%s connector %s returned a challenge without pausing", self.name, self.connector_id)
            result = ConnectResult.failure("Challenge could not be tracked", ErrorCode.INVALID_STATE)

        if not result.success:
            await self._after_failure()
        elif not result.requires_mfa:
            self.pending = None
            self._connected = True
            if result.accounts:
                self._accounts = list(result.accounts)
            else:
                result.accounts = list(self._accounts)
            logger.info("%s connector %s connected", self.name, self.connector_id)
        return result

    async def _run_fetch(self, operation: Callable[[], Awaitable[FetchResult]]) -> FetchResult:
        try:
            result = await operation()
        except FinSyncError as e:
            logger.warning("%s fetch on %s failed: %s", self.name, self.connector_id, e.message)
            result = FetchResult.failure(e.message, e.code)
        except Exception as e:
            logger.exception("Unexpected fetch error in %s connector %s", self.name, self.connector_id)
            result = FetchResult.failure(str(e) or type(e).__name__, ErrorCode.CONNECTION_FAILED)

        if result.requires_mfa and self.pending is None:
            logger.error("%s connector %s returned a challenge without pausing", self.name, self.connector_id)
            result = FetchResult.failure("Challenge could not be tracked", ErrorCode.INVALID_STATE)

        if result.requires_mfa:
            return result
        if not result.success:
            await self._after_failure()
            return result

        self.pending = None
        logger.info(
            "%s connector %s fetched %d transactions",
            self.name,
            self.connector_id,
            len(result.transactions),
        )
        return result

    async def _after_failure(self) -> None:
        self.pending = None
        self._connected = False
        await self._safe_release()

    async def _safe_release(self) -> None:
        try:
            await self._release_resources()
        except Exception as e:
            logger.warning("Error while releasing %s resources: %s", self.connector_id, e)
