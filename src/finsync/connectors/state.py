"""
Connection state machine for a single connector instance.

Legal transitions::

    DISCONNECTED -> CONNECTING
    ERROR        -> CONNECTING                      (retry)
    CONNECTING   -> MFA_REQUIRED | CONNECTED | ERROR
    MFA_REQUIRED -> CONNECTING                      (code submitted, connect challenge)
    MFA_REQUIRED -> FETCHING                        (code submitted, fetch challenge)
    MFA_REQUIRED -> CONNECTED                       (decoupled approval completed)
    MFA_REQUIRED -> MFA_REQUIRED                    (still pending, or chained factor)
    CONNECTED    -> FETCHING | CONNECTING
    FETCHING     -> CONNECTED | MFA_REQUIRED
    any          -> ERROR | DISCONNECTED

A challenge is attached exactly while the status is MFA_REQUIRED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from finsync.errors import ErrorCode, InvalidTransitionError
from finsync.models.connector import (
    ConnectorState,
    ConnectorStatus,
    ConnectorType,
    MFAChallenge,
    PendingOperationInfo,
    Progress,
    utcnow,
)

logger = logging.getLogger("finsync.connectors.state")

S = ConnectorStatus

_ALLOWED: dict[ConnectorStatus, frozenset[ConnectorStatus]] = {
    S.DISCONNECTED: frozenset({S.CONNECTING}),
    S.ERROR: frozenset({S.CONNECTING}),
    S.CONNECTING: frozenset({S.MFA_REQUIRED, S.CONNECTED}),
    S.MFA_REQUIRED: frozenset({S.CONNECTING, S.FETCHING, S.CONNECTED, S.MFA_REQUIRED}),
    S.CONNECTED: frozenset({S.FETCHING, S.CONNECTING}),
    S.FETCHING: frozenset({S.CONNECTED, S.MFA_REQUIRED}),
}
# Reachable from every state.
_ALWAYS = frozenset({S.ERROR, S.DISCONNECTED})


@dataclass(frozen=True)
class Transition:
    source: ConnectorStatus
    target: ConnectorStatus
    at: datetime
    message: str = ""


class ConnectionStateMachine:
    """Tracks the observable state of one connector and enforces legal transitions."""

    def __init__(
        self,
        connector_id: str,
        connector_type: ConnectorType,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        self._state = ConnectorState(
            connector_id=connector_id,
            connector_type=connector_type,
            updated_at=clock(),
        )
        self.history: list[Transition] = []

    @property
    def status(self) -> ConnectorStatus:
        return self._state.status

    @property
    def challenge(self) -> MFAChallenge | None:
        return self._state.mfa_challenge

    def snapshot(self) -> ConnectorState:
        """Return a copy callers can keep without seeing later mutations."""
        return self._state.model_copy(deep=True)

    def can_transition(self, target: ConnectorStatus) -> bool:
        return target in _ALWAYS or target in _ALLOWED.get(self.status, frozenset())

    def transition(
        self,
        target: ConnectorStatus,
        *,
        message: str = "",
        challenge: MFAChallenge | None = None,
        pending: PendingOperationInfo | None = None,
        error: str | None = None,
        error_code: ErrorCode | None = None,
    ) -> ConnectorState:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: For transitions outside the table, or when
                entering MFA_REQUIRED without a challenge.
        """
        source = self.status
        if not self.can_transition(target):
            raise InvalidTransitionError(f"Cannot go from {source.value} to {target.value}")
        if target == S.MFA_REQUIRED and challenge is None:
            raise InvalidTransitionError("MFA_REQUIRED needs a challenge")

        state = self._state
        state.status = target
        state.status_message = message
        state.mfa_challenge = challenge if target == S.MFA_REQUIRED else None
        state.pending_operation = pending if target == S.MFA_REQUIRED else None
        if target != S.FETCHING:
            state.progress = None
        if target == S.ERROR:
            state.last_error = error or message or "Unknown error"
            state.error_code = (error_code or ErrorCode.CONNECTION_FAILED).value
        elif target in (S.CONNECTING, S.CONNECTED):
            state.last_error = None
            state.error_code = None
        state.updated_at = self._clock()

        self.history.append(Transition(source, target, state.updated_at, message))
        logger.debug("Connector %s: %s -> %s", state.connector_id, source.value, target.value)
        return self.snapshot()

    def still_pending(self, message: str) -> ConnectorState:
        """Record a decoupled "still waiting" poll.

        The original challenge keeps its reference and type; only the message
        changes, so callers never see a new challenge for the same approval.
        """
        if self.status != S.MFA_REQUIRED or self._state.mfa_challenge is None:
            raise InvalidTransitionError("No challenge is pending")
        challenge = self._state.mfa_challenge.model_copy(update={"message": message})
        return self.transition(
            S.MFA_REQUIRED,
            message=message,
            challenge=challenge,
            pending=self._state.pending_operation,
        )

    def set_progress(self, current: int, total: int | None = None, message: str = "") -> None:
        self._state.progress = Progress(current=current, total=total, message=message)
        self._state.updated_at = self._clock()

    def expire_if_due(self, now: datetime | None = None) -> bool:
        """Move an expired challenge to ERROR. Returns True if it expired."""
        challenge = self._state.mfa_challenge
        if self.status != S.MFA_REQUIRED or challenge is None:
            return False
        if not challenge.is_expired(now or self._clock()):
            return False
        self.transition(
            S.ERROR,
            message="Verification challenge expired",
            error_code=ErrorCode.MFA_EXPIRED,
        )
        return True
