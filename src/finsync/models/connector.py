"""
Connector models — credentials, MFA challenges and observable connector state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, SecretStr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectorType(str, Enum):
    """Supported transaction sources."""

    FINTS = "fints"
    N26 = "n26"
    PAYPAL = "paypal"
    GEBUHRENFREI = "gebuhrenfrei"
    AMAZON = "amazon"


class ConnectorStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    MFA_REQUIRED = "mfa_required"
    CONNECTED = "connected"
    FETCHING = "fetching"
    ERROR = "error"


class MFAType(str, Enum):
    SMS = "sms"
    PUSH = "push"
    PHOTO_TAN = "photo_tan"
    CHIP_TAN = "chip_tan"
    APP_TAN = "app_tan"
    TOTP = "totp"
    DECOUPLED = "decoupled"


class OperationKind(str, Enum):
    """What a pending challenge is blocking."""

    CONNECT = "connect"
    FETCH = "fetch"


class MFAChallenge(BaseModel):
    """A second-factor challenge presented to the user.

    When ``decoupled`` is set the user approves out of band (banking app,
    push notification) and no code is expected.
    """

    type: MFAType
    message: str
    image: str | None = Field(default=None, description="Base64 encoded challenge image")
    image_mime_type: str | None = None
    reference: str | None = None
    expires_at: datetime | None = None
    attempts_remaining: int | None = None
    decoupled: bool = False

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class ConnectorCredentials(BaseModel):
    """Login credentials handed to ``initialize``.

    The secret is a ``SecretStr`` so it never shows up in reprs or logs.
    """

    user_id: str
    pin: SecretStr
    bank_code: str | None = None
    mfa_method: str | None = None

    def partial(self) -> PartialCredentials:
        return PartialCredentials(user_id=self.user_id, bank_code=self.bank_code)


class PartialCredentials(BaseModel):
    """The non-secret part of the credentials, safe to keep in memory and state."""

    user_id: str
    bank_code: str | None = None


class Progress(BaseModel):
    current: int = 0
    total: int | None = None
    message: str = ""


class PendingOperationInfo(BaseModel):
    """Observable summary of an operation paused on a challenge."""

    kind: OperationKind
    reference: str


class ConnectorState(BaseModel):
    """Snapshot of one connector instance, as seen by callers."""

    connector_id: str
    connector_type: ConnectorType
    status: ConnectorStatus = ConnectorStatus.DISCONNECTED
    status_message: str = ""
    mfa_challenge: MFAChallenge | None = None
    pending_operation: PendingOperationInfo | None = None
    progress: Progress | None = None
    last_error: str | None = None
    error_code: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)
