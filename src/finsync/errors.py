"""
Error taxonomy — typed error codes and the exceptions that carry them.

Adapters and parsers raise these internally. The connector base class and the
registry translate them into typed results so nothing raises across the
adapter boundary.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable failure categories surfaced in results and state."""

    NOT_INITIALIZED = "not_initialized"
    CONNECTION_FAILED = "connection_failed"
    MFA_INVALID = "mfa_invalid"
    MFA_EXPIRED = "mfa_expired"
    NO_PENDING_CHALLENGE = "no_pending_challenge"
    SESSION_EXPIRED = "session_expired"
    UNSUPPORTED_FORMAT = "unsupported_format"
    ROW_PARSE = "row_parse"
    TIMEOUT = "timeout"
    BUSY = "busy"
    INVALID_STATE = "invalid_state"
    CANCELLED = "cancelled"
    UNKNOWN_CONNECTOR = "unknown_connector"


class FinSyncError(Exception):
    """Base class for all finsync errors."""

    code: ErrorCode = ErrorCode.CONNECTION_FAILED
    default_message = "Connector operation failed"

    def __init__(self, message: str | None = None, *, code: ErrorCode | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotInitializedError(FinSyncError):
    code = ErrorCode.NOT_INITIALIZED
    default_message = "Connector not initialized. Call initialize() first."


class ConnectionFailedError(FinSyncError):
    code = ErrorCode.CONNECTION_FAILED


class MFAInvalidError(FinSyncError):
    code = ErrorCode.MFA_INVALID
    default_message = "Verification code was rejected"


class MFAExpiredError(FinSyncError):
    code = ErrorCode.MFA_EXPIRED
    default_message = "Verification challenge expired"


class NoPendingChallengeError(FinSyncError):
    code = ErrorCode.NO_PENDING_CHALLENGE
    default_message = "No pending MFA challenge"


class SessionExpiredError(FinSyncError):
    code = ErrorCode.SESSION_EXPIRED
    default_message = "Session expired. Please reconnect."


class UnsupportedFormatError(FinSyncError):
    code = ErrorCode.UNSUPPORTED_FORMAT
    default_message = "Unsupported file format"


class RowParseError(FinSyncError):
    """A single input row could not be parsed. Caught per row by parsers."""

    code = ErrorCode.ROW_PARSE
    default_message = "Row could not be parsed"


class OperationTimeoutError(FinSyncError):
    code = ErrorCode.TIMEOUT
    default_message = "Operation timed out"


class ConnectorBusyError(FinSyncError):
    code = ErrorCode.BUSY
    default_message = "Another operation is already running for this connector"


class InvalidTransitionError(FinSyncError):
    code = ErrorCode.INVALID_STATE
    default_message = "Illegal connector state transition"


class UnknownConnectorError(FinSyncError):
    code = ErrorCode.UNKNOWN_CONNECTOR
    default_message = "Unknown connector"
