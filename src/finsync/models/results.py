"""
Result models returned by connectors and importers.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from finsync.errors import ErrorCode
from finsync.models.connector import MFAChallenge
from finsync.models.transaction import AccountInfo, FetchedTransaction

# Results always report at least this many per-row errors when that many occurred.
MIN_REPORTED_ERRORS = 20
MAX_REPORTED_ERRORS = 50


class ImportStats(BaseModel):
    total_rows: int = 0
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    duplicates: int = 0
    recurring: int = 0


class _ReportsErrors(BaseModel):
    errors: list[str] = Field(default_factory=list)

    def add_error(self, message: str, *, limit: int = MAX_REPORTED_ERRORS) -> None:
        """Record an error string, keeping at most ``limit`` of them."""
        if len(self.errors) < max(limit, MIN_REPORTED_ERRORS):
            self.errors.append(message)


class ImportResult(_ReportsErrors):
    """Outcome of an offline file import."""

    success: bool = True
    transactions: list[FetchedTransaction] = Field(default_factory=list)
    stats: ImportStats = Field(default_factory=ImportStats)
    format: str | None = None


class FetchResult(_ReportsErrors):
    """Outcome of a live fetch. ``transactions`` is empty while MFA is pending."""

    success: bool = False
    transactions: list[FetchedTransaction] = Field(default_factory=list)
    error_code: ErrorCode | None = None
    stats: ImportStats = Field(default_factory=ImportStats)
    requires_mfa: bool = False
    mfa_challenge: MFAChallenge | None = None

    @model_validator(mode="after")
    def _no_rows_while_pending(self) -> FetchResult:
        if self.requires_mfa and self.transactions:
            raise ValueError("a result that requires MFA cannot carry transactions")
        return self

    @classmethod
    def failure(cls, message: str, code: ErrorCode) -> FetchResult:
        return cls(success=False, errors=[message], error_code=code)

    @classmethod
    def pending(cls, challenge: MFAChallenge) -> FetchResult:
        return cls(success=False, requires_mfa=True, mfa_challenge=challenge)

    @classmethod
    def ok(cls, transactions: list[FetchedTransaction], stats: ImportStats | None = None) -> FetchResult:
        stats = stats or ImportStats(total_rows=len(transactions), imported=len(transactions))
        return cls(success=True, transactions=transactions, stats=stats)


class ConnectResult(BaseModel):
    success: bool = False
    connected: bool = False
    requires_mfa: bool = False
    mfa_challenge: MFAChallenge | None = None
    accounts: list[AccountInfo] = Field(default_factory=list)
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def done(cls, accounts: list[AccountInfo] | None = None) -> ConnectResult:
        return cls(success=True, connected=True, accounts=accounts or [])

    @classmethod
    def pending(cls, challenge: MFAChallenge) -> ConnectResult:
        return cls(success=True, requires_mfa=True, mfa_challenge=challenge)

    @classmethod
    def failure(cls, message: str, code: ErrorCode) -> ConnectResult:
        return cls(success=False, error=message, error_code=code)
