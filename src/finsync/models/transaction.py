"""
Transaction data models — canonical transactions, accounts, date ranges.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, model_validator


class DateRange(BaseModel):
    """Inclusive calendar date range."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> DateRange:
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @classmethod
    def last_days(cls, days: int, *, today: date | None = None) -> DateRange:
        end = today or date.today()
        return cls(start=end - timedelta(days=days), end=end)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class FetchedTransaction(BaseModel):
    """A single normalized transaction from any source.

    ``amount`` is signed: negative for money leaving the account.
    ``external_id`` is derived from source content so repeated fetches of the
    same record produce the same id.
    """

    external_id: str
    date: date
    description: str = ""
    amount: Decimal
    beneficiary: str | None = None
    currency: str = "EUR"
    raw_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0


class AccountInfo(BaseModel):
    """An account exposed by a connected source."""

    account_number: str
    iban: str | None = None
    bic: str | None = None
    account_type: str | None = None
    currency: str = "EUR"
    owner_name: str | None = None
    balance: Decimal | None = None
    credit_limit: Decimal | None = None
