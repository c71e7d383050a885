"""
Bank statement normalizer for FinTS statement data.

Statements arrive as dicts in one of three encodings, each keyed by the list it
carries:

- ``transactions``: structured (MT940-like) records with a signed ``amount``.
- ``entries``: CAMT-style entries with an unsigned ``amount`` and a
  ``credit_debit_indicator`` (``CRDT`` is a credit, anything else a debit).
- ``booked``: raw booked records with ``transaction_amount.amount``.

A statement may carry more than one of these lists. Records without a usable
date are dropped and counted as skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from finsync.models.transaction import FetchedTransaction
from finsync.parsers.amounts import parse_amount, parse_date, stable_hash

logger = logging.getLogger("finsync.parsers.statements")

# Placeholder references banks put in MT940 fields instead of leaving them empty.
_PLACEHOLDER_REFS = frozenset({"", "NONREF", "NOTPROVIDED", "NOT PROVIDED"})

_BENEFICIARY_PATTERNS = (
    re.compile(r"(?:Auftraggeber|Zahlungsempfänger|Empfänger|Begünstigter):\s*([^,\n]+)", re.IGNORECASE),
    re.compile(
        r"(?:von|an|für)\s+([A-Za-zÄÖÜäöüß][A-Za-zÄÖÜäöüß\s.&-]+?(?:GmbH|AG|KG|e\.V\.|S\.a\.r\.l\.|Ltd|Inc))",
        re.IGNORECASE,
    ),
)


def extract_beneficiary(purpose: str | None) -> str | None:
    """Pull the counterparty name out of German remittance text."""
    if not purpose:
        return None
    for pattern in _BENEFICIARY_PATTERNS:
        match = pattern.search(purpose)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def _first(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _reference(record: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text.upper() not in _PLACEHOLDER_REFS:
            return text
    return None


@dataclass
class StatementParseResult:
    transactions: list[FetchedTransaction] = field(default_factory=list)
    skipped: int = 0


class StatementParser:
    """Normalize FinTS statement dicts into canonical transactions."""

    def __init__(self, *, source_id: str = "fints", default_currency: str = "EUR") -> None:
        self.source_id = source_id
        self.default_currency = default_currency

    def parse(self, statements: Iterable[dict[str, Any]]) -> StatementParseResult:
        result = StatementParseResult()
        for statement in statements:
            for record in statement.get("transactions") or []:
                self._collect(result, record, self._from_structured(record))
            for record in statement.get("entries") or []:
                self._collect(result, record, self._from_entry(record))
            for record in statement.get("booked") or []:
                self._collect(result, record, self._from_booked(record))

        logger.info(
            "Parsed %d statement transactions (%d skipped without date)",
            len(result.transactions),
            result.skipped,
        )
        return result

    def _collect(
        self,
        result: StatementParseResult,
        record: dict[str, Any],
        tx: FetchedTransaction | None,
    ) -> None:
        if tx is None:
            result.skipped += 1
            logger.warning("Skipping statement record without valid date (keys: %s)", sorted(record))
            return
        result.transactions.append(tx)

    def _external_id(self, tx_date: date, amount: Decimal, reference: str | None, text: str) -> str:
        if reference:
            return f"{self.source_id}-{tx_date.isoformat()}-{reference}"
        return f"{self.source_id}-{tx_date.isoformat()}-{amount}-{stable_hash(text)}"

    # ------------------------------------------------------------------
    # Encodings
    # ------------------------------------------------------------------

    def _from_structured(self, record: dict[str, Any]) -> FetchedTransaction | None:
        tx_date = parse_date(_first(record, "date", "booking_date", "value_date", "entry_date"))
        if tx_date is None:
            return None

        amount = parse_amount(record.get("amount")) or Decimal("0")
        purpose = record.get("purpose") or ""
        beneficiary = _first(
            record,
            "partner_name",
            "applicant_name",
            "ultimate_partner_name",
            "creditor_name",
            "debtor_name",
        ) or extract_beneficiary(purpose)
        reference = _reference(
            record, "reference", "transaction_reference", "end_to_end_reference", "customer_reference"
        )

        return FetchedTransaction(
            external_id=self._external_id(tx_date, amount, reference, purpose or record.get("description") or ""),
            date=tx_date,
            description=self.build_description(record),
            amount=amount,
            beneficiary=beneficiary,
            currency=record.get("currency") or self.default_currency,
            raw_data=dict(record),
        )

    def _from_entry(self, record: dict[str, Any]) -> FetchedTransaction | None:
        tx_date = parse_date(_first(record, "booking_date", "value_date", "date"))
        if tx_date is None:
            return None

        magnitude = abs(parse_amount(record.get("amount")) or Decimal("0"))
        amount = magnitude if record.get("credit_debit_indicator") == "CRDT" else -magnitude
        remittance = record.get("remittance_information") or ""
        beneficiary = _first(
            record,
            "debtor_name",
            "creditor_name",
            "ultimate_debtor_name",
            "ultimate_creditor_name",
        ) or extract_beneficiary(remittance)
        reference = _reference(
            record, "reference", "account_servicer_reference", "end_to_end_reference", "transaction_id"
        )

        return FetchedTransaction(
            external_id=self._external_id(tx_date, amount, reference, remittance),
            date=tx_date,
            description=remittance or record.get("additional_info") or "No description",
            amount=amount,
            beneficiary=beneficiary,
            currency=record.get("currency") or self.default_currency,
            raw_data=dict(record),
        )

    def _from_booked(self, record: dict[str, Any]) -> FetchedTransaction | None:
        tx_date = parse_date(_first(record, "booking_date", "value_date", "date"))
        if tx_date is None:
            return None

        money = record.get("transaction_amount") or {}
        amount = parse_amount(money.get("amount", record.get("amount"))) or Decimal("0")
        remittance = record.get("remittance_information_unstructured") or ""
        beneficiary = _first(
            record,
            "creditor_name",
            "debtor_name",
            "remittance_creditor_name",
            "ultimate_creditor_name",
        ) or extract_beneficiary(remittance)
        reference = _reference(record, "transaction_id", "internal_transaction_id")

        return FetchedTransaction(
            external_id=self._external_id(tx_date, amount, reference, remittance),
            date=tx_date,
            description=remittance or record.get("additional_information") or "No description",
            amount=amount,
            beneficiary=beneficiary,
            currency=money.get("currency") or self.default_currency,
            raw_data=dict(record),
        )

    @staticmethod
    def build_description(record: dict[str, Any]) -> str:
        """Join posting text, purpose and partner name with `` - ``."""
        parts: list[str] = []
        if record.get("posting_text"):
            parts.append(str(record["posting_text"]))
        if record.get("purpose"):
            parts.append(str(record["purpose"]))
        partner = record.get("partner_name") or record.get("applicant_name")
        if partner and not any(partner in p for p in parts):
            parts.append(str(partner))
        return " - ".join(parts) or "No description"
