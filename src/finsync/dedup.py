"""
Deduplication and order aggregation for fetched transaction batches.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from finsync.models.transaction import FetchedTransaction
from finsync.parsers.amounts import stable_hash

logger = logging.getLogger("finsync.dedup")


def stable_external_id(source: str, order_id: str, item_name: str) -> str:
    """Deterministic id for one line item: ``{source}-{order}-{hash(item)}``."""
    return f"{source}-{order_id}-{stable_hash(item_name)}"


def _line_item(tx: FetchedTransaction) -> dict[str, Any]:
    return {
        "external_id": tx.external_id,
        "description": tx.description,
        "amount": tx.amount,
        "data": dict(tx.raw_data),
    }


def aggregate_orders(
    transactions: Iterable[FetchedTransaction],
    *,
    label: str = "Amazon Order",
) -> list[FetchedTransaction]:
    """Merge line items sharing ``raw_data["order_id"]`` into one transaction per order.

    The merged transaction keeps the first line item's external id and date,
    carries the summed amount, and lists every original line item under
    ``raw_data["items"]``. Transactions without an order id pass through.
    """
    groups: dict[str, list[FetchedTransaction]] = {}
    for tx in transactions:
        key = tx.raw_data.get("order_id") or f"__single__{tx.external_id}"
        groups.setdefault(str(key), []).append(tx)

    merged: list[FetchedTransaction] = []
    for items in groups.values():
        first = items[0]
        if len(items) == 1:
            merged.append(first)
            continue

        total = sum((tx.amount for tx in items), Decimal("0"))
        raw = dict(first.raw_data)
        raw["items"] = [_line_item(tx) for tx in items]
        merged.append(
            first.model_copy(
                update={
                    "amount": total,
                    "description": f"{label} ({len(items)} items)",
                    "raw_data": raw,
                }
            )
        )

    logger.debug("Aggregated %d groups into %d transactions", len(groups), len(merged))
    return merged


def dedupe(transactions: Iterable[FetchedTransaction]) -> tuple[list[FetchedTransaction], int]:
    """Drop repeated external ids, keeping the first occurrence.

    Returns:
        Tuple of (unique transactions, number of duplicates dropped).
    """
    seen: set[str] = set()
    unique: list[FetchedTransaction] = []
    duplicates = 0
    for tx in transactions:
        if tx.external_id in seen:
            duplicates += 1
            continue
        seen.add(tx.external_id)
        unique.append(tx)
    return unique, duplicates
