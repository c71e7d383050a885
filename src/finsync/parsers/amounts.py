"""
Locale-tolerant amount and date parsing shared by every importer and scraper.

Amounts
-------
The separator cascade, applied after currency symbols and signs are removed:

1. Both ``.`` and ``,`` present: whichever comes last is the decimal point.
2. A single separator that occurs once with at most two trailing digits is the
   decimal point (``12,34`` and ``12.5``).
3. Otherwise every separator is a thousands separator (``1.234`` -> 1234).

Dates
-----
ISO (with or without a time part), ``DD.MM.YYYY`` / ``DD.MM.YY``, and
slash dates. A slash date is read as US ``MM/DD/YYYY`` unless its first part
is greater than 12, in which case it is ``DD/MM/YYYY``.
"""

from __future__ import annotations

import hashlib
import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

_CURRENCY_RE = re.compile(r"(?i)EUR|USD|GBP|CHF|[€$£]")
_NUMBER_RE = re.compile(r"[-+\u2212]?\s*[€$£]?\s*\d[\d.,]*")
_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_DOTTED_RE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2}|\d{4})$")
_SLASHED_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_TEXT_FORMATS = ("%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y")


def parse_amount(value: Any) -> Decimal | None:
    """Parse a money amount in any common locale. Returns None if unparseable."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return Decimal(str(value))

    text = str(value).strip()
    if not text:
        return None

    text = _CURRENCY_RE.sub("", text)
    text = text.replace("\u2212", "-").replace("\u00a0", "").replace(" ", "")

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.startswith("-"):
        negative = True
        text = text[1:]
    elif text.startswith("+"):
        text = text[1:]
    if text.endswith("-"):
        negative = True
        text = text[:-1]

    if not text or not re.fullmatch(r"[\d.,]*\d[\d.,]*", text):
        return None

    normalized = _normalize_separators(text)
    try:
        amount = Decimal(normalized)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def _normalize_separators(text: str) -> str:
    last_dot = text.rfind(".")
    last_comma = text.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        if last_comma > last_dot:
            return text.replace(".", "").replace(",", ".")
        return text.replace(",", "")

    if last_dot < 0 and last_comma < 0:
        return text

    sep = "," if last_comma >= 0 else "."
    trailing = len(text) - text.rfind(sep) - 1
    if text.count(sep) == 1 and trailing <= 2:
        return text.replace(sep, ".")
    return text.replace(sep, "")


def extract_amount(text: str | None) -> Decimal | None:
    """Find and parse the first amount embedded in free text, e.g. ``Saldo: 1.234,56 €``."""
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    return parse_amount(match.group(0))


def parse_date(value: Any) -> date | None:
    """Parse a date in ISO, German or US/UK slash notation. Returns None if invalid."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    iso = _ISO_RE.match(text)
    dotted = _DOTTED_RE.match(text)
    slashed = _SLASHED_RE.match(text)
    try:
        if iso:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))

        if dotted:
            year = int(dotted.group(3))
            if year < 100:
                year += 2000
            return date(year, int(dotted.group(2)), int(dotted.group(1)))

        if slashed:
            first, second, year = (int(g) for g in slashed.groups())
            if first > 12:
                return date(year, second, first)
            return date(year, first, second)
    except ValueError:
        return None

    for fmt in _TEXT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def stable_hash(*parts: Any, length: int = 10) -> str:
    """Short content hash used to build deterministic external ids."""
    joined = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()[:length]
