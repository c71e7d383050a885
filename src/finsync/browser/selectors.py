"""
Selector chains and field extractors for scraping portal pages.

Portal markup drifts, so no lookup relies on a single CSS selector. A
``SelectorChain`` is an ordered list of alternatives and the first one that
matches wins. Row fields are read by a ``FieldExtractor``, which tries a
list of strategies (selector text, table cell, attribute) in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class SelectorChain:
    """Prioritized CSS selectors; the first selector that matches wins.

    A comma-separated string is split into its alternatives, so
    ``SelectorChain.parse("#email, input[name=email]")`` tries ``#email``
    before the name match.
    """

    def __init__(self, *selectors: str) -> None:
        if not selectors:
            raise ValueError("SelectorChain needs at least one selector")
        self.selectors: tuple[str, ...] = tuple(s.strip() for s in selectors if s.strip())

    @classmethod
    def parse(cls, text: str) -> SelectorChain:
        return cls(*text.split(","))

    def __iter__(self):
        return iter(self.selectors)

    def __repr__(self) -> str:
        return f"SelectorChain({', '.join(self.selectors)})"

    async def first(self, scope: Any) -> Any | None:
        """Return the first matching element handle under ``scope`` (page or element)."""
        for selector in self.selectors:
            handle = await scope.query_selector(selector)
            if handle is not None:
                return handle
        return None

    async def all(self, scope: Any) -> list[Any]:
        """Return every match of the first selector that matches anything."""
        for selector in self.selectors:
            handles = await scope.query_selector_all(selector)
            if handles:
                return list(handles)
        return []

    async def match(self, scope: Any) -> str | None:
        """Return the first selector that matches under ``scope``."""
        for selector in self.selectors:
            if await scope.query_selector(selector) is not None:
                return selector
        return None

    async def exists(self, scope: Any) -> bool:
        return await self.first(scope) is not None

    async def text(self, scope: Any) -> str | None:
        handle = await self.first(scope)
        if handle is None:
            return None
        content = await handle.text_content()
        content = (content or "").strip()
        return content or None


def chain(text: str) -> SelectorChain:
    return SelectorChain.parse(text)


# ------------------------------------------------------------------
# Field extraction strategies
# ------------------------------------------------------------------


class ExtractionStrategy(Protocol):
    async def extract(self, row: Any) -> str | None: ...


@dataclass
class SelectorText:
    """Text content of the first element matching ``selectors`` inside the row."""

    selectors: SelectorChain

    async def extract(self, row: Any) -> str | None:
        return await self.selectors.text(row)


@dataclass
class CellText:
    """Text of the ``index``-th table cell (1-based, like ``nth-child``)."""

    index: int

    async def extract(self, row: Any) -> str | None:
        cells = await row.query_selector_all("td")
        if len(cells) < self.index:
            return None
        content = await cells[self.index - 1].text_content()
        content = (content or "").strip()
        return content or None


@dataclass
class AttributeValue:
    """Value of attribute ``name`` on the row itself, or on a matching child."""

    name: str
    selectors: SelectorChain | None = None

    async def extract(self, row: Any) -> str | None:
        target = row if self.selectors is None else await self.selectors.first(row)
        if target is None:
            return None
        value = await target.get_attribute(self.name)
        return value.strip() if value and value.strip() else None


@dataclass
class FieldExtractor:
    """Tries each strategy in order and returns the first non-empty value."""

    strategies: list[ExtractionStrategy] = field(default_factory=list)

    async def extract(self, row: Any) -> str | None:
        for strategy in self.strategies:
            value = await strategy.extract(row)
            if value:
                return value
        return None


async def extract_fields(row: Any, fields: dict[str, FieldExtractor]) -> dict[str, str | None]:
    """Read every named field from one row element."""
    return {name: await extractor.extract(row) for name, extractor in fields.items()}
