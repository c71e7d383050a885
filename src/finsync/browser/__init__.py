"""Browser automation for portals without a usable API."""

from finsync.browser.selectors import (
    AttributeValue,
    CellText,
    FieldExtractor,
    SelectorChain,
    SelectorText,
)
from finsync.browser.service import BrowserService

__all__ = [
    "AttributeValue",
    "BrowserService",
    "CellText",
    "FieldExtractor",
    "SelectorChain",
    "SelectorText",
]
