"""
FinSync — one normalized transaction stream from banks, cards and wallets.

Connect. Verify. Fetch.
FinTS banks, N26, PayPal, the Gebührenfrei card and Amazon exports behind one
connector contract.
"""

__version__ = "0.3.0"
__all__ = ["ConnectorRegistry", "FinSyncConfig"]

from finsync.config import FinSyncConfig  # noqa: E402
from finsync.connectors.registry import ConnectorRegistry  # noqa: E402
