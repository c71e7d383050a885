"""Connectors package — transaction source adapters and the registry that drives them."""
from finsync.connectors.amazon_connector import AmazonConnector
from finsync.connectors.base import BaseConnector
from finsync.connectors.fints_connector import FinTSConnector
from finsync.connectors.gebuhrenfrei_connector import GebuhrenfreiConnector
from finsync.connectors.n26_connector import N26Connector
from finsync.connectors.paypal_connector import PayPalConnector
from finsync.connectors.registry import ConnectorRegistry

__all__ = [
    "AmazonConnector",
    "BaseConnector",
    "ConnectorRegistry",
    "FinTSConnector",
    "GebuhrenfreiConnector",
    "N26Connector",
    "PayPalConnector",
]
