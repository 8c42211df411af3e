"""Source connectors."""

from backend.services.autosync.connectors.base import Connector, DatabaseSource, MailSource, SourceItem
from backend.services.autosync.connectors.registry import ConnectorFactory, ConnectorRegistry

__all__ = [
    "Connector",
    "ConnectorFactory",
    "ConnectorRegistry",
    "DatabaseSource",
    "MailSource",
    "SourceItem",
]
