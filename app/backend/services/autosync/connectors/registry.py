"""Connector type -> connector factory mapping."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Mapping, Optional

from backend.services.autosync.connectors.base import Connector
from backend.services.autosync.credentials import Credential, ensure_connector_type
from backend.services.autosync.errors import ValidationError


logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[Credential], Connector]


class ConnectorRegistry:
    """Build connectors for a connector type.

    Only connector types with a registered factory can be created, activated
    or run.
    """

    def __init__(self, factories: Optional[Mapping[str, ConnectorFactory]] = None):
        self._factories: Dict[str, ConnectorFactory] = {}
        for connector_type, factory in (factories or {}).items():
            self.register(connector_type, factory)

    def register(self, connector_type: str, factory: ConnectorFactory) -> None:
        ensure_connector_type(connector_type)
        self._factories[connector_type] = factory
        logger.debug("Registered connector %s", connector_type)

    def supports(self, connector_type: str) -> bool:
        return connector_type in self._factories

    def supported_types(self):
        return sorted(self._factories)

    def build(self, connector_type: str, credential: Credential) -> Connector:
        """Instantiate a connector.

        Raises:
            ValidationError: When no factory is registered for the type.
        """

        factory = self._factories.get(connector_type)
        if factory is None:
            raise ValidationError(f"connector {connector_type!r} is not available")
        return factory(credential)

    @classmethod
    def with_database_dumps(cls) -> "ConnectorRegistry":
        """Registry with the shipped PostgreSQL / MySQL dump connectors."""

        from backend.services.autosync.connectors.database_dump import MySQLDumpSource, PostgresDumpSource

        return cls({
            PostgresDumpSource.connector_type: PostgresDumpSource,
            MySQLDumpSource.connector_type: MySQLDumpSource,
        })
