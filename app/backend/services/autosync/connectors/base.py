"""Source connector interfaces.

A connector wraps one external account (a mailbox or a database) behind a
small blocking surface. Async callers run connector methods through a
thread pool.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

from backend.services.autosync.credentials import Credential


@dataclass(frozen=True)
class SourceItem:
    """One transferable item.

    Attributes:
        key: Stable key relative to the job's destination prefix.
        data: Item content.
    """

    key: str
    data: bytes


Batch = Tuple[List[SourceItem], Optional[str]]


class Connector(ABC):
    """Base class for source connectors."""

    connector_type: str = ""

    def __init__(self, credential: Credential):
        self.credential = credential

    @abstractmethod
    def validate_credential(self) -> None:
        """Check the credential against the live account.

        Raises:
            CredentialError: When the account rejects the credential.
            ConnectorError: When the account cannot be reached.
        """

    @abstractmethod
    def fetch_batch(self, cursor: Optional[str]) -> Batch:
        """Fetch one page of source items.

        Args:
            cursor: None for the first page, then the cursor returned by
                the previous call.

        Returns:
            Batch: (items, next_cursor); next_cursor is None when exhausted.
        """


class MailSource(Connector):
    """Mailbox connector."""

    @abstractmethod
    def get_account_identity(self) -> str:
        """Return the stable identity (email address) of the mailbox."""


class DatabaseSource(Connector):
    """Relational database connector."""
