"""
Shared fixtures for the auto-sync test suite.

Tests run against a temporary SQLite database and in-memory fakes for the
source connectors and the destination blob store.
"""

import os
import tempfile
import threading
from typing import Dict, List, Optional, Set

# Keep log files of the default app out of the source tree.
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="autosync-logs-"))

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.settings import Settings
from backend.database.sql_handler import SQLHandler
from backend.services.autosync import AutoSyncServices, build_services
from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.connectors.base import Batch, DatabaseSource, MailSource, SourceItem
from backend.services.autosync.connectors.registry import ConnectorRegistry
from backend.services.autosync.credentials import DB_MYSQL, DB_POSTGRES, MAIL_GMAIL, MAIL_OUTLOOK
from backend.services.autosync.errors import BlobNotFoundError, BlobStoreError, CredentialError
from backend.services.autosync.storage.base import BlobStore


ADMIN_KEY = "admin-key-for-tests"
PURGE_SECRET = "purge-secret-for-tests"
OWNER = "user-1"
OWNER_HEADERS = {"X-User-Id": OWNER}


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed blob store.

    `fail_keys` makes `put` raise for those keys; `fail_setup` makes
    `ensure_namespace` raise.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.objects: Dict[str, Dict[str, bytes]] = {}
        self.fail_keys: Set[str] = set()
        self.fail_setup = False

    def ensure_namespace(self, namespace: str) -> None:
        if self.fail_setup:
            raise BlobStoreError("destination is read-only")
        with self._lock:
            self.objects.setdefault(namespace, {})

    def put(self, namespace: str, key: str, data: bytes) -> None:
        if key in self.fail_keys:
            raise BlobStoreError(f"upload rejected for {key}")
        with self._lock:
            self.objects.setdefault(namespace, {})[key] = data

    def get(self, namespace: str, key: str) -> bytes:
        try:
            return self.objects[namespace][key]
        except KeyError:
            raise BlobNotFoundError(f"Object not found: {namespace}/{key}")

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self.objects.get(namespace, {}).pop(key, None)

    def list_keys(self, namespace: str, prefix: str = "") -> Set[str]:
        if namespace not in self.objects:
            raise BlobNotFoundError(f"Namespace not found: {namespace}")
        return {key for key in self.objects[namespace] if key.startswith(prefix)}


class FakeBlobStores:
    """Blob store factory handing out one in-memory store per destination token."""

    def __init__(self) -> None:
        self.stores: Dict[str, InMemoryBlobStore] = {}
        self.broken_tokens: Set[str] = set()

    def __call__(self, destination_token: str) -> BlobStore:
        if destination_token in self.broken_tokens:
            raise RuntimeError("destination rejected the token")
        return self.stores.setdefault(destination_token, InMemoryBlobStore())


class SourceData:
    """Items served by the fake connectors, keyed by account (email or database name)."""

    def __init__(self) -> None:
        self.items: Dict[str, List[SourceItem]] = {}
        self.identities: Dict[str, str] = {
            "token-alice": "alice@example.com",
            "token-bob": "bob@example.com",
        }
        self.bad_passwords: Set[str] = {"wrong"}
        self.page_size = 2

    def page(self, account: str, cursor: Optional[str]) -> Batch:
        items = self.items.get(account, [])
        start = int(cursor or 0)
        end = start + self.page_size
        return items[start:end], (str(end) if end < len(items) else None)


def make_registry(data: SourceData) -> ConnectorRegistry:
    class FakeMail(MailSource):
        def get_account_identity(self) -> str:
            identity = data.identities.get(self.credential.refresh_token)
            if identity is None:
                raise CredentialError("refresh token rejected")
            return identity

        def validate_credential(self) -> None:
            self.get_account_identity()

        def fetch_batch(self, cursor: Optional[str]) -> Batch:
            return data.page(self.get_account_identity(), cursor)

    class FakeDatabase(DatabaseSource):
        def validate_credential(self) -> None:
            if self.credential.password in data.bad_passwords:
                raise CredentialError("authentication failed")

        def fetch_batch(self, cursor: Optional[str]) -> Batch:
            return data.page(self.credential.database_name, cursor)

    return ConnectorRegistry(
        {
            MAIL_GMAIL: FakeMail,
            MAIL_OUTLOOK: FakeMail,
            DB_POSTGRES: FakeDatabase,
            DB_MYSQL: FakeDatabase,
        }
    )


def db_payload(**overrides) -> dict:
    payload = {
        "host": "db.local",
        "port": "5432",
        "username": "backup",
        "password": "s3cret-password",
        "database_name": "shop",
    }
    payload.update(overrides)
    return payload


def items(*keys: str) -> List[SourceItem]:
    return [SourceItem(key=key, data=f"content of {key}".encode("utf-8")) for key in keys]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'autosync.db'}",
        ADMIN_API_KEY=ADMIN_KEY,
        PURGE_SECRET=PURGE_SECRET,
        CONFIG_ENCRYPTION_KEY="test-encryption-key",
        LOG_DIR=str(tmp_path / "logs"),
        BLOB_STORE_PATH=str(tmp_path / "blobs"),
        RUN_MIGRATIONS=False,
    )


@pytest_asyncio.fixture
async def handler(settings):
    handler = SQLHandler(settings.DATABASE_URL)
    await handler.create_all()
    yield handler
    await handler.close()


@pytest.fixture
def source_data() -> SourceData:
    return SourceData()


@pytest.fixture
def blob_stores() -> FakeBlobStores:
    return FakeBlobStores()


@pytest.fixture
def sealer(settings) -> SecretSealer:
    return SecretSealer(settings.get_config_encryption_key())


@pytest.fixture
def services(handler, source_data, blob_stores, sealer) -> AutoSyncServices:
    return build_services(
        handler,
        connectors=make_registry(source_data),
        sealer=sealer,
        blob_stores=blob_stores,
        transfer_concurrency=3,
        job_timeout_seconds=30,
        max_jobs=10,
    )


@pytest_asyncio.fixture
async def client(settings, services):
    from main import create_app

    app = create_app(settings, services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
