"""Database dump connectors.

Each run produces a single gzip-compressed plain SQL dump created with the
database's own dump tool (`pg_dump`, `mariadb-dump` / `mysqldump`). The item
key carries the dump timestamp, so every run uploads a new object.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from typing import Dict, List, Optional

from backend.services.autosync.connectors.base import Batch, DatabaseSource, SourceItem
from backend.services.autosync.credentials import DB_MYSQL, DB_POSTGRES, DatabaseCredential, check_credential
from backend.services.autosync.errors import ConnectorError, CredentialError


logger = logging.getLogger(__name__)

DUMP_TIMEOUT_SECONDS = 3600
CHECK_TIMEOUT_SECONDS = 30


class _DumpSource(DatabaseSource):
    """Shared logic of the dump connectors."""

    engine = ""

    def __init__(self, credential: DatabaseCredential):
        super().__init__(credential)
        check_credential(credential, self.connector_type)

    def _dump_command(self) -> List[str]:
        raise NotImplementedError

    def _check_command(self) -> List[str]:
        raise NotImplementedError

    def _env(self) -> Dict[str, str]:
        raise NotImplementedError

    def _run(self, cmd: List[str], timeout: int) -> bytes:
        if shutil.which(cmd[0]) is None:
            raise ConnectorError(f"{cmd[0]} is not installed")

        try:
            result = subprocess.run(
                cmd,
                env=self._env(),
                capture_output=True,
                check=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ConnectorError(f"{cmd[0]} timed out after {timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            lowered = stderr.lower()
            if "authentication" in lowered or "access denied" in lowered or "password" in lowered:
                raise CredentialError("database rejected the credentials", detail=stderr) from exc
            raise ConnectorError(f"{cmd[0]} failed", detail=stderr) from exc
        return result.stdout

    def validate_credential(self) -> None:
        self._run(self._check_command(), CHECK_TIMEOUT_SECONDS)

    def fetch_batch(self, cursor: Optional[str]) -> Batch:
        # A dump is a single item; any cursor means the listing is exhausted.
        if cursor is not None:
            return [], None

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        key = f"{self.engine}/{self.credential.database_name}_{timestamp}.sql.gz"

        logger.info("Dumping %s database %s", self.engine, self.credential.database_name)
        raw = self._run(self._dump_command(), DUMP_TIMEOUT_SECONDS)
        return [SourceItem(key=key, data=gzip.compress(raw))], None


class PostgresDumpSource(_DumpSource):
    """PostgreSQL source backed by `pg_dump`."""

    connector_type = DB_POSTGRES
    engine = "postgresql"

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["PGPASSWORD"] = self.credential.password
        return env

    def _connection_args(self) -> List[str]:
        c = self.credential
        return ["-h", c.host, "-p", str(c.port), "-U", c.username, "-d", c.database_name]

    def _dump_command(self) -> List[str]:
        return ["pg_dump", *self._connection_args(), "--no-owner", "--no-acl", "-F", "p"]

    def _check_command(self) -> List[str]:
        return ["psql", *self._connection_args(), "-t", "-c", "SELECT 1"]


class MySQLDumpSource(_DumpSource):
    """MySQL / MariaDB source backed by `mariadb-dump` or `mysqldump`."""

    connector_type = DB_MYSQL
    engine = "mysql"

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["MYSQL_PWD"] = self.credential.password
        return env

    def _connection_args(self) -> List[str]:
        c = self.credential
        return ["-h", c.host, "-P", str(c.port), "-u", c.username]

    def _dump_command(self) -> List[str]:
        tool = "mariadb-dump" if shutil.which("mariadb-dump") else "mysqldump"
        return [
            tool,
            *self._connection_args(),
            self.credential.database_name,
            "--single-transaction",
            "--skip-lock-tables",
        ]

    def _check_command(self) -> List[str]:
        tool = "mariadb" if shutil.which("mariadb") else "mysql"
        return [tool, *self._connection_args(), "-e", "SELECT 1", self.credential.database_name]
