"""SQLite database connection, schema, and transaction management."""

from __future__ import annotations

import asyncio
import contextlib
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from identity.db.account_repository import SqliteAccountRepository
from identity.db.session_repository import SqliteSessionRepository

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger()

_DB_FILE_PERMISSIONS = 0o600
_BUSY_TIMEOUT_MS = 5000

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    full_name TEXT,
    avatar_url TEXT,
    credential_hash TEXT,
    identity_provider TEXT NOT NULL
        CHECK (identity_provider IN ('password', 'google', 'apple')),
    provider_subject TEXT,
    status TEXT NOT NULL
        CHECK (status IN ('pending', 'active', 'suspended', 'deleted', 'disabled')),
    role TEXT NOT NULL
        CHECK (role IN ('viewer', 'creator', 'admin')),
    email_verified INTEGER NOT NULL DEFAULT 0,
    email_verified_at TEXT,
    verification_token_hash TEXT,
    verification_token_expires_at TEXT,
    reset_token_hash TEXT,
    reset_token_expires_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Exactly one non-deleted account per normalized email.
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_email
    ON accounts (email) WHERE status != 'deleted';

CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_verification_token_hash
    ON accounts (verification_token_hash) WHERE verification_token_hash IS NOT NULL;

CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_reset_token_hash
    ON accounts (reset_token_hash) WHERE reset_token_hash IS NOT NULL;

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    access_token_hash TEXT NOT NULL,
    access_token_expires_at TEXT NOT NULL,
    refresh_token_hash TEXT NOT NULL,
    refresh_token_expires_at TEXT NOT NULL,
    ip_address TEXT,
    user_agent TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_account_active
    ON sessions (account_id, is_active);
"""


@dataclass(frozen=True)
class Transaction:
    """Repositories bound to the connection of one open transaction."""

    connection: sqlite3.Connection
    accounts: SqliteAccountRepository
    sessions: SqliteSessionRepository


class Database:
    """SQLite database wrapper with schema management and transaction control.

    One connection per process, opened in autocommit mode so transactions are
    delimited explicitly. ``transaction()`` serializes in-process writers with
    an asyncio.Lock and takes SQLite's reserved lock with BEGIN IMMEDIATE,
    which serializes other processes through the busy timeout.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the active connection or raise if disconnected."""
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    def connect(self) -> None:
        """Open the database, apply pragmas, create schema, and harden file permissions."""
        parent = Path(self._path).parent
        parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        self._conn.executescript(_SCHEMA_SQL)

        self._harden_permissions()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextlib.asynccontextmanager
    async def transaction(self, *, write: bool = True) -> AsyncIterator[Transaction]:
        """Run the body inside one transaction; commit on success, roll back on any exception.

        Rollback also covers cancellation (asyncio.CancelledError is a
        BaseException), so an abandoned request never leaves a partial write.
        Bodies must not await external I/O while the lock is held.
        """
        async with self._lock:
            conn = self.connection
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield Transaction(
                    connection=conn,
                    accounts=SqliteAccountRepository(conn),
                    sessions=SqliteSessionRepository(conn),
                )
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _harden_permissions(self) -> None:
        """Set restrictive file permissions on POSIX systems (best effort).

        Hardens the main DB file and WAL/SHM sibling files created by WAL mode,
        since they also contain database content (password and token hashes).
        """
        if os.name != "posix":  # pragma: no cover
            return
        for suffix in ("", "-wal", "-shm"):
            p = Path(self._path + suffix)
            if p.exists():
                try:
                    p.chmod(_DB_FILE_PERMISSIONS)
                except OSError:
                    logger.warning("could not set file permissions", permissions=oct(_DB_FILE_PERMISSIONS), path=str(p))
