"""SQLite-backed session store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from identity.auth.models import Session
from identity.db.columns import encode_datetime

if TYPE_CHECKING:
    import sqlite3
    from datetime import datetime

_SELECT = (
    "SELECT id, account_id, access_token_hash, access_token_expires_at, refresh_token_hash,"
    " refresh_token_expires_at, ip_address, user_agent, is_active, created_at, updated_at FROM sessions"
)


def _from_row(row: sqlite3.Row | None) -> Session | None:
    if row is None:
        return None
    data = dict(row)
    data["session_id"] = data.pop("id")
    data["is_active"] = bool(data["is_active"])
    return Session.model_validate(data)


class SqliteSessionRepository:
    """Session persistence bound to one transaction's connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def insert(self, session: Session) -> None:
        self._conn.execute(
            "INSERT INTO sessions (id, account_id, access_token_hash, access_token_expires_at,"
            " refresh_token_hash, refresh_token_expires_at, ip_address, user_agent, is_active,"
            " created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.session_id,
                session.account_id,
                session.access_token_hash,
                encode_datetime(session.access_token_expires_at),
                session.refresh_token_hash,
                encode_datetime(session.refresh_token_expires_at),
                session.ip_address,
                session.user_agent,
                int(session.is_active),
                encode_datetime(session.created_at),
                encode_datetime(session.updated_at),
            ),
        )

    def get(self, session_id: str) -> Session | None:
        row = self._conn.execute(f"{_SELECT} WHERE id = ?", (session_id,)).fetchone()
        return _from_row(row)

    def list_active(self, account_id: str) -> list[Session]:
        """Active sessions for an account, newest first."""
        rows = self._conn.execute(
            f"{_SELECT} WHERE account_id = ? AND is_active = 1 ORDER BY created_at DESC",
            (account_id,),
        ).fetchall()
        return [s for s in (_from_row(row) for row in rows) if s is not None]

    def rotate(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
        ip_address: str | None,
        user_agent: str | None,
        now: datetime,
    ) -> bool:
        """Replace the token hashes only if the stored refresh hash still matches.

        Returns False when another refresh already consumed the token, which
        makes concurrent presentations of one refresh token race-free.
        """
        cursor = self._conn.execute(
            "UPDATE sessions SET access_token_hash = ?, access_token_expires_at = ?,"
            " refresh_token_hash = ?, refresh_token_expires_at = ?,"
            " ip_address = COALESCE(?, ip_address), user_agent = COALESCE(?, user_agent), updated_at = ?"
            " WHERE id = ? AND refresh_token_hash = ? AND is_active = 1",
            (
                access_token_hash,
                encode_datetime(access_token_expires_at),
                refresh_token_hash,
                encode_datetime(refresh_token_expires_at),
                ip_address,
                user_agent,
                encode_datetime(now),
                session_id,
                expected_refresh_hash,
            ),
        )
        return cursor.rowcount == 1

    def deactivate(self, session_id: str, now: datetime) -> bool:
        cursor = self._conn.execute(
            "UPDATE sessions SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
            (encode_datetime(now), session_id),
        )
        return cursor.rowcount == 1

    def deactivate_all(self, account_id: str, now: datetime) -> int:
        """Deactivate every active session of an account. Returns how many were closed."""
        cursor = self._conn.execute(
            "UPDATE sessions SET is_active = 0, updated_at = ? WHERE account_id = ? AND is_active = 1",
            (encode_datetime(now), account_id),
        )
        return cursor.rowcount
