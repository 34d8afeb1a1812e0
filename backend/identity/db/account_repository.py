"""SQLite-backed account store."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

from identity.auth.errors import AuthError
from identity.auth.models import Account
from identity.db.columns import encode_datetime

if TYPE_CHECKING:
    from datetime import datetime

_COLUMNS = (
    "id",
    "email",
    "full_name",
    "avatar_url",
    "credential_hash",
    "identity_provider",
    "provider_subject",
    "status",
    "role",
    "email_verified",
    "email_verified_at",
    "verification_token_hash",
    "verification_token_expires_at",
    "reset_token_hash",
    "reset_token_expires_at",
    "created_at",
    "updated_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM accounts"  # noqa: S608 - fixed column list
_INSERT = f"INSERT INTO accounts ({', '.join(_COLUMNS)}) VALUES ({', '.join(':' + c for c in _COLUMNS)})"  # noqa: S608
_UPDATE = (
    "UPDATE accounts SET "  # noqa: S608
    + ", ".join(f"{c} = :{c}" for c in _COLUMNS if c not in {"id", "created_at"})
    + " WHERE id = :id"
)


def _params(account: Account) -> dict[str, Any]:
    return {
        "id": account.account_id,
        "email": account.email,
        "full_name": account.full_name,
        "avatar_url": account.avatar_url,
        "credential_hash": account.credential_hash,
        "identity_provider": account.identity_provider.value,
        "provider_subject": account.provider_subject,
        "status": account.status.value,
        "role": account.role.value,
        "email_verified": int(account.email_verified),
        "email_verified_at": encode_datetime(account.email_verified_at),
        "verification_token_hash": account.verification_token_hash,
        "verification_token_expires_at": encode_datetime(account.verification_token_expires_at),
        "reset_token_hash": account.reset_token_hash,
        "reset_token_expires_at": encode_datetime(account.reset_token_expires_at),
        "created_at": encode_datetime(account.created_at),
        "updated_at": encode_datetime(account.updated_at),
    }


def _from_row(row: sqlite3.Row | None) -> Account | None:
    if row is None:
        return None
    data = dict(row)
    data["account_id"] = data.pop("id")
    data["email_verified"] = bool(data["email_verified"])
    return Account.model_validate(data)


def _is_email_conflict(exc: sqlite3.IntegrityError) -> bool:
    message = str(exc).lower()
    return "accounts.email" in message or "idx_accounts_email" in message


class SqliteAccountRepository:
    """Account persistence bound to one transaction's connection.

    The partial unique index on ``email`` is the authoritative guard against
    duplicate signups; a violation surfaces as a CONFLICT AuthError so a racing
    duplicate never turns into a generic internal error.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def insert(self, account: Account) -> None:
        try:
            self._conn.execute(_INSERT, _params(account))
        except sqlite3.IntegrityError as exc:
            if _is_email_conflict(exc):
                raise AuthError.conflict("Email already in use") from exc
            raise

    def update(self, account: Account) -> None:
        """Persist every mutable column. Raises NOT_FOUND if the row vanished."""
        try:
            cursor = self._conn.execute(_UPDATE, _params(account))
        except sqlite3.IntegrityError as exc:
            if _is_email_conflict(exc):
                raise AuthError.conflict("Email already in use") from exc
            raise
        if cursor.rowcount == 0:
            raise AuthError.not_found("Account not found")

    def get_by_id(self, account_id: str) -> Account | None:
        row = self._conn.execute(f"{_SELECT} WHERE id = ?", (account_id,)).fetchone()
        return _from_row(row)

    def get_by_email(self, normalized_email: str) -> Account | None:
        """Look up the live account for an email. Deleted accounts are tombstones and never match."""
        row = self._conn.execute(
            f"{_SELECT} WHERE email = ? AND status != 'deleted'",
            (normalized_email,),
        ).fetchone()
        return _from_row(row)

    def get_by_verification_token_hash(self, token_hash: str) -> Account | None:
        row = self._conn.execute(
            f"{_SELECT} WHERE verification_token_hash = ?",
            (token_hash,),
        ).fetchone()
        return _from_row(row)

    def get_by_reset_token_hash(self, token_hash: str) -> Account | None:
        row = self._conn.execute(f"{_SELECT} WHERE reset_token_hash = ?", (token_hash,)).fetchone()
        return _from_row(row)

    def set_verification_token(self, account_id: str, token_hash: str, expires_at: datetime, now: datetime) -> bool:
        """Replace the verification token of a still-unverified account, touching no other column.

        Returns False when the account is gone or was verified in the meantime.
        """
        cursor = self._conn.execute(
            "UPDATE accounts SET verification_token_hash = ?, verification_token_expires_at = ?, updated_at = ?"
            " WHERE id = ? AND email_verified = 0",
            (token_hash, encode_datetime(expires_at), encode_datetime(now), account_id),
        )
        return cursor.rowcount == 1
