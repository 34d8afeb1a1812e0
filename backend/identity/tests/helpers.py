"""Test doubles shared by identity and api tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from identity.auth.errors import AuthError
from identity.auth.models import ExternalIdentity
from identity.auth.password import SimpleHasher
from identity.auth.password_reset import PasswordResetWorkflow
from identity.auth.service import AuthService
from identity.auth.sessions import SessionManager
from identity.auth.tokens import TokenIssuer
from identity.auth.verification import VerificationWorkflow
from identity.db.columns import encode_datetime

if TYPE_CHECKING:
    import sqlite3

    from identity.auth.models import AccountStatus
    from identity.db.connection import Database

TEST_JWT_SECRET = "unit-test-jwt-secret-0123456789abcdef"  # noqa: S105
START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@dataclass
class SentEmail:
    to: str
    name: str | None
    token: str


@dataclass
class RecordingMailer:
    """Mailer that records every message; set ``fail`` to make delivery raise."""

    verification: list[SentEmail] = field(default_factory=list)
    reset: list[SentEmail] = field(default_factory=list)
    fail: bool = False

    async def send_verification_email(self, to: str, name: str | None, token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.verification.append(SentEmail(to, name, token))

    async def send_password_reset_email(self, to: str, name: str | None, token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.reset.append(SentEmail(to, name, token))


@dataclass
class FakeIdentityVerifier:
    """Accepts only the ID tokens registered in ``identities``."""

    identities: dict[str, ExternalIdentity] = field(default_factory=dict)

    async def verify(self, id_token: str) -> ExternalIdentity:
        identity = self.identities.get(id_token)
        if identity is None:
            raise AuthError.unauthorized("Invalid Google authentication token")
        return identity


def build_service(
    db: Database,
    *,
    clock: FakeClock,
    mailer: RecordingMailer,
    identity_verifier: FakeIdentityVerifier,
) -> AuthService:
    tokens = TokenIssuer(TEST_JWT_SECRET)
    return AuthService(
        db,
        password_hasher=SimpleHasher(),
        sessions=SessionManager(tokens, clock=clock),
        verification=VerificationWorkflow(mailer),
        password_reset=PasswordResetWorkflow(mailer),
        identity_verifier=identity_verifier,
        clock=clock,
    )


def set_account_status(conn: sqlite3.Connection, account_id: str, status: AccountStatus, now: datetime) -> None:
    """Administrative status change; no HTTP or service operation performs one."""
    cursor = conn.execute(
        "UPDATE accounts SET status = ?, updated_at = ? WHERE id = ?",
        (status.value, encode_datetime(now), account_id),
    )
    assert cursor.rowcount == 1


def count_accounts_by_email(conn: sqlite3.Connection, email: str, *, include_deleted: bool = False) -> int:
    sql = "SELECT COUNT(*) FROM accounts WHERE email = ?"
    if not include_deleted:
        sql += " AND status != 'deleted'"
    return conn.execute(sql, (email,)).fetchone()[0]
