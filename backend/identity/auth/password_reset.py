"""Password reset tokens: issue, consume, and best-effort delivery.

Reset is independent of session state: consuming a token replaces the
credential hash but never signs the user in.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import anyio
import structlog

from identity.auth.errors import AuthError
from identity.auth.models import AccountStatus, IdentityProvider
from identity.auth.tokens import TokenIssuer, digest

if TYPE_CHECKING:
    from datetime import datetime

    from identity.auth.mail import Mailer
    from identity.auth.models import Account
    from identity.db.connection import Transaction

logger = structlog.get_logger()

RESET_TOKEN_TTL = timedelta(minutes=15)
DEFAULT_SEND_TIMEOUT_SECONDS = 10.0

# Only these accounts can receive a reset link. Anything else gets the same
# generic response with no email.
_RESETTABLE_STATUSES = frozenset({AccountStatus.PENDING, AccountStatus.ACTIVE})


def is_resettable(account: Account) -> bool:
    return (
        account.identity_provider == IdentityProvider.PASSWORD
        and account.credential_hash is not None
        and account.status in _RESETTABLE_STATUSES
    )


class PasswordResetWorkflow:
    def __init__(
        self,
        mailer: Mailer,
        *,
        token_ttl: timedelta = RESET_TOKEN_TTL,
        send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._mailer = mailer
        self._ttl = token_ttl
        self._send_timeout = send_timeout_seconds

    def issue(self, account: Account, now: datetime) -> tuple[Account, str]:
        """Attach a fresh reset token; a newer request invalidates the older link."""
        raw, token_hash = TokenIssuer.issue_one_time_token()
        updated = account.touch(now, reset_token_hash=token_hash, reset_token_expires_at=now + self._ttl)
        return updated, raw

    def consume(self, tx: Transaction, raw_token: str, new_credential_hash: str, now: datetime) -> Account:
        """Replace the password of the account holding ``raw_token`` and clear the token."""
        account = tx.accounts.get_by_reset_token_hash(digest(raw_token))
        if account is None or account.reset_token_expires_at is None:
            raise AuthError.not_found("Invalid reset token")
        if now >= account.reset_token_expires_at:
            logger.info("reset token expired", account_id=account.account_id)
            raise AuthError.unauthorized("Reset token expired")

        updated = account.touch(
            now,
            credential_hash=new_credential_hash,
            reset_token_hash=None,
            reset_token_expires_at=None,
        )
        tx.accounts.update(updated)
        logger.info("password reset", account_id=account.account_id)
        return updated

    async def send(self, account: Account, raw_token: str) -> None:
        """Deliver the reset email. Failures are logged, never raised."""
        try:
            with anyio.fail_after(self._send_timeout):
                await self._mailer.send_password_reset_email(account.email, account.full_name, raw_token)
        except Exception:
            logger.exception("password reset email failed", account_id=account.account_id)
