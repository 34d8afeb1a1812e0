"""Email verification tokens: issue, confirm, and best-effort delivery."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import anyio
import structlog

from identity.auth.errors import AuthError
from identity.auth.models import AccountStatus
from identity.auth.tokens import TokenIssuer, digest

if TYPE_CHECKING:
    from datetime import datetime

    from identity.auth.mail import Mailer
    from identity.auth.models import Account
    from identity.db.connection import Transaction

logger = structlog.get_logger()

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
DEFAULT_SEND_TIMEOUT_SECONDS = 10.0


class VerificationWorkflow:
    def __init__(
        self,
        mailer: Mailer,
        *,
        token_ttl: timedelta = VERIFICATION_TOKEN_TTL,
        send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._mailer = mailer
        self._ttl = token_ttl
        self._send_timeout = send_timeout_seconds

    def issue(self, account: Account, now: datetime) -> tuple[Account, str]:
        """Attach a fresh verification token to ``account``, replacing any previous one.

        Returns the updated account (not yet persisted) and the raw token,
        which only ever leaves the process inside the verification email.
        """
        raw, token_hash = TokenIssuer.issue_one_time_token()
        updated = account.touch(
            now,
            verification_token_hash=token_hash,
            verification_token_expires_at=now + self._ttl,
        )
        return updated, raw

    def reissue(self, tx: Transaction, account: Account, now: datetime) -> tuple[Account, str] | None:
        """Replace the stored token of an unverified account in place.

        Only the token columns change, so concurrent writes to the rest of the
        row survive. Returns None if the account was verified meanwhile.
        """
        updated, raw = self.issue(account, now)
        if not tx.accounts.set_verification_token(
            account.account_id,
            updated.verification_token_hash,
            updated.verification_token_expires_at,
            now,
        ):
            return None
        return updated, raw

    def confirm(self, tx: Transaction, raw_token: str, now: datetime) -> Account:
        """Activate the pending account holding ``raw_token`` and clear the token.

        An expired token is left in place so the next sign-in can replace it.
        """
        account = tx.accounts.get_by_verification_token_hash(digest(raw_token))
        if account is None or account.verification_token_expires_at is None:
            raise AuthError.not_found("Invalid verification token")
        if now >= account.verification_token_expires_at:
            logger.info("verification token expired", account_id=account.account_id)
            raise AuthError.unauthorized("Verification token expired")
        if account.status != AccountStatus.PENDING:
            raise AuthError.forbidden("Account is not awaiting verification")

        activated = account.touch(
            now,
            status=AccountStatus.ACTIVE,
            email_verified=True,
            email_verified_at=now,
            verification_token_hash=None,
            verification_token_expires_at=None,
        )
        tx.accounts.update(activated)
        logger.info("email verified", account_id=account.account_id)
        return activated

    async def send(self, account: Account, raw_token: str) -> None:
        """Deliver the verification email. Failures are logged, never raised."""
        try:
            with anyio.fail_after(self._send_timeout):
                await self._mailer.send_verification_email(account.email, account.full_name, raw_token)
        except Exception:
            logger.exception("verification email failed", account_id=account.account_id)
