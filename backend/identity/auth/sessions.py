"""Session creation, refresh-token rotation, bearer authentication, and logout.

Every method runs inside an open ``Transaction`` supplied by the caller, so a
session is created or rotated atomically with whatever account change the
surrounding flow makes.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from identity.auth.clock import utc_now
from identity.auth.errors import AuthError
from identity.auth.models import AccountStatus, IssuedTokens, RefreshResult, Session
from identity.auth.tokens import digest, matches

if TYPE_CHECKING:
    from identity.auth.clock import Clock
    from identity.auth.models import Account
    from identity.auth.tokens import AccessClaims, TokenIssuer
    from identity.db.connection import Transaction

logger = structlog.get_logger()

REFRESH_TOKEN_TTL = timedelta(days=7)
REFRESH_ROTATION_THRESHOLD = timedelta(hours=24)

_INVALID_REFRESH = "Invalid refresh token"
_INVALID_TOKEN = "Invalid token"


class SessionManager:
    """Issue and maintain server-side sessions backed by the ``sessions`` table."""

    def __init__(
        self,
        tokens: TokenIssuer,
        *,
        refresh_token_ttl: timedelta = REFRESH_TOKEN_TTL,
        rotation_threshold: timedelta = REFRESH_ROTATION_THRESHOLD,
        clock: Clock = utc_now,
    ) -> None:
        self._tokens = tokens
        self._refresh_ttl = refresh_token_ttl
        self._rotation_threshold = rotation_threshold
        self._clock = clock

    def create(
        self,
        tx: Transaction,
        account: Account,
        ip_address: str | None,
        user_agent: str | None,
    ) -> tuple[Session, IssuedTokens]:
        """Insert a new active session and return it with the raw tokens."""
        now = self._clock()
        session_id = str(uuid4())
        access_token, access_expires_at = self._tokens.issue_access_token(account, session_id, now)
        refresh_token = self._tokens.issue_refresh_token()
        refresh_expires_at = now + self._refresh_ttl

        session = Session(
            session_id=session_id,
            account_id=account.account_id,
            access_token_hash=digest(access_token),
            access_token_expires_at=access_expires_at,
            refresh_token_hash=digest(refresh_token),
            refresh_token_expires_at=refresh_expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        tx.sessions.insert(session)
        logger.info("session created", account_id=account.account_id, session_id=session_id)
        return session, IssuedTokens(
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            refresh_token=refresh_token,
            refresh_token_expires_at=refresh_expires_at,
        )

    def refresh(
        self,
        tx: Transaction,
        account_id: str,
        refresh_token: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> RefreshResult:
        """Mint a new access token for the session holding ``refresh_token``.

        The refresh token itself is replaced only when less than the rotation
        threshold of its lifetime remains; otherwise the stored hash and
        expiry are kept exactly as they were.
        """
        now = self._clock()
        account = tx.accounts.get_by_id(account_id)
        if account is None or account.status == AccountStatus.DELETED:
            raise AuthError.unauthorized(_INVALID_REFRESH)
        if account.is_blocked:
            raise AuthError.forbidden(f"Account is {account.status.value}")

        session = next(
            (s for s in tx.sessions.list_active(account_id) if matches(refresh_token, s.refresh_token_hash)),
            None,
        )
        if session is None:
            logger.info("refresh rejected", account_id=account_id, reason="no matching session")
            raise AuthError.unauthorized(_INVALID_REFRESH)
        if session.refresh_token_expires_at <= now:
            logger.info("refresh rejected", account_id=account_id, session_id=session.session_id, reason="expired")
            raise AuthError.unauthorized("Refresh token expired")

        access_token, access_expires_at = self._tokens.issue_access_token(account, session.session_id, now)

        new_refresh: str | None = None
        refresh_hash = session.refresh_token_hash
        refresh_expires_at = session.refresh_token_expires_at
        if session.refresh_token_expires_at - now < self._rotation_threshold:
            new_refresh = self._tokens.issue_refresh_token()
            refresh_hash = digest(new_refresh)
            refresh_expires_at = now + self._refresh_ttl

        swapped = tx.sessions.rotate(
            session.session_id,
            expected_refresh_hash=session.refresh_token_hash,
            access_token_hash=digest(access_token),
            access_token_expires_at=access_expires_at,
            refresh_token_hash=refresh_hash,
            refresh_token_expires_at=refresh_expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        if not swapped:
            logger.warning("refresh lost a concurrent rotation", account_id=account_id, session_id=session.session_id)
            raise AuthError.unauthorized(_INVALID_REFRESH)

        logger.info(
            "session refreshed",
            account_id=account_id,
            session_id=session.session_id,
            rotated=new_refresh is not None,
        )
        if new_refresh is None:
            return RefreshResult(access_token=access_token, access_token_expires_at=access_expires_at)
        return RefreshResult(
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            refresh_token=new_refresh,
            refresh_token_expires_at=refresh_expires_at,
        )

    def authenticate(self, tx: Transaction, access_token: str) -> tuple[Session, AccessClaims]:
        """Resolve a bearer access token to its live session.

        A signature-valid token is still refused once its session has been
        deactivated or its access token replaced by a refresh.
        """
        now = self._clock()
        claims = self._tokens.verify_access_token(access_token, now)
        session = tx.sessions.get(claims.session_id)
        if (
            session is None
            or not session.is_active
            or session.account_id != claims.account_id
            or not matches(access_token, session.access_token_hash)
        ):
            raise AuthError.unauthorized(_INVALID_TOKEN)
        if session.access_token_expires_at <= now:
            raise AuthError.unauthorized("Token expired")
        return session, claims

    def deactivate(self, tx: Transaction, session_id: str, account_id: str) -> None:
        """Close one session of ``account_id``. Closing an already inactive session is a no-op."""
        session = tx.sessions.get(session_id)
        if session is None or session.account_id != account_id:
            raise AuthError.not_found("Session not found")
        if tx.sessions.deactivate(session_id, self._clock()):
            logger.info("session deactivated", account_id=account_id, session_id=session_id)

    def deactivate_all(self, tx: Transaction, account_id: str) -> int:
        closed = tx.sessions.deactivate_all(account_id, self._clock())
        if closed:
            logger.info("sessions deactivated", account_id=account_id, count=closed)
        return closed

    def list_active(self, tx: Transaction, account_id: str) -> list[Session]:
        return tx.sessions.list_active(account_id)
