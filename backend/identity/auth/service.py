"""Auth service coordinating signup, sign-in, verification, refresh, and password reset.

Each public flow either completes every store mutation it defines or none of
them. Slow or external work (password hashing, Google key fetches, email)
runs outside the database transaction so no lock is held across it.
"""

from __future__ import annotations

import functools
import re
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from identity.auth.clock import utc_now
from identity.auth.errors import AuthError
from identity.auth.google import INVALID_GOOGLE_TOKEN_MESSAGE, GoogleIdentityVerifier
from identity.auth.mail import get_mailer
from identity.auth.models import (
    Account,
    AccountStatus,
    IdentityProvider,
    Role,
    SignedIn,
)
from identity.auth.password import get_hasher
from identity.auth.password_reset import PasswordResetWorkflow, is_resettable
from identity.auth.sessions import SessionManager
from identity.auth.tokens import TokenIssuer
from identity.auth.verification import VerificationWorkflow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from identity.auth.clock import Clock
    from identity.auth.google import ExternalIdentityVerifier
    from identity.auth.mail import Mailer
    from identity.auth.models import RefreshResult, Session
    from identity.auth.password import PasswordHasher
    from identity.auth.settings import AuthSettings, MailSettings
    from identity.db.connection import Database

logger = structlog.get_logger()

EMAIL_MAX_LENGTH = 254
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
FULL_NAME_MAX_LENGTH = 120
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 72  # bcrypt truncates at 72 bytes

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
UNVERIFIED_EMAIL_MESSAGE = "Email not verified. A new verification link has been sent to your email."
PROVIDER_MISMATCH_MESSAGE = "This email is registered with a password. Use password sign-in instead."
RESET_REQUESTED_MESSAGE = "If an account exists for this email, a password reset link has been sent."

# Verified against when the email is unknown so both failure paths pay for one hash.
_DUMMY_PASSWORD = "timing-equalizer-password"  # noqa: S105


def _flow[**P, R](method: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Pass AuthError through unchanged; log anything else and surface it as INTERNAL."""

    @functools.wraps(method)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await method(*args, **kwargs)
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("auth flow failed", flow=method.__name__)
            raise AuthError.internal({"flow": method.__name__}) from exc

    return wrapper


class AuthService:
    """Coordinate the account and session lifecycle over one ``Database``."""

    def __init__(  # noqa: PLR0913
        self,
        db: Database,
        *,
        password_hasher: PasswordHasher,
        sessions: SessionManager,
        verification: VerificationWorkflow,
        password_reset: PasswordResetWorkflow,
        identity_verifier: ExternalIdentityVerifier,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._hasher = password_hasher
        self._sessions = sessions
        self._verification = verification
        self._password_reset = password_reset
        self._identity_verifier = identity_verifier
        self._clock = clock
        self._dummy_hash: str | None = None

    @classmethod
    def from_settings(
        cls,
        db: Database,
        auth_settings: AuthSettings,
        mail_settings: MailSettings,
        *,
        mailer: Mailer | None = None,
        identity_verifier: ExternalIdentityVerifier | None = None,
        clock: Clock = utc_now,
    ) -> AuthService:
        """Wire every collaborator from settings. Explicit collaborators win over settings."""
        if mailer is None:
            mailer = get_mailer(mail_settings)
        if identity_verifier is None:
            identity_verifier = GoogleIdentityVerifier(
                auth_settings.google_client_id,
                timeout_seconds=auth_settings.identity_timeout_seconds,
            )
        tokens = TokenIssuer(
            auth_settings.jwt_secret,
            access_token_ttl=timedelta(minutes=auth_settings.access_token_ttl_minutes),
        )
        return cls(
            db,
            password_hasher=get_hasher(
                auth_settings.password_hasher,
                rounds=auth_settings.bcrypt_rounds,
                timeout_seconds=auth_settings.hash_timeout_seconds,
            ),
            sessions=SessionManager(
                tokens,
                refresh_token_ttl=timedelta(days=auth_settings.refresh_token_ttl_days),
                rotation_threshold=timedelta(hours=auth_settings.refresh_rotation_threshold_hours),
                clock=clock,
            ),
            verification=VerificationWorkflow(
                mailer,
                token_ttl=timedelta(hours=auth_settings.verification_token_ttl_hours),
                send_timeout_seconds=mail_settings.timeout_seconds,
            ),
            password_reset=PasswordResetWorkflow(
                mailer,
                token_ttl=timedelta(minutes=auth_settings.reset_token_ttl_minutes),
                send_timeout_seconds=mail_settings.timeout_seconds,
            ),
            identity_verifier=identity_verifier,
            clock=clock,
        )

    @_flow
    async def signup(self, email: str, password: str, full_name: str | None = None) -> Account:
        """Create a pending password account and send its verification email."""
        email = normalize_email(email)
        _validate_email(email)
        _validate_password(password)
        full_name = _clean_full_name(full_name)

        async with self._db.transaction(write=False) as tx:
            if tx.accounts.get_by_email(email) is not None:
                raise AuthError.conflict("Email already in use")

        credential_hash = await self._hasher.hash(password)
        now = self._clock()
        account = Account(
            account_id=str(uuid4()),
            email=email,
            full_name=full_name,
            credential_hash=credential_hash,
            identity_provider=IdentityProvider.PASSWORD,
            status=AccountStatus.PENDING,
            role=Role.VIEWER,
            email_verified=False,
            created_at=now,
            updated_at=now,
        )
        account, raw_token = self._verification.issue(account, now)

        # The unique email index is the real guard; a racing duplicate fails here with CONFLICT.
        async with self._db.transaction() as tx:
            tx.accounts.insert(account)

        logger.info("account created", account_id=account.account_id, provider=account.identity_provider)
        await self._verification.send(account, raw_token)
        return account

    @_flow
    async def signin(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SignedIn:
        if not email or not password:
            raise AuthError.validation("Email and password are required")
        email = normalize_email(email)

        async with self._db.transaction(write=False) as tx:
            account = tx.accounts.get_by_email(email)

        if account is None or account.credential_hash is None:
            await self._hasher.verify(password, await self._get_dummy_hash())
            raise AuthError.unauthorized(INVALID_CREDENTIALS_MESSAGE)
        if not await self._hasher.verify(password, account.credential_hash):
            logger.info("sign-in rejected", account_id=account.account_id, reason="bad password")
            raise AuthError.unauthorized(INVALID_CREDENTIALS_MESSAGE)
        if account.is_blocked:
            logger.info("sign-in rejected", account_id=account.account_id, reason=account.status)
            raise AuthError.forbidden(f"Account is {account.status.value}")

        # The password was checked against a snapshot taken before the slow hash;
        # every write below works from the row as it is under the write lock.
        issued: tuple[Account, str] | None = None
        async with self._db.transaction() as tx:
            current = tx.accounts.get_by_id(account.account_id)
            if (
                current is None
                or current.status == AccountStatus.DELETED
                or current.credential_hash != account.credential_hash
            ):
                logger.info("sign-in rejected", account_id=account.account_id, reason="account changed")
                raise AuthError.unauthorized(INVALID_CREDENTIALS_MESSAGE)
            if current.is_blocked:
                raise AuthError.forbidden(f"Account is {current.status.value}")
            if current.email_verified:
                session, tokens = self._sessions.create(tx, current, ip_address, user_agent)
            else:
                # Only the token columns are written; the FORBIDDEN below comes after commit.
                issued = self._verification.reissue(tx, current, self._clock())

        if not current.email_verified:
            if issued is not None:
                reissued, raw_token = issued
                await self._verification.send(reissued, raw_token)
            logger.info("sign-in blocked until email is verified", account_id=current.account_id)
            raise AuthError.forbidden(UNVERIFIED_EMAIL_MESSAGE)

        logger.info("signed in", account_id=current.account_id, session_id=session.session_id)
        return SignedIn(account=current, session=session, tokens=tokens)

    @_flow
    async def signin_with_google(
        self,
        id_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SignedIn:
        """Sign in with a Google ID token, creating an active account on first use."""
        if not id_token:
            raise AuthError.validation("ID token is required")
        identity = await self._identity_verifier.verify(id_token)
        email = normalize_email(identity.email)

        async with self._db.transaction() as tx:
            account = tx.accounts.get_by_email(email)
            if account is not None and account.identity_provider != IdentityProvider.GOOGLE:
                logger.info("google sign-in rejected", account_id=account.account_id, reason="provider mismatch")
                raise AuthError.conflict(PROVIDER_MISMATCH_MESSAGE)
            if account is not None and account.provider_subject and account.provider_subject != identity.subject:
                # Same email, different Google user: the address was reassigned.
                logger.warning("google sign-in rejected", account_id=account.account_id, reason="subject mismatch")
                raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)
            if account is not None and account.is_blocked:
                raise AuthError.forbidden(f"Account is {account.status.value}")

            if account is None:
                now = self._clock()
                account = Account(
                    account_id=str(uuid4()),
                    email=email,
                    full_name=_truncate_name(identity.name),
                    avatar_url=identity.picture,
                    identity_provider=IdentityProvider.GOOGLE,
                    provider_subject=identity.subject,
                    status=AccountStatus.ACTIVE,
                    role=Role.VIEWER,
                    email_verified=True,
                    email_verified_at=now,
                    created_at=now,
                    updated_at=now,
                )
                tx.accounts.insert(account)
                logger.info("account created", account_id=account.account_id, provider=account.identity_provider)

            session, tokens = self._sessions.create(tx, account, ip_address, user_agent)

        logger.info("signed in with google", account_id=account.account_id, session_id=session.session_id)
        return SignedIn(account=account, session=session, tokens=tokens)

    @_flow
    async def verify_email(
        self,
        token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SignedIn:
        """Activate the account holding ``token`` and sign it in within one transaction."""
        if not token:
            raise AuthError.validation("Verification token is required")

        async with self._db.transaction() as tx:
            account = self._verification.confirm(tx, token, self._clock())
            session, tokens = self._sessions.create(tx, account, ip_address, user_agent)

        return SignedIn(account=account, session=session, tokens=tokens)

    @_flow
    async def refresh_access_token(
        self,
        account_id: str,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshResult:
        if not account_id or not refresh_token:
            raise AuthError.validation("User id and refresh token are required")

        async with self._db.transaction() as tx:
            return self._sessions.refresh(tx, account_id, refresh_token, ip_address, user_agent)

    @_flow
    async def request_password_reset(self, email: str) -> None:
        """Send a reset link when the email belongs to a resettable account.

        The outcome is indistinguishable to the caller either way.
        """
        email = normalize_email(email)
        _validate_email(email)

        issued: tuple[Account, str] | None = None
        async with self._db.transaction() as tx:
            account = tx.accounts.get_by_email(email)
            if account is not None and is_resettable(account):
                issued = self._password_reset.issue(account, self._clock())
                tx.accounts.update(issued[0])

        if issued is None:
            logger.info("password reset requested for unknown or ineligible email")
            return
        account, raw_token = issued
        logger.info("password reset requested", account_id=account.account_id)
        await self._password_reset.send(account, raw_token)

    @_flow
    async def reset_password(self, token: str, new_password: str) -> None:
        """Replace the password for ``token`` and close every session of the account."""
        if not token:
            raise AuthError.validation("Reset token is required")
        _validate_password(new_password)
        credential_hash = await self._hasher.hash(new_password)

        async with self._db.transaction() as tx:
            account = self._password_reset.consume(tx, token, credential_hash, self._clock())
            self._sessions.deactivate_all(tx, account.account_id)

    @_flow
    async def authenticate(self, access_token: str) -> tuple[Account, Session]:
        """Resolve a bearer access token to its account and live session."""
        async with self._db.transaction(write=False) as tx:
            session, claims = self._sessions.authenticate(tx, access_token)
            account = tx.accounts.get_by_id(claims.account_id)

        if account is None or account.status == AccountStatus.DELETED:
            raise AuthError.unauthorized("Invalid token")
        if account.is_blocked:
            raise AuthError.forbidden(f"Account is {account.status.value}")
        return account, session

    @_flow
    async def signout(self, account_id: str, session_id: str) -> None:
        async with self._db.transaction() as tx:
            self._sessions.deactivate(tx, session_id, account_id)

    @_flow
    async def list_sessions(self, account_id: str) -> list[Session]:
        async with self._db.transaction(write=False) as tx:
            return self._sessions.list_active(tx, account_id)

    # -- private helpers --

    async def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self._hasher.hash(_DUMMY_PASSWORD)
        return self._dummy_hash


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _validate_email(email: str) -> None:
    if not email or len(email) > EMAIL_MAX_LENGTH or not EMAIL_PATTERN.match(email):
        raise AuthError.validation("A valid email address is required")


def _validate_password(password: str) -> None:
    """Validate password: 8-72 chars, max 72 UTF-8 bytes (bcrypt limit)."""
    if len(password) < PASSWORD_MIN_LENGTH or len(password) > PASSWORD_MAX_LENGTH:
        raise AuthError.validation(
            f"Password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters",
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_LENGTH:
        raise AuthError.validation(f"Password must not exceed {PASSWORD_MAX_LENGTH} bytes when encoded")


def _clean_full_name(full_name: str | None) -> str | None:
    if full_name is None:
        return None
    full_name = full_name.strip()
    if len(full_name) > FULL_NAME_MAX_LENGTH:
        raise AuthError.validation(f"Full name must not exceed {FULL_NAME_MAX_LENGTH} characters")
    return full_name or None


def _truncate_name(name: str | None) -> str | None:
    """Provider-supplied names are trusted but clipped to the column limit."""
    if not name:
        return None
    return name.strip()[:FULL_NAME_MAX_LENGTH] or None
