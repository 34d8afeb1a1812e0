"""Token material: signed access tokens, opaque refresh tokens, and one-time tokens.

Access tokens are HS256 JWTs carrying the account id, session id, role, and
email, so a request can be correlated with its session without decoding
anything server-side beyond the signature. Refresh tokens are opaque random
strings that only the session store can validate. Verification and reset
tokens are 256-bit random values; only their unsalted SHA-256 digest is
persisted, which is enough because the raw value is already high-entropy and
it keeps lookups deterministic.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

import jwt
import structlog

from identity.auth.errors import AuthError
from identity.auth.models import Role

if TYPE_CHECKING:
    from datetime import datetime

    from identity.auth.models import Account

logger = structlog.get_logger()

ACCESS_TOKEN_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_BYTES = 48
ONE_TIME_TOKEN_BYTES = 32  # 256 bits
_REQUIRED_CLAIMS = ("account_id", "session_id", "role", "email", "exp", "iat")


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token."""

    account_id: str
    session_id: str
    role: Role
    email: str


def digest(raw: str) -> str:
    """Deterministic SHA-256 hex digest used to store and look up token values."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def matches(raw: str, stored_digest: str) -> bool:
    """Constant-time comparison of a presented raw token against a stored digest."""
    return hmac.compare_digest(digest(raw), stored_digest)


class TokenIssuer:
    """Mint and verify token material. Holds no per-request state."""

    def __init__(self, secret: str, access_token_ttl: timedelta = ACCESS_TOKEN_TTL) -> None:
        if not secret:
            raise ValueError("Access token signing secret must not be empty")
        self._secret = secret
        self._access_ttl = access_token_ttl

    def issue_access_token(self, account: Account, session_id: str, now: datetime) -> tuple[str, datetime]:
        """Return a signed access token and its expiry (``now`` + access TTL, whole seconds).

        The JWT ``exp`` claim has one-second resolution, so the returned expiry is
        truncated to match it exactly.
        """
        expires_at = (now + self._access_ttl).replace(microsecond=0)
        payload = {
            "account_id": account.account_id,
            "session_id": session_id,
            "role": account.role.value,
            "email": account.email,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret, algorithm=ACCESS_TOKEN_ALGORITHM), expires_at

    def verify_access_token(self, token: str, now: datetime) -> AccessClaims:
        """Verify signature and expiry. Raises UNAUTHORIZED on any failure.

        Expiry is checked against ``now`` rather than the wall clock so the
        injected clock stays authoritative.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ACCESS_TOKEN_ALGORITHM],
                options={"require": list(_REQUIRED_CLAIMS), "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            logger.debug("access token rejected", reason=type(exc).__name__)
            raise AuthError.unauthorized("Invalid token") from exc

        exp = payload["exp"]
        if isinstance(exp, bool) or not isinstance(exp, int) or now.timestamp() >= exp:
            raise AuthError.unauthorized("Token expired")

        try:
            role = Role(payload["role"])
        except ValueError as exc:
            raise AuthError.unauthorized("Invalid token") from exc

        return AccessClaims(
            account_id=str(payload["account_id"]),
            session_id=str(payload["session_id"]),
            role=role,
            email=str(payload["email"]),
        )

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    @staticmethod
    def issue_one_time_token() -> tuple[str, str]:
        """Return ``(raw, digest)`` for an email verification or password reset token."""
        raw = secrets.token_hex(ONE_TIME_TOKEN_BYTES)
        return raw, digest(raw)
