"""Verification of third-party identity assertions (Google ID tokens)."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import anyio
import jwt
import structlog
from anyio import to_thread

from identity.auth.errors import AuthError
from identity.auth.models import ExternalIdentity

logger = structlog.get_logger()

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
DEFAULT_VERIFY_TIMEOUT_SECONDS = 5.0
INVALID_GOOGLE_TOKEN_MESSAGE = "Invalid Google authentication token"


@runtime_checkable
class ExternalIdentityVerifier(Protocol):
    """Validate an identity assertion and return the claims it carries."""

    async def verify(self, id_token: str) -> ExternalIdentity: ...


class GoogleIdentityVerifier:
    """Verify Google ID tokens against Google's published signing keys.

    The JWKS document is fetched and cached by ``jwt.PyJWKClient``. The fetch
    is blocking, so it runs off the event loop and is bounded by ``timeout``.
    """

    def __init__(
        self,
        client_id: str | None,
        *,
        timeout_seconds: float = DEFAULT_VERIFY_TIMEOUT_SECONDS,
        jwks_client: jwt.PyJWKClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._timeout = timeout_seconds
        self._jwks_client = jwks_client or jwt.PyJWKClient(GOOGLE_CERTS_URL, timeout=int(timeout_seconds) or 1)

    async def verify(self, id_token: str) -> ExternalIdentity:
        if not self._client_id:
            logger.error("google sign-in attempted without a configured client id")
            raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)
        if not id_token:
            raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)

        try:
            with anyio.fail_after(self._timeout):
                signing_key = await to_thread.run_sync(
                    lambda: self._jwks_client.get_signing_key_from_jwt(id_token),
                    abandon_on_cancel=True,
                )
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._client_id,
                options={"require": ["exp", "iat", "iss", "aud", "sub"], "verify_iss": False},
            )
        except TimeoutError as exc:
            logger.warning("google key fetch timed out")
            raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE) from exc
        except jwt.PyJWTError as exc:
            logger.warning("invalid google id token", reason=type(exc).__name__)
            raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE) from exc

        return _identity_from_claims(claims)


def _identity_from_claims(claims: dict) -> ExternalIdentity:
    """Apply the issuer and email checks PyJWT cannot express on its own.

    Google uses two spellings of its issuer, and only a verified email may
    be trusted to identify an account.
    """
    if claims.get("iss") not in GOOGLE_ISSUERS:
        logger.warning("google id token has unexpected issuer", issuer=claims.get("iss"))
        raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)

    email = claims.get("email")
    if not isinstance(email, str) or not email.strip():
        logger.warning("google id token has no email")
        raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)
    if claims.get("email_verified") not in (True, "true"):
        logger.warning("google account email is not verified")
        raise AuthError.unauthorized(INVALID_GOOGLE_TOKEN_MESSAGE)

    return ExternalIdentity(
        email=email,
        subject=str(claims["sub"]),
        name=claims.get("name"),
        picture=claims.get("picture"),
    )
