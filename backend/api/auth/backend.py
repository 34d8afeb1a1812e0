"""Starlette AuthenticationBackend that validates bearer access tokens."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from starlette.authentication import AuthCredentials, AuthenticationBackend

from api.auth.models import AuthenticatedAccount
from identity.auth.errors import AuthError

if TYPE_CHECKING:
    from starlette.requests import HTTPConnection

    from identity.auth.service import AuthService

logger = structlog.get_logger()

_BEARER_SCHEME = "bearer"


class BearerTokenBackend(AuthenticationBackend):
    """Authenticate requests via ``Authorization: Bearer <access token>``.

    An absent, malformed, expired, or revoked token leaves the request
    anonymous instead of failing it, so public endpoints such as
    ``/auth/refresh-token`` still work when a client sends a stale token.
    Protected endpoints turn the anonymous request into a 401.
    """

    def __init__(self, auth_service: AuthService) -> None:
        self._auth_service = auth_service

    async def authenticate(
        self,
        conn: HTTPConnection,
    ) -> tuple[AuthCredentials, AuthenticatedAccount] | None:
        header = conn.headers.get("authorization")
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != _BEARER_SCHEME or not token:
            return None

        try:
            account, session = await self._auth_service.authenticate(token)
        except AuthError as exc:
            logger.debug("bearer token rejected", kind=exc.kind, reason=exc.message)
            return None

        return AuthCredentials(["authenticated"]), AuthenticatedAccount(
            account_id=account.account_id,
            email=account.email,
            role=account.role,
            session_id=session.session_id,
        )
