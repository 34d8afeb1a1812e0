"""User model for Starlette AuthenticationMiddleware integration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.authentication import BaseUser

if TYPE_CHECKING:
    from identity.auth.models import Role


class AuthenticatedAccount(BaseUser):
    """Bearer-authenticated caller exposed as ``request.user``.

    Carries the session id so session-scoped endpoints (sign-out, session
    listing) know which login the request belongs to.
    """

    def __init__(self, account_id: str, email: str, role: Role, session_id: str) -> None:
        self._account_id = account_id
        self._email = email
        self._role = role
        self._session_id = session_id

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return self._email

    @property
    def identity(self) -> str:
        return self._account_id

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def email(self) -> str:
        return self._email

    @property
    def role(self) -> Role:
        return self._role

    @property
    def session_id(self) -> str:
        return self._session_id
