"""Account and session lifecycle: signup, sign-in, verification, refresh, and password reset."""

from identity.auth.errors import AuthError, ErrorKind
from identity.auth.models import (
    Account,
    AccountStatus,
    AccountView,
    IdentityProvider,
    Role,
    Session,
    SignedIn,
)
from identity.auth.service import AuthService
from identity.auth.settings import AuthSettings, MailSettings

__all__ = [
    "Account",
    "AccountStatus",
    "AccountView",
    "AuthError",
    "AuthService",
    "AuthSettings",
    "ErrorKind",
    "IdentityProvider",
    "MailSettings",
    "Role",
    "Session",
    "SignedIn",
]
