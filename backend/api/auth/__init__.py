"""API authentication: bearer backend, user model, and route policy."""

from api.auth.backend import BearerTokenBackend
from api.auth.models import AuthenticatedAccount
from api.auth.policy import protected_api, public_route, validate_route_auth_policy

__all__ = [
    "AuthenticatedAccount",
    "BearerTokenBackend",
    "protected_api",
    "public_route",
    "validate_route_auth_policy",
]
