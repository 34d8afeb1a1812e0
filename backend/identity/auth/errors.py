"""Tagged error type for every failure surfaced by the auth flows."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

GENERIC_INTERNAL_MESSAGE = "An unexpected error occurred"


class ErrorKind(StrEnum):
    VALIDATION = "validation_failure"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden_action"
    NOT_FOUND = "not_found"
    INTERNAL = "internal_error"


class AuthError(Exception):
    """Authentication or account-lifecycle failure, classified by kind.

    The message is safe to show to clients. ``detail`` carries optional
    structured context for logs and is never rendered for INTERNAL errors.
    """

    def __init__(self, kind: ErrorKind, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, message={self.message!r})"

    @classmethod
    def validation(cls, message: str) -> AuthError:
        return cls(ErrorKind.VALIDATION, message)

    @classmethod
    def conflict(cls, message: str) -> AuthError:
        return cls(ErrorKind.CONFLICT, message)

    @classmethod
    def unauthorized(cls, message: str) -> AuthError:
        return cls(ErrorKind.UNAUTHORIZED, message)

    @classmethod
    def forbidden(cls, message: str) -> AuthError:
        return cls(ErrorKind.FORBIDDEN, message)

    @classmethod
    def not_found(cls, message: str) -> AuthError:
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def internal(cls, detail: dict[str, Any] | None = None) -> AuthError:
        return cls(ErrorKind.INTERNAL, GENERIC_INTERNAL_MESSAGE, detail)
