"""Account and session entities plus the client-facing projections built from them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime  # noqa: TC003 - pydantic needs the runtime type
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


class IdentityProvider(StrEnum):
    PASSWORD = "password"
    GOOGLE = "google"
    APPLE = "apple"


class AccountStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"
    DISABLED = "disabled"


class Role(StrEnum):
    VIEWER = "viewer"
    CREATOR = "creator"
    ADMIN = "admin"


# Statuses that refuse self-service sign-in and refresh. DELETED accounts never
# reach these checks because email lookups skip them.
BLOCKED_STATUSES = frozenset({AccountStatus.SUSPENDED, AccountStatus.DISABLED})


class Account(BaseModel, frozen=True):
    """Account row owned by the credential store."""

    account_id: str
    email: str  # normalized: trimmed + lowercased
    full_name: str | None = None
    avatar_url: str | None = None
    credential_hash: str | None = None  # bcrypt hash, password accounts only
    identity_provider: IdentityProvider = IdentityProvider.PASSWORD
    provider_subject: str | None = None  # Google "sub" claim
    status: AccountStatus = AccountStatus.PENDING
    role: Role = Role.VIEWER
    email_verified: bool = False
    email_verified_at: datetime | None = None
    verification_token_hash: str | None = None
    verification_token_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_token_expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _validate_account_fields(self) -> Self:
        if self.identity_provider == IdentityProvider.PASSWORD and not self.credential_hash:
            raise ValueError("Password accounts must have a credential hash")
        if (self.verification_token_hash is None) != (self.verification_token_expires_at is None):
            raise ValueError("Verification token hash and expiry must be set together")
        if (self.reset_token_hash is None) != (self.reset_token_expires_at is None):
            raise ValueError("Reset token hash and expiry must be set together")
        if self.email_verified and self.email_verified_at is None:
            raise ValueError("Verified accounts must record when verification happened")
        return self

    @property
    def is_blocked(self) -> bool:
        return self.status in BLOCKED_STATUSES

    def touch(self, now: datetime, **changes: object) -> Account:
        """Return a copy with ``changes`` applied and ``updated_at`` bumped."""
        return self.model_copy(update={**changes, "updated_at": now})


class Session(BaseModel, frozen=True):
    """Server-side record backing one logical login.

    Only SHA-256 digests of the access and refresh tokens are stored; the raw
    values exist solely in the response that issued them.
    """

    session_id: str
    account_id: str
    access_token_hash: str
    access_token_expires_at: datetime
    refresh_token_hash: str
    refresh_token_expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class IssuedTokens:
    """Raw token material handed to the client exactly once."""

    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str | None = None  # only set when the refresh token was rotated
    refresh_token_expires_at: datetime | None = None

    @property
    def rotated(self) -> bool:
        return self.refresh_token is not None


@dataclass(frozen=True)
class ExternalIdentity:
    """Identity claims extracted from a verified third-party assertion."""

    email: str
    subject: str
    name: str | None = None
    picture: str | None = None


# -- client-facing projections --


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class AccountView(_CamelModel):
    id: str
    email: str
    full_name: str | None = None
    role: Role
    avatar_url: str | None = None
    email_verified: bool

    @classmethod
    def from_account(cls, account: Account) -> AccountView:
        return cls(
            id=account.account_id,
            email=account.email,
            full_name=account.full_name,
            role=account.role,
            avatar_url=account.avatar_url,
            email_verified=account.email_verified,
        )


class SessionView(_CamelModel):
    id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    created_at: datetime

    @classmethod
    def from_session(cls, session: Session, tokens: IssuedTokens) -> SessionView:
        return cls(
            id=session.session_id,
            access_token=tokens.access_token,
            access_token_expires_at=tokens.access_token_expires_at,
            refresh_token=tokens.refresh_token,
            refresh_token_expires_at=tokens.refresh_token_expires_at,
            created_at=session.created_at,
        )


class RefreshView(_CamelModel):
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str | None = None
    refresh_token_expires_at: datetime | None = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_result(cls, result: RefreshResult) -> RefreshView:
        return cls(
            access_token=result.access_token,
            access_token_expires_at=result.access_token_expires_at,
            refresh_token=result.refresh_token,
            refresh_token_expires_at=result.refresh_token_expires_at,
        )


class ActiveSessionView(_CamelModel):
    id: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    updated_at: datetime
    refresh_token_expires_at: datetime
    current: bool

    @classmethod
    def from_session(cls, session: Session, *, current_session_id: str | None) -> ActiveSessionView:
        return cls(
            id=session.session_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            updated_at=session.updated_at,
            refresh_token_expires_at=session.refresh_token_expires_at,
            current=session.session_id == current_session_id,
        )


@dataclass(frozen=True)
class SignedIn:
    """Outcome of every flow that ends with a fresh session."""

    account: Account
    session: Session
    tokens: IssuedTokens

    def to_json(self) -> dict:
        return {
            "user": AccountView.from_account(self.account).to_json(),
            "session": SessionView.from_session(self.session, self.tokens).to_json(),
        }
