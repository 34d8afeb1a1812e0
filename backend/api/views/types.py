"""Request bodies accepted by the /auth endpoints (camelCase on the wire)."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _RequestBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class SignupRequest(_RequestBody):
    email: str
    password: str
    full_name: str | None = None


class SigninRequest(_RequestBody):
    email: str
    password: str


class GoogleSigninRequest(_RequestBody):
    id_token: str


class RefreshTokenRequest(_RequestBody):
    user_id: str
    refresh_token: str


class PasswordResetRequest(_RequestBody):
    email: str


class ResetPasswordRequest(_RequestBody):
    token: str
    new_password: str
