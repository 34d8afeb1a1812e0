"""Auth and mail settings read from the environment."""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class AuthSettings(BaseSettings):
    model_config = {"env_prefix": "AUTH_"}

    # HS256 secret for access tokens -- required, no default.
    # The application fails to start if AUTH_JWT_SECRET is not set.
    jwt_secret: str = Field(min_length=32)

    # OAuth client id that Google ID tokens must be issued for.
    # Google sign-in is rejected while unset.
    google_client_id: str | None = None

    # SQLite database file path
    database_path: str = "backend/storage.db"

    password_hasher: Literal["bcrypt", "simple"] = "bcrypt"
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    access_token_ttl_minutes: int = Field(default=15, gt=0)
    refresh_token_ttl_days: int = Field(default=7, gt=0)
    # Refresh tokens are rotated when less than this much lifetime remains.
    refresh_rotation_threshold_hours: int = Field(default=24, gt=0)
    verification_token_ttl_hours: int = Field(default=24, gt=0)
    reset_token_ttl_minutes: int = Field(default=15, gt=0)

    hash_timeout_seconds: float = Field(default=5.0, gt=0)
    identity_timeout_seconds: float = Field(default=5.0, gt=0)


class MailSettings(BaseSettings):
    model_config = {"env_prefix": "MAIL_"}

    backend: Literal["console", "smtp"] = "console"
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: SecretStr | None = None
    from_address: str | None = None
    use_tls: bool = True
    # Base of the links embedded in emails (deep link scheme for the mobile app)
    app_url: str = "reelio://"
    timeout_seconds: float = Field(default=10.0, gt=0)
