"""HTTP server configuration via environment variables."""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources.base import PydanticBaseSettingsSource

from identity.validators import StringListEnvSettingsSource, parse_string_list


class ApiServerSettings(BaseSettings):
    model_config = {"env_prefix": "API_"}

    log_dir: str = "backend/logs/identity"
    cors_origins: list[str] = []
    # Honor the first X-Forwarded-For hop as the client address (only behind a trusted proxy)
    trust_proxy: bool = False

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings)
