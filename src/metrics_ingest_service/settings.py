"""Application settings."""
from __future__ import annotations

import socket
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


def find_service_yaml(start_path: Path | None = None) -> Path | None:
    """Find service.yaml by searching up from start_path (cwd by default)."""
    current = Path(start_path or Path.cwd()).resolve()
    # Search up to 5 levels
    for _ in range(5):
        yaml_path = current / "service.yaml"
        if yaml_path.exists():
            return yaml_path
        parent = current.parent
        if parent == current:  # Reached root
            break
        current = parent
    return None


class Settings(BaseSettings):
    """Core configuration for the Metrics Ingest Service."""

    model_config = SettingsConfigDict(env_file=(".env", "env.example"), env_file_encoding="utf-8")

    env: Literal["development", "staging", "production"] = "development"
    app_name: str = "metrics-ingest-service"
    host: str = "0.0.0.0"
    port: int = 3040

    elasticsearch_url: str = "http://localhost:9400"
    elasticsearch_timeout_s: float = Field(default=30.0, gt=0.0)

    # Base of the links returned to agents, e.g. http://mf.example.org:3040/v1
    public_base_url: str | None = None

    # Mapping types are gone from Elasticsearch, the sub-type travels as a document field.
    # A metric field of the same name is replaced by the sub-type (logged as a warning).
    sub_type_field: str = "experiment_id"

    provision_on_bulk: bool = False
    partition_single_flight: bool = True
    bulk_max_samples: int = Field(default=10_000, ge=1)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Use a string field to avoid JSON parsing by pydantic-settings
    cors_allowed_origins_str: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        alias="CORS_ALLOWED_ORIGINS",
    )

    # This field is populated by the validator, not from env vars
    cors_allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        validation_alias="__cors_allowed_origins_internal__",
    )

    @model_validator(mode="after")
    def parse_cors_origins(self) -> "Settings":
        """Parse CORS origins from comma-separated string after model initialization."""
        value = self.cors_allowed_origins_str
        if value:
            self.cors_allowed_origins = [
                origin.strip() for origin in value.split(",") if origin.strip()
            ]
        return self

    @model_validator(mode="after")
    def default_public_base_url(self) -> "Settings":
        if not self.public_base_url:
            self.public_base_url = f"http://{socket.gethostname()}:{self.port}/v1"
        self.public_base_url = self.public_base_url.rstrip("/")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings, dotenv_settings]
        yaml_path = find_service_yaml()
        if yaml_path is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_path))
        sources.append(file_secret_settings)
        return tuple(sources)


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
