from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stationthis.constants import DB_SCHEMA

# Load .env once at module import; all BaseSettings subclasses will see the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "stationthis"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')."
            raise ValueError(msg)
        return v


class GatewaySettings(BaseSettings):
    """HTTP API and invocation settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "0.0.0.0"
    port: int = 4000
    # Externally reachable base URL; the engine posts completions to
    # {public_base_url}/webhooks/comfydeploy
    public_base_url: str = "http://localhost:4000"
    invoke_max_attempts: int = Field(3, ge=1, le=10)
    invoke_base_delay_s: float = Field(1.0, ge=0.0)
    aggregation_max_attempts: int = Field(5, ge=1, le=20)

    @property
    def webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhooks/comfydeploy"


class ComfyDeploySettings(BaseSettings):
    """ComfyUI Deploy execution engine. Env vars prefixed with COMFYDEPLOY_."""

    model_config = SettingsConfigDict(env_prefix="COMFYDEPLOY_")

    api_key: str = ""  # empty = webhook-backed tools disabled
    base_url: str = "https://api.comfydeploy.com/api"
    timeout_s: float = 30.0


class OpenAISettings(BaseSettings):
    """OpenAI-compatible endpoint for immediate text tools. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""  # empty = immediate chat tools disabled
    model: str = "gpt-4o-mini"
    base_url: str | None = None


class ToolCatalogSettings(BaseSettings):
    """Tool catalog location. Env vars prefixed with TOOLS_."""

    model_config = SettingsConfigDict(env_prefix="TOOLS_")

    catalog_path: Path = Path("tools.json")


class NotificationSettings(BaseSettings):
    """Terminal event delivery settings. Env vars prefixed with NOTIFY_."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    max_delivery_attempts: int = 3
    webhook_timeout_s: float = 10.0
    base_delay_s: float = 0.5
    webhook_secret: str = ""  # fallback when run metadata carries none; empty = unsigned

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.max_delivery_attempts < 1:
            raise ValueError(
                f"max_delivery_attempts must be >= 1, got {self.max_delivery_attempts}"
            )
        if self.webhook_timeout_s <= 0:
            raise ValueError(
                f"webhook_timeout_s must be > 0, got {self.webhook_timeout_s}"
            )
        return self


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    comfydeploy: ComfyDeploySettings = Field(default_factory=ComfyDeploySettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    tools: ToolCatalogSettings = Field(default_factory=ToolCatalogSettings)
    notify: NotificationSettings = Field(default_factory=NotificationSettings)
    log_json: bool = True
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
