"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///reelpipe.db"


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class PipelineConfig(BaseModel):
    """Pipeline execution parameters.

    Timeouts bound a single unit of work on the queue. A run_pipeline unit
    drives every remaining step, so it gets the longer budget.
    """

    step_timeout_seconds: float = 300
    pipeline_timeout_seconds: float = 900
    finalize_timeout_seconds: float = 60
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = 2
    worker_concurrency: int = Field(default=4, ge=1)
    lease_margin_seconds: float = 60
    stale_minutes: float = Field(default=30, gt=0)
    async_wait_mode: Literal["poll", "submit"] = "poll"


class OpenRouterConfig(BaseModel):
    """Text generation provider (OpenAI-compatible chat completions)."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key: Optional[str] = None
    model: str = "anthropic/claude-3.5-sonnet"
    temperature: float = 0.7
    timeout_seconds: float = 120

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class KieConfig(BaseModel):
    """Task provider for music, image and video generation."""

    base_url: str = "https://api.kie.ai"
    api_key: Optional[str] = None
    callback_url: Optional[str] = None
    music_model: str = "V5"
    image_model: str = "google/nano-banana"
    poll_interval_seconds: float = 5
    poll_max_attempts: int = 60
    timeout_seconds: float = 60

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ProvidersConfig(BaseModel):
    """External generation services."""

    openrouter: OpenRouterConfig = Field(default_factory=OpenRouterConfig)
    kie: KieConfig = Field(default_factory=KieConfig)


class WebhookConfig(BaseModel):
    """Inbound completion signal verification.

    When secret is unset, signatures are not checked.
    """

    secret: Optional[str] = None
    signature_header: str = "X-Kie-Signature"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: REELPIPE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="REELPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Init settings come first so tests can build an explicit Settings
        object without the environment leaking in.
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
