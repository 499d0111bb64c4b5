"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

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

    database_url: str = "sqlite+aiosqlite:///pubpipe.db"
    work_dir: Path = Path("work")
    object_store_dir: Path = Path("work/objects")

    @field_validator("work_dir", "object_store_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class IngestionConfig(BaseModel):
    """Ingestion scheduler cadence."""

    tick_seconds: float = Field(default=5.0, gt=0)


class PublicationConfig(BaseModel):
    """Publication scheduler cadence, cooldowns and the secondary-phase delay."""

    tick_seconds: float = Field(default=300.0, gt=0)
    primary_cooldown_seconds: int = Field(default=3600, ge=0)
    secondary_cooldown_seconds: int = Field(default=3600, ge=0)
    secondary_delay_seconds: int = Field(default=3600, ge=0)


class TranslationConfig(BaseModel):
    """Batch translation and repair parameters."""

    group_size: int = Field(default=25, ge=1)
    max_workers: int = Field(default=3, ge=1)
    source_language: str = "en"
    target_language: str = "zh"
    caption_language: str = "zh-Hans"
    missing_placeholder: str = "[translation missing]"
    repair_batch_size: int = Field(default=10, ge=1)
    repair_interval_seconds: float = Field(default=2.0, ge=0)


class LLMConfig(BaseModel):
    """Translation/metadata LLM provider.

    Model ids prefixed with "ollama/" are routed to an Ollama server at
    base_url; anything else is sent to an OpenAI-compatible
    /chat/completions endpoint (DeepSeek by default).
    """

    enabled: bool = True
    model: str = "deepseek-chat"
    base_url: str = "https://api.deepseek.com/v1"
    api_key: Optional[str] = None
    timeout_seconds: float = 60.0
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    temperature: float = 0.3
    max_tokens: int = 4000


class DestinationConfig(BaseModel):
    """Destination platform publish client."""

    base_url: str = "http://localhost:8081"
    api_token: Optional[str] = None
    timeout_seconds: float = 300.0
    max_retries: int = Field(default=3, ge=0)


class ToolsConfig(BaseModel):
    """External command-line tooling."""

    ytdlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"
    proxy: Optional[str] = None
    cookies_from_browser: Optional[str] = None


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class LoggingConfig(BaseModel):
    level: str = "INFO"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: PUBPIPE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="PUBPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    publication: PublicationConfig = Field(default_factory=PublicationConfig)
    translation: TranslationConfig = Field(default_factory=TranslationConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    destination: DestinationConfig = Field(default_factory=DestinationConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

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

        Priority order (highest to lowest):
        1. Environment variables
        2. .env file
        3. YAML file
        4. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
