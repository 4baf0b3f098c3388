"""
Configuration management for the Rune library core.
"""

from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TAGGING_PROMPT = (
    "Describe this image in 5-10 keyword tags, comma separated. "
    "Only output the tags, nothing else. Be concise and specific."
)


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_prefix="RUNE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Library Configuration
    library_path: str = Field(default="~/Documents/rune")
    max_page_size: int = Field(default=500, gt=0)
    max_query_length: int = Field(default=256, gt=0)
    min_sqlite_version: str = Field(default="3.31.0")

    # Runtime Configuration
    runtime_dir: str = Field(default="~/.rune/runtime")
    models_dir: Optional[str] = Field(default=None)
    ollama_version: str = Field(default="v0.15.4")
    binary_download_url: Optional[str] = Field(default=None)
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=11434, gt=0, lt=65536)
    default_model: str = Field(default="qwen2.5vl:3b")
    tagging_prompt: str = Field(default=DEFAULT_TAGGING_PROMPT)

    # Timeouts (seconds)
    health_timeout: float = Field(default=2.0, gt=0.0)
    request_timeout: float = Field(default=5.0, gt=0.0)
    generation_timeout: float = Field(default=60.0, gt=0.0)
    delete_timeout: float = Field(default=30.0, gt=0.0)
    pull_read_timeout: float = Field(default=300.0, gt=0.0)
    download_timeout: float = Field(default=30.0, gt=0.0)

    # Server supervision
    server_start_attempts: int = Field(default=30, gt=0)
    server_start_interval: float = Field(default=1.0, gt=0.0)
    server_stop_timeout: float = Field(default=5.0, gt=0.0)
    server_log_lines: int = Field(default=200, gt=0)

    # Tagging queue
    batch_size: int = Field(default=5, gt=0)
    process_interval: float = Field(default=1.0, ge=0.0)

    # Logging Configuration
    log_level: str = Field(default="INFO")

    @field_validator("library_path", "runtime_dir")
    @classmethod
    def expand_directory(cls, v):
        """Expand ~ and make directories absolute."""
        if not v or not v.strip():
            raise ValueError("directory setting must not be empty")
        return str(Path(v.strip()).expanduser().resolve())

    @field_validator("models_dir")
    @classmethod
    def expand_models_dir(cls, v):
        if v is None or not v.strip():
            return None
        return str(Path(v.strip()).expanduser().resolve())

    @field_validator("server_host")
    @classmethod
    def validate_server_host(cls, v):
        """The host is a bare hostname or address, never a URL."""
        if "://" in v:
            raise ValueError("RUNE_SERVER_HOST must not include a scheme")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {valid_levels}")
        return v.upper()

    @property
    def server_url(self) -> str:
        """Base URL of the local inference server."""
        return f"http://{self.server_host}:{self.server_port}"


# Global settings instance
settings = Settings()
