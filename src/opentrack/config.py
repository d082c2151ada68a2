"""Configuration management for opentrack."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class DatabaseConfig(BaseModel):
    """Event log storage configuration."""

    path: str = Field("tracking.db", description="Path to the SQLite event log")
    timeout: float = Field(30.0, description="Seconds to wait on a locked database")


class GeoConfig(BaseModel):
    """IP geolocation configuration."""

    enabled: bool = Field(True, description="Resolve client IPs to a location")
    database_path: str = Field(
        "GeoLite2-City.mmdb",
        description="Path to a MaxMind GeoLite2/GeoIP2 City database"
    )


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field("0.0.0.0", description="Interface to bind")
    port: int = Field(3000, description="Port to listen on")
    debug: bool = Field(False, description="Enable Flask debug mode")
    base_url: Optional[str] = Field(None, description="Public base URL used in tracking links")


class RecordingConfig(BaseModel):
    """Background recording configuration."""

    enabled: bool = Field(True, description="Record pixel and click events")
    queue_size: int = Field(10000, description="Maximum pending capture jobs")
    synchronous: bool = Field(False, description="Record inline instead of on the worker thread")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Logging level")
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    file_path: Optional[str] = Field(None, description="Path to log file")
    max_file_size: int = Field(10 * 1024 * 1024, description="Maximum log file size in bytes")
    backup_count: int = Field(5, description="Number of backup log files to keep")
    console_output: bool = Field(True, description="Enable console logging")


class Settings(BaseSettings):
    """Main application settings."""

    app_name: str = Field("opentrack", description="Application name")
    debug: bool = Field(False, description="Enable debug mode")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    geo: GeoConfig = Field(default_factory=GeoConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="OPENTRACK_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values read from config files.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def _load_config_file(config_file: Path) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file."""
    if not config_file.exists():
        return {}

    with open(config_file, 'r') as f:
        if config_file.suffix.lower() in ['.yaml', '.yml']:
            return yaml.safe_load(f) or {}
        elif config_file.suffix.lower() == '.json':
            return json.load(f)
        else:
            raise ConfigurationError(f"Unsupported config file format: {config_file.suffix}")


@lru_cache()
def load_settings(
    config_dir: Optional[Path] = None,
    env_file: Optional[str] = None,
    config_file: Optional[str] = None
) -> Settings:
    """
    Load application settings from multiple sources.

    Sources are loaded in order of precedence (later sources override earlier):
    1. Default values
    2. Configuration file (YAML/JSON)
    3. Environment file (.env)
    4. Environment variables

    Args:
        config_dir: Directory containing config files (default: current directory)
        env_file: Path to environment file (default: .env in config_dir)
        config_file: Path to configuration file (default: config.yaml in config_dir)

    Returns:
        Loaded settings instance
    """
    if config_dir is None:
        config_dir = Path.cwd()
    config_dir = Path(config_dir)

    env_path = Path(env_file) if env_file else config_dir / ".env"
    config_path = Path(config_file) if config_file else config_dir / "config.yaml"

    # load_dotenv never overrides variables already present in the environment
    if env_path.exists():
        load_dotenv(env_path)

    file_config = _load_config_file(config_path)

    try:
        return Settings(**file_config)
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}", cause=e)
