"""
Reception Configuration Module
==============================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    SOURCE_BASE_URL: Review source API root (default: https://api.jikan.moe/v4)
    SOURCE_SUBJECT_PATH: Path segment for subjects (default: anime)
    SOURCE_MAX_PER_SECOND: Outbound requests per second (default: 3)
    SOURCE_MAX_PER_MINUTE: Outbound requests per minute (default: 60)
    SOURCE_MAX_RETRIES: Retry attempts for 429 / network errors (default: 3)
    SOURCE_RATE_LIMIT_BACKOFF: Base backoff after a 429, seconds (default: 5.0)
    SOURCE_NETWORK_BACKOFF: Base backoff after a network error, seconds (default: 2.0)

    DATABASE_HOST: PostgreSQL host (default: localhost)
    DATABASE_PORT: PostgreSQL port (default: 5432)
    DATABASE_NAME: Database name (default: reception)
    DATABASE_USER: Database user (default: reception_app)
    DATABASE_PASSWORD: Database password (required)

    CHECKPOINT_DIR: Directory for crawl checkpoints (default: ./crawler-data)
    CHECKPOINT_SAVE_INTERVAL: Items between throttled saves (default: 10)

    LOG_LEVEL: Root log level (default: INFO)
    LOG_FILE: Optional rotating log file
    LOG_JSON: Emit JSON lines instead of text (default: false)
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        Environment variable value or default

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class SourceConfig:
    """Review source (Jikan-compatible API) configuration."""

    base_url: str = field(default_factory=lambda: get_env("SOURCE_BASE_URL", "https://api.jikan.moe/v4"))
    subject_path: str = field(default_factory=lambda: get_env("SOURCE_SUBJECT_PATH", "anime"))
    user_agent: str = field(default_factory=lambda: get_env("SOURCE_USER_AGENT", "Reception-ReviewCrawler/1.0"))

    # Hard ceilings shared by every request in the process (Jikan: 3/s, 60/min)
    max_per_second: int = field(default_factory=lambda: get_env_int("SOURCE_MAX_PER_SECOND", 3))
    max_per_minute: int = field(default_factory=lambda: get_env_int("SOURCE_MAX_PER_MINUTE", 60))

    # Retry configuration
    max_retries: int = field(default_factory=lambda: get_env_int("SOURCE_MAX_RETRIES", 3))
    rate_limit_backoff: float = field(default_factory=lambda: get_env_float("SOURCE_RATE_LIMIT_BACKOFF", 5.0))
    network_backoff: float = field(default_factory=lambda: get_env_float("SOURCE_NETWORK_BACKOFF", 2.0))

    # Request timeout in seconds
    request_timeout: int = field(default_factory=lambda: get_env_int("SOURCE_REQUEST_TIMEOUT", 30))

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.max_per_second <= 0 or self.max_per_minute <= 0:
            raise ValueError("rate limits must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "reception"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "reception_app"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", required=True))

    # Connection pool settings
    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 1))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 4))

    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    # SSL mode: disable, allow, prefer, require, verify-ca, verify-full
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    def __post_init__(self):
        """Validate configuration."""
        if not self.password:
            raise ValueError("DATABASE_PASSWORD is required")
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size cannot exceed pool_max_size")


@dataclass
class CheckpointConfig:
    """Crawl checkpoint storage configuration."""

    directory: str = field(default_factory=lambda: get_env("CHECKPOINT_DIR", "./crawler-data"))
    save_interval: int = field(default_factory=lambda: get_env_int("CHECKPOINT_SAVE_INTERVAL", 10))

    def __post_init__(self):
        if self.save_interval <= 0:
            raise ValueError("save_interval must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    source: SourceConfig = field(default_factory=SourceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    app_name: str = "reception"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
