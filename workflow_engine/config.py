"""Configuration management for the workflow execution engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ValidationError, field_validator
from enum import Enum

from dotenv import load_dotenv

from .core.exceptions import ConfigurationError


ENV_PREFIX = "WORKFLOW_ENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Workflow Execution Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./workflow_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_runs: int = Field(
        default=10,
        description="Maximum number of runs executing in the background at once"
    )
    abort_on_expression_error: bool = Field(
        default=False,
        description="Abort the run when an if-condition or query variable fails to resolve "
                    "instead of recording the failure on the node"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(
        default=None,
        description="Log message format; may use %(run_id)s, %(node_id)s and %(node_type)s"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log records")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_runs')
    @classmethod
    def validate_max_concurrent_runs(cls, v):
        """Validate maximum concurrent runs."""
        if v < 1:
            raise ValueError("Maximum concurrent runs must be at least 1")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            return type_func(value)

        try:
            return cls(
                app_name=get_env("APP_NAME", "Workflow Execution Engine"),
                app_version=get_env("APP_VERSION", "1.0.0"),
                debug=get_env("DEBUG", False, bool),
                host=get_env("HOST", "0.0.0.0"),
                port=get_env("PORT", 8000, int),
                database_url=get_env("DATABASE_URL", "sqlite:///./workflow_engine.db"),
                database_echo=get_env("DATABASE_ECHO", False, bool),
                max_concurrent_runs=get_env("MAX_CONCURRENT_RUNS", 10, int),
                abort_on_expression_error=get_env("ABORT_ON_EXPRESSION_ERROR", False, bool),
                log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
                log_format=get_env("LOG_FORMAT", None),
                log_file=get_env("LOG_FILE", None),
                log_structured=get_env("LOG_STRUCTURED", False, bool),
                log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
                log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            )
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration in environment: {e}")


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if present) and environment variables."""
    global _config

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_runs=2,
    )


def validate_config(config: AppConfig) -> None:
    """
    Check settings that can only be verified against the environment.

    Raises:
        ConfigurationError: If a required directory cannot be created
    """
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_dir = os.path.dirname(config.database_url.replace("sqlite:///", ""))
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if errors:
        raise ConfigurationError("; ".join(errors))
