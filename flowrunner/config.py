"""Configuration management for the workflow execution engine."""

import os
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from dotenv import load_dotenv

from .core.exceptions import ConfigurationError


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
    app_name: str = Field(default="Flowrunner", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./flowrunner.db",
        description="Execution store connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Maximum number of executions running at once"
    )
    max_parallel_nodes: int = Field(
        default=4,
        description="Maximum sibling nodes dispatched concurrently within one execution"
    )
    stale_execution_grace_period: int = Field(
        default=3600,
        description="Seconds after which a running execution not owned by this process is considered abandoned"
    )

    # Action settings
    http_timeout: float = Field(default=30.0, description="Outbound HTTP request timeout in seconds")
    ssrf_allowlist: List[str] = Field(
        default_factory=list,
        description="Hostnames or CIDR ranges exempt from the internal-address check"
    )
    database_statement_timeout_ms: int = Field(
        default=30000,
        description="Statement timeout for database actions in milliseconds"
    )
    message_timeout: float = Field(default=30.0, description="Email/chat provider request timeout in seconds")
    email_api_url: str = Field(default="https://api.resend.com", description="Email provider API base URL")
    email_api_key: Optional[str] = Field(default=None, description="Default email provider API key")
    email_from: str = Field(default="Workflows <noreply@example.com>", description="Default sender address")
    telegram_api_url: str = Field(default="https://api.telegram.org", description="Telegram Bot API base URL")
    telegram_bot_token: Optional[str] = Field(default=None, description="Default Telegram bot token")

    # Trigger settings
    scheduler_timezone: str = Field(default="UTC", description="Default timezone for cron schedules")
    email_trigger_domain: str = Field(
        default="triggers.example.com",
        description="Domain used for generated inbound email trigger addresses"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Log message format")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
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

    @field_validator('max_concurrent_executions', 'max_parallel_nodes')
    @classmethod
    def validate_worker_counts(cls, v):
        """Validate worker pool sizes."""
        if v < 1:
            raise ValueError("Worker counts must be at least 1")
        return v

    @field_validator('http_timeout', 'message_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Every outbound action carries a bounded timeout."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('database_statement_timeout_ms', 'stale_execution_grace_period')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

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
        """Create configuration from FLOWRUNNER_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"FLOWRUNNER_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()] if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Flowrunner"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            database_url=get_env("DATABASE_URL", "sqlite:///./flowrunner.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_executions=get_env("MAX_CONCURRENT_EXECUTIONS", 10, int),
            max_parallel_nodes=get_env("MAX_PARALLEL_NODES", 4, int),
            stale_execution_grace_period=get_env("STALE_EXECUTION_GRACE_PERIOD", 3600, int),
            http_timeout=get_env("HTTP_TIMEOUT", 30.0, float),
            ssrf_allowlist=get_env("SSRF_ALLOWLIST", [], list),
            database_statement_timeout_ms=get_env("DATABASE_STATEMENT_TIMEOUT_MS", 30000, int),
            message_timeout=get_env("MESSAGE_TIMEOUT", 30.0, float),
            email_api_url=get_env("EMAIL_API_URL", "https://api.resend.com"),
            email_api_key=get_env("EMAIL_API_KEY", None),
            email_from=get_env("EMAIL_FROM", "Workflows <noreply@example.com>"),
            telegram_api_url=get_env("TELEGRAM_API_URL", "https://api.telegram.org"),
            telegram_bot_token=get_env("TELEGRAM_BOT_TOKEN", None),
            scheduler_timezone=get_env("SCHEDULER_TIMEZONE", "UTC"),
            email_trigger_domain=get_env("EMAIL_TRIGGER_DOMAIN", "triggers.example.com"),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", None),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if any) and the environment."""
    global _config

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    try:
        _config = AppConfig.from_env()
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_testing_config(**overrides) -> AppConfig:
    """Get testing configuration."""
    values = dict(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=4,
        max_parallel_nodes=4,
        http_timeout=5.0,
        message_timeout=5.0,
        stale_execution_grace_period=60,
    )
    values.update(overrides)
    return AppConfig(**values)
