"""Configuration management for the workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .models.core import RunSettings


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Workflow Execution Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Deployment environment")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Execution settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Maximum number of workflow runs executing at once"
    )
    node_timeout: float = Field(default=30.0, description="Default per-attempt node timeout in seconds")
    node_retry_count: int = Field(default=0, description="Default number of retries after a failed attempt")
    node_retry_delay: float = Field(default=0.0, description="Default fixed delay between attempts in seconds")
    node_continue_on_fail: bool = Field(
        default=False,
        description="Default for absorbing exhausted node failures"
    )
    execution_history_size: int = Field(default=100, description="Runs kept per workflow")
    http_user_agent: str = Field(default="Workflow-Engine/1.0", description="User-Agent sent by HTTP nodes")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    slow_execution_threshold: float = Field(
        default=60.0,
        description="Slow threshold in seconds for requests that run a workflow to completion"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'execution_history_size')
    @classmethod
    def validate_positive_counts(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('node_timeout')
    @classmethod
    def validate_node_timeout(cls, v):
        if v <= 0:
            raise ValueError("Node timeout must be positive")
        return v

    @field_validator('node_retry_count')
    @classmethod
    def validate_retry_count(cls, v):
        if v < 0:
            raise ValueError("Retry count cannot be negative")
        return v

    @field_validator('node_retry_delay')
    @classmethod
    def validate_retry_delay(cls, v):
        if v < 0:
            raise ValueError("Retry delay cannot be negative")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def default_run_settings(self) -> RunSettings:
        """Run settings applied to nodes that do not set their own."""
        return RunSettings(
            timeout=self.node_timeout,
            retry_count=self.node_retry_count,
            retry_delay=self.node_retry_delay,
            continue_on_fail=self.node_continue_on_fail,
        )

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from WORKFLOW_ENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            value = os.getenv(f"WORKFLOW_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Execution Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            environment=Environment(get_env("ENVIRONMENT", "development").lower()),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            max_concurrent_executions=get_env("MAX_CONCURRENT_EXECUTIONS", 10, int),
            node_timeout=get_env("NODE_TIMEOUT", 30.0, float),
            node_retry_count=get_env("NODE_RETRY_COUNT", 0, int),
            node_retry_delay=get_env("NODE_RETRY_DELAY", 0.0, float),
            node_continue_on_fail=get_env("NODE_CONTINUE_ON_FAIL", False, bool),
            execution_history_size=get_env("EXECUTION_HISTORY_SIZE", 100, int),
            http_user_agent=get_env("HTTP_USER_AGENT", "Workflow-Engine/1.0"),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            slow_execution_threshold=get_env("SLOW_EXECUTION_THRESHOLD", 60.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if present) and the environment."""
    global _config
    from dotenv import load_dotenv

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


def validate_config(config: AppConfig) -> None:
    """Check cross-field constraints that field validators cannot express."""
    errors = []

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.is_production and config.debug:
        errors.append("Debug mode must be disabled in production")

    if config.is_production and config.reload:
        errors.append("Auto-reload must be disabled in production")

    if config.node_retry_delay > config.node_timeout * 10:
        errors.append("Default retry delay is more than ten times the node timeout")

    if errors:
        from .core.exceptions import ConfigurationError
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        environment=Environment.DEVELOPMENT,
        log_level=LogLevel.DEBUG,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    return AppConfig(
        debug=False,
        reload=False,
        environment=Environment.PRODUCTION,
        log_level=LogLevel.INFO,
        structured_logging=True,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    return AppConfig(
        debug=True,
        environment=Environment.TESTING,
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        node_timeout=5.0,
        enable_performance_monitoring=False
    )
