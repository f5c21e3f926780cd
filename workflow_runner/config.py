"""Configuration management for the workflow runner."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "WORKFLOW_RUNNER_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppEnv(str, Enum):
    """Storage partition tag. Everything other than ``dev`` is ``prod``."""
    DEV = "dev"
    PROD = "prod"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "AppEnv":
        return cls.DEV if (value or "").strip().lower() == "dev" else cls.PROD


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Workflow Runner", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    app_env: AppEnv = Field(default=AppEnv.PROD, description="Environment tag scoping all storage")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./workflow_runner.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Model provider settings
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    llm_timeout: float = Field(default=60.0, description="LLM request timeout in seconds")

    # Retry settings
    retry_max_retries: int = Field(default=2, description="Retries after the first transport attempt")
    retry_initial_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    retry_max_delay: float = Field(default=10.0, description="Maximum backoff delay in seconds")

    # Eval settings
    eval_concurrency: int = Field(default=1, description="Eval cases executed concurrently")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
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

    @field_validator('app_env', mode='before')
    @classmethod
    def validate_app_env(cls, v):
        """Collapse any value other than 'dev' to 'prod'."""
        if isinstance(v, AppEnv):
            return v
        return AppEnv.from_value(v)

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

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

    @field_validator('retry_max_retries')
    @classmethod
    def validate_retry_max_retries(cls, v):
        if v < 0:
            raise ValueError("Retry count cannot be negative")
        return v

    @field_validator('retry_initial_delay', 'retry_max_delay', 'llm_timeout')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Delays and timeouts cannot be negative")
        return v

    @field_validator('eval_concurrency')
    @classmethod
    def validate_eval_concurrency(cls, v):
        """Validate eval concurrency."""
        if v < 1:
            raise ValueError("Eval concurrency must be at least 1")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower().split('+')[0]
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    def get_provider_api_keys(self) -> Dict[str, Optional[str]]:
        """API keys by provider name."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }

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
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Runner"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            app_env=os.getenv("APP_ENV", get_env("APP_ENV", "prod")),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./workflow_runner.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            openai_api_key=get_env("OPENAI_API_KEY", os.getenv("OPENAI_API_KEY")),
            anthropic_api_key=get_env("ANTHROPIC_API_KEY", os.getenv("ANTHROPIC_API_KEY")),
            llm_timeout=get_env("LLM_TIMEOUT", 60.0, float),
            retry_max_retries=get_env("RETRY_MAX_RETRIES", 2, int),
            retry_initial_delay=get_env("RETRY_INITIAL_DELAY", 1.0, float),
            retry_max_delay=get_env("RETRY_MAX_DELAY", 10.0, float),
            eval_concurrency=get_env("EVAL_CONCURRENCY", 1, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list)
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
    """Load configuration from a .env file and environment variables."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings."""
    errors = []

    if config.is_sqlite:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:" and not os.path.exists(db_dir):
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

    if config.retry_initial_delay > config.retry_max_delay:
        errors.append("retry_initial_delay cannot exceed retry_max_delay")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        app_env=AppEnv.DEV,
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        app_env=AppEnv.PROD,
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        app_env=AppEnv.DEV,
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        enable_performance_monitoring=False
    )
