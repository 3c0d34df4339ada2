"""Settings for the BizFlow service, read from BIZFLOW_* variables."""

import os
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError


ENV_PREFIX = "BIZFLOW_"
_TRUTHY = ("true", "1", "yes", "on")


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Database backends the instance store can run on."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


def _url_scheme(url: str) -> str:
    return url.split('://')[0].lower().split('+')[0]


class AppConfig(BaseModel):
    """Service settings.

    Each field maps to ``BIZFLOW_<FIELD_NAME>`` in the environment.
    """

    app_name: str = Field(default="BizFlow Workflow Engine", description="Name reported by the API")
    app_version: str = Field(default="1.0.0", description="Version reported by the API")
    debug: bool = Field(default=False, description="Expose debug details and access logs")

    # HTTP server
    host: str = Field(default="0.0.0.0", description="Interface uvicorn binds to")
    port: int = Field(default=8000, description="Port uvicorn listens on")
    reload: bool = Field(default=False, description="Restart the server on code changes")

    # Instance store
    database_url: str = Field(
        default="sqlite:///./bizflow.db",
        description="SQLAlchemy URL of the instance store"
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Execution engine
    automation_timeout: float = Field(
        default=30.0,
        description="Default timeout in seconds for automation node side effects"
    )
    automation_workers: int = Field(
        default=4,
        description="Thread pool size used to run automation handlers"
    )
    max_steps_per_advance: int = Field(
        default=1000,
        description="Maximum node entries a single advance call may perform"
    )

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Root log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Format of plain-text log lines"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log records")
    log_file: Optional[str] = Field(default=None, description="Rotating log file, stdout only when unset")
    log_max_size: int = Field(default=10485760, description="Bytes before the log file rotates")
    log_backup_count: int = Field(default=5, description="Rotated log files kept")

    # Request monitoring
    slow_request_threshold: float = Field(
        default=5.0,
        description="Requests slower than this many seconds are logged as warnings"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable request logging and timing middleware"
    )

    # CORS
    cors_origins: list = Field(default=["*"], description="Origins allowed to call the API")
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="Methods allowed for cross-origin calls"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("database_url must not be empty")
        supported = [db_type.value for db_type in DatabaseType]
        if _url_scheme(v) not in supported:
            raise ValueError(f"database_url scheme '{_url_scheme(v)}' is not one of {supported}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if v < 1 or v > 65535:
            raise ValueError(f"port {v} is outside 1-65535")
        return v

    @field_validator('automation_timeout')
    @classmethod
    def validate_automation_timeout(cls, v):
        if v <= 0:
            raise ValueError("automation_timeout must be positive")
        return v

    @field_validator('automation_workers', 'max_steps_per_advance')
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(_url_scheme(self.database_url))

    @property
    def is_sqlite(self) -> bool:
        return self.database_type is DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        return not (self.debug or self.reload)

    def get_database_connect_args(self) -> Dict[str, Any]:
        """SQLite connections are shared by the engine's worker threads."""
        return {"check_same_thread": False} if self.is_sqlite else {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """Create configuration from BIZFLOW_* environment variables.

        Every field can be set as ``BIZFLOW_<FIELD_NAME>``; list fields take a
        comma separated value. Unset variables keep the field default.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            values[name] = _parse_env_value(name, field.annotation, raw)
        return cls.model_validate(values)


def _parse_env_value(name: str, annotation: Any, raw: str) -> Any:
    if annotation is bool:
        return raw.strip().lower() in _TRUTHY
    if annotation is list:
        return [item.strip() for item in raw.split(',') if item.strip()]
    if name == "log_level":
        return raw.strip().upper()
    if name == "log_file":
        return raw or None
    return raw


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide settings, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Read ``config_file`` (or ./.env) into the environment, then build settings.

    Variables already present in the environment win over the file.
    """
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Create the directories the database and log files live in."""
    directories = []
    if config.is_sqlite and ":memory:" not in config.database_url:
        directories.append(("database_url", os.path.dirname(config.database_url.split(":///", 1)[-1])))
    if config.log_file:
        directories.append(("log_file", os.path.dirname(config.log_file)))

    errors = []
    for config_key, directory in directories:
        if not directory or os.path.isdir(directory):
            continue
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            errors.append((config_key, f"cannot create directory {directory} for {config_key}: {e}"))

    if errors:
        raise ConfigurationError("; ".join(message for _, message in errors), config_key=errors[0][0])


def get_development_config() -> AppConfig:
    return AppConfig(debug=True, reload=True, log_level=LogLevel.DEBUG, database_echo=True)


def get_production_config() -> AppConfig:
    """JSON logs, no reload, no cross-origin access unless configured."""
    return AppConfig(debug=False, reload=False, log_level=LogLevel.INFO, log_structured=True, cors_origins=[])


def get_testing_config() -> AppConfig:
    """In-memory database and short automation timeouts."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        automation_timeout=2.0,
        enable_performance_monitoring=False,
    )
