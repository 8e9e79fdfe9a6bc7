"""
Configuration system for pgshift using Pydantic.
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .database.connection import ConnectionConfig
from .exceptions import ConfigurationError


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field("", description="Database password")
    ssl_mode: Optional[str] = Field(None, description="SSL mode")
    min_size: int = Field(1, description="Minimum connections in pool")
    max_size: int = Field(10, description="Maximum connections in pool")
    command_timeout: float = Field(3600.0, description="Command timeout in seconds")

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConfig":
        """Create configuration from a postgresql:// URL."""
        connection = ConnectionConfig.from_url(url)
        return cls(
            host=connection.host,
            port=connection.port,
            database=connection.database,
            user=connection.user,
            password=connection.password,
            ssl_mode=connection.ssl_mode,
        )

    def to_connection_config(self, application_name: str = "pgshift") -> ConnectionConfig:
        """Convert to a connection pool configuration."""
        return ConnectionConfig(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            ssl_mode=self.ssl_mode,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            server_settings={"application_name": application_name},
        )


class LedgerConfig(BaseModel):
    """Operation ledger configuration."""

    schema_name: str = Field("pgshift", description="Schema holding the ledger tables")
    retention_days: int = Field(30, ge=1, description="Age after which terminal records are swept")
    record_events: bool = Field(True, description="Journal every ledger write as an event")
    database: Optional[DatabaseConfig] = Field(
        None, description="Separate ledger database; defaults to the main database"
    )
    pool_min_size: int = Field(1, description="Minimum connections in the ledger pool")
    pool_max_size: int = Field(2, description="Maximum connections in the ledger pool")

    @field_validator("schema_name")
    @classmethod
    def validate_schema_name(cls, v):
        if not v or not v.replace("_", "").isalnum() or v[0].isdigit():
            raise ValueError(f"Invalid ledger schema name: {v!r}")
        return v


class WorkflowConfig(BaseModel):
    """Defaults for online evolution workflows."""

    batch_size: int = Field(10000, ge=1, description="Rows per copy or rewrite batch")
    parallel_degree: int = Field(4, ge=1, description="Intra-statement parallel workers")
    lock_timeout_seconds: float = Field(10.0, gt=0, description="Lock wait limit for DDL")
    statement_timeout_seconds: int = Field(3600, ge=1, description="Per-statement timeout")
    operation_timeout_seconds: Optional[float] = Field(
        None, description="Default per-operation timeout; None disables it"
    )
    tablespace_quota_bytes: Optional[int] = Field(
        None, description="Advisory space limit checked during preflight"
    )
    target_suffix: str = Field("_new", description="Suffix for migration targets")
    retired_suffix: str = Field("_old", description="Suffix for tables replaced by a swap")
    drop_retired: bool = Field(False, description="Drop replaced tables during cleanup")
    cancel_poll_ledger: bool = Field(
        True, description="Consult the durable cancel flag at every checkpoint"
    )
    large_partition_mb: float = Field(1000, gt=0, description="Size above which a partition is reported as large")
    move_throughput_mb_per_minute: float = Field(
        100.0, gt=0, description="Per-worker relocation throughput used for move estimates"
    )


class SynthesisConfig(BaseModel):
    """DDL synthesis configuration."""

    max_identifier_length: int = Field(63, description="Identifier byte limit")
    default_schema: str = Field("public", description="Schema used for unqualified targets")
    output_dir: Optional[str] = Field(None, description="Directory for saved scripts")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")

    def apply(self, debug: bool = False) -> None:
        """Configure the ``pgshift`` logger hierarchy."""
        root = logging.getLogger("pgshift")
        root.setLevel(logging.DEBUG if debug else getattr(logging, self.level))

        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(self.format)
        if self.file:
            Path(self.file).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                self.file, maxBytes=self.max_size, backupCount=self.backup_count
            )
        else:
            handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)


class PgshiftConfig(BaseSettings):
    """Main pgshift configuration."""

    service_name: str = Field("pgshift", description="Application name reported to PostgreSQL")
    debug: bool = Field(False, description="Enable debug mode")

    database: Optional[DatabaseConfig] = Field(None, description="Target database")
    ledger: LedgerConfig = Field(default_factory=LedgerConfig, description="Ledger configuration")
    workflows: WorkflowConfig = Field(
        default_factory=WorkflowConfig, description="Workflow defaults"
    )
    synthesis: SynthesisConfig = Field(
        default_factory=SynthesisConfig, description="Synthesis configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PGSHIFT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PgshiftConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def require_database(self) -> DatabaseConfig:
        """Return the target database configuration or fail."""
        if self.database is None:
            raise ConfigurationError("No database configured")
        return self.database

    def ledger_database(self) -> DatabaseConfig:
        """Database the ledger writes to, on a pool of its own."""
        return self.ledger.database or self.require_database().model_copy(
            update={
                "min_size": self.ledger.pool_min_size,
                "max_size": self.ledger.pool_max_size,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
            )
