"""
Configuration system for metaschema using Pydantic.
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .database.connection import ConnectionConfig
from .exceptions import ConfigurationError


class GovernanceConfig(BaseModel):
    """Naming and safety-gate settings."""

    reserved_prefix: str = Field(
        "x_", description="Prefix required on custom properties of module collections"
    )
    min_identifier_length: int = Field(2, description="Minimum code length")
    max_identifier_length: int = Field(63, description="Maximum code length")
    extra_reserved_collection_codes: List[str] = Field(
        default_factory=list, description="Additional reserved collection codes"
    )
    extra_reserved_property_codes: List[str] = Field(
        default_factory=list, description="Additional reserved property codes"
    )
    null_check_timeout_ms: int = Field(
        30000, description="Statement timeout for the NOT NULL existing-data check"
    )

    @field_validator("max_identifier_length")
    @classmethod
    def validate_max_length(cls, v: int) -> int:
        if v > 63:
            raise ValueError("PostgreSQL identifiers cannot exceed 63 characters")
        return v


class DdlConfig(BaseModel):
    """DDL executor settings."""

    default_schema: str = Field("public", description="Schema holding collection tables")
    metadata_schema: str = Field("public", description="Schema holding the engine metadata tables")
    statement_timeout_seconds: int = Field(
        300, description="Statement timeout applied to DDL transactions"
    )
    purge_after_days: int = Field(
        30, description="Retention window advertised for soft-deleted objects"
    )


class SyncConfig(BaseModel):
    """Drift detection settings."""

    enabled: bool = Field(True, description="Run the periodic drift check")
    interval_seconds: int = Field(3600, description="Drift check interval in seconds")
    lock_ttl_seconds: int = Field(300, description="Sync lock lifetime in seconds")
    run_on_startup: bool = Field(True, description="Run a drift check when started")
    system_table_prefixes: List[str] = Field(
        default_factory=lambda: [
            "pg_",
            "sql_",
            "_deleted_",
            "schema_",
            "collection_definition",
            "property_definition",
            "choice_",
        ],
        description="Physical tables never reported as orphaned",
    )
    discovery_strip_prefixes: List[str] = Field(
        default_factory=lambda: ["t_", "tbl_", "table_", "legacy_"],
        description="Prefixes removed when deriving collection codes",
    )


class VersionConfig(BaseModel):
    """Version history settings."""

    history_page_size: int = Field(50, description="Default page size for history")


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

    def configure(self, logger_name: str = "metaschema") -> logging.Logger:
        """Attach handlers for this configuration to the package logger."""
        logger = logging.getLogger(logger_name)
        logger.setLevel(self.level)
        formatter = logging.Formatter(self.format)

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

        if self.file:
            file_handler = logging.handlers.RotatingFileHandler(
                self.file, maxBytes=self.max_size, backupCount=self.backup_count
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

        return logger


class MetaschemaConfig(BaseSettings):
    """Main metaschema configuration."""

    service_name: str = Field("metaschema", description="Service name")

    database: ConnectionConfig = Field(
        default_factory=ConnectionConfig, description="Database connection"
    )
    governance: GovernanceConfig = Field(
        default_factory=GovernanceConfig, description="Governance configuration"
    )
    ddl: DdlConfig = Field(default_factory=DdlConfig, description="DDL configuration")
    sync: SyncConfig = Field(default_factory=SyncConfig, description="Sync configuration")
    versions: VersionConfig = Field(
        default_factory=VersionConfig, description="Version history configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="METASCHEMA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MetaschemaConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Expand environment variables in the data
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

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
            )
