"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from promoter.exceptions import ConfigurationError, PromoterError
from promoter.policy import DatatypePolicy, register_policy


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a nested structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class WarehouseConfig(BaseModel):
    """Warehouse location and client configuration."""

    project: str = Field(description="Project holding the staging and archive datasets")
    staging_prefix: str = Field(
        default="staging_",
        description="Dataset prefix of staging tables (dataset = prefix + experiment)",
    )
    archive_prefix: str = Field(
        default="archive_",
        description="Dataset prefix of archive tables (dataset = prefix + experiment)",
    )
    client_factory: Optional[str] = Field(
        default=None,
        description="Dotted 'module:callable' returning a Warehouse client",
    )
    client_options: dict[str, Any] = Field(
        default_factory=dict,
        description="Keyword arguments passed to the client factory",
    )
    cleanup_method: Literal["query", "delete_partition"] = Field(
        default="query",
        description="Clear staging with a DELETE query or by deleting the partition",
    )

    @field_validator("project")
    @classmethod
    def validate_project(cls, v: str) -> str:
        """Validate project id."""
        if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9_\-]*$", v):
            raise ValueError(f"Invalid project id: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_prefixes(self) -> "WarehouseConfig":
        """Staging and archive must not resolve to the same dataset."""
        if self.staging_prefix == self.archive_prefix:
            raise ValueError("staging_prefix and archive_prefix must differ")
        return self


class SanityConfig(BaseModel):
    """Thresholds for comparing source and destination partitions."""

    min_source_file_ratio: float = Field(
        default=1.0,
        description="Source must hold at least this fraction of the destination's source files",
        gt=0,
        le=1,
    )
    min_record_ratio: float = Field(
        default=1.0,
        description="Source must hold at least this fraction of the destination's records",
        gt=0,
        le=1,
    )
    require_source_newer: bool = Field(
        default=False,
        description="Refuse to copy when the source was last modified before the destination",
    )


class RetrySettings(BaseModel):
    """Retry behavior of the runner for transient failures."""

    max_attempts: int = Field(default=3, description="Attempts per promotion", ge=1, le=20)
    initial_delay: float = Field(default=5.0, description="Initial backoff in seconds", ge=0)
    max_delay: float = Field(default=300.0, description="Maximum backoff in seconds", gt=0)
    cleanup_attempts: int = Field(
        default=3,
        description="Attempts for cleanup-only retries after a committed copy",
        ge=1,
        le=20,
    )


class RunnerConfig(BaseModel):
    """Runner configuration."""

    max_parallel_partitions: int = Field(
        default=4,
        description="Maximum number of partitions promoted concurrently",
        gt=0,
        le=64,
    )


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(default=True, description="Record Prometheus metrics")
    metrics_textfile: Optional[str] = Field(
        default=None,
        description="Write metrics to this file after a run (node exporter textfile collector)",
    )


class DatatypeConfig(BaseModel):
    """Additional datatype policy definition."""

    datatype: str = Field(description="Datatype name")
    partition_date_column: str = Field(description="Date column or expression")
    partition_keys: dict[str, str] = Field(
        description="Logical key name to column path",
        min_length=1,
    )
    tie_break_order: str = Field(default="", description="Extra ordering before parse time")
    parse_time_column: str = Field(default="parser.Time", description="Ingestion time column")
    record_id_column: Optional[str] = Field(default=None, description="Distinct record column")
    source_file_column: Optional[str] = Field(
        default=None,
        description="Distinct source file column",
    )
    ingestion_time_partitioned: bool = Field(
        default=False,
        description="Partitions are selected by _PARTITIONTIME instead of the date column",
    )

    def to_policy(self) -> DatatypePolicy:
        """Build the policy."""
        return DatatypePolicy(
            datatype=self.datatype,
            partition_date_column=self.partition_date_column,
            partition_keys=self.partition_keys,
            tie_break_order=self.tie_break_order,
            parse_time_column=self.parse_time_column,
            record_id_column=self.record_id_column,
            source_file_column=self.source_file_column,
            ingestion_time_partitioned=self.ingestion_time_partitioned,
        )


class PromoterConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(default="1.0", description="Configuration version")
    warehouse: WarehouseConfig = Field(description="Warehouse configuration")
    sanity: SanityConfig = Field(
        default_factory=SanityConfig,
        description="Sanity check thresholds",
    )
    retry: RetrySettings = Field(default_factory=RetrySettings, description="Retry configuration")
    runner: RunnerConfig = Field(default_factory=RunnerConfig, description="Runner configuration")
    monitoring: MonitoringConfig = Field(
        default_factory=MonitoringConfig,
        description="Monitoring configuration",
    )
    datatypes: list[DatatypeConfig] = Field(
        default_factory=list,
        description="Additional datatype policies",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v not in ["1.0"]:
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    @model_validator(mode="after")
    def validate_datatypes(self) -> "PromoterConfig":
        """Reject duplicate datatype definitions."""
        names = [d.datatype for d in self.datatypes]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate datatype definitions: {names}")
        return self

    def register_datatypes(self) -> None:
        """Register the configured datatype policies, replacing existing ones."""
        for datatype in self.datatypes:
            register_policy(datatype.to_policy(), replace=True)


def load_config(config_path: Path) -> PromoterConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if not raw_config:
            raise ConfigurationError(
                "Configuration file is empty", context={"path": str(config_path)}
            )

        config_data = _substitute_env_in_dict(raw_config)
        config = PromoterConfig.model_validate(config_data)
        for datatype in config.datatypes:
            datatype.to_policy()
        return config

    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
    except PromoterError:
        raise
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e
