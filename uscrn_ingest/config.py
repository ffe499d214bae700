"""Configuration management for the ingestion service."""
import logging
from pathlib import Path
from typing import List, Literal, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.ncei.noaa.gov/pub/data/uscrn/products/hourly02"

YearSelector = Union[Literal["current", "all"], List[int]]


class DatabaseConfig(BaseModel):
    """PostgreSQL configuration."""
    host: str = "localhost"
    port: int = 5432
    name: str = "uscrn"
    user: str = "uscrn"
    password: str = "uscrn"

    # Connection pool
    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 3600

    @field_validator("port", mode="before")
    @classmethod
    def _coerce_port(cls, value):
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                raise ValueError(f"Invalid port number: '{value}'")
        return value

    @field_validator("host", "name", "user")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "DatabaseConfig":
        if not 0 < self.port < 65536:
            raise ValueError(f"Database port {self.port} out of range")
        if not 1 <= self.pool_size <= 100:
            raise ValueError(f"Database pool_size {self.pool_size} must be between 1 and 100")
        return self

    @property
    def url(self) -> str:
        """Get SQLAlchemy connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class SourceConfig(BaseModel):
    """Remote archive configuration."""
    base_url: str = DEFAULT_BASE_URL
    allowed_hosts: List[str] = Field(default_factory=lambda: ["www.ncei.noaa.gov"])
    years: YearSelector = "current"

    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    max_retries: int = 3
    retry_backoff: float = 2.0
    request_delay_seconds: float = 0.5
    download_workers: int = 2
    user_agent: str = "uscrn-ingest/0.1.0"

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("allowed_hosts")
    @classmethod
    def _lowercase_hosts(cls, value: List[str]) -> List[str]:
        return [host.lower() for host in value]

    @field_validator("download_workers")
    @classmethod
    def _at_least_one_worker(cls, value: int) -> int:
        if value < 1:
            raise ValueError("download_workers must be at least 1")
        return value

    @model_validator(mode="after")
    def _check_origin(self) -> "SourceConfig":
        parsed = urlparse(self.base_url)
        if parsed.scheme != "https":
            raise ValueError(f"Source base_url must use HTTPS, got: {parsed.scheme or 'none'}")
        if not parsed.hostname or parsed.hostname.lower() not in self.allowed_hosts:
            raise ValueError(f"Source host {parsed.hostname!r} is not in allowed_hosts")
        return self


class SchedulerConfig(BaseModel):
    """Polling schedule."""
    interval_minutes: float = 60
    initial_delay_seconds: float = 0

    @field_validator("interval_minutes")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval_minutes must be greater than 0")
        if value < 5:
            logger.warning(
                f"Scheduler interval of {value} minutes is very short, "
                f"consider using at least 5 minutes"
            )
        return value


class LocationFilter(BaseModel):
    """Which files and stations to ingest. Empty means everything."""
    states: List[str] = Field(default_factory=list)
    stations: List[int] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)

    @field_validator("states")
    @classmethod
    def _normalize_states(cls, value: List[str]) -> List[str]:
        states = []
        for state in value:
            state = state.strip().upper()
            if len(state) != 2 or not state.isalpha():
                raise ValueError(f"State code '{state}' must be exactly 2 letters (e.g., 'CA', 'TX')")
            states.append(state)
        return states

    @field_validator("stations", mode="before")
    @classmethod
    def _normalize_stations(cls, value):
        if value is None:
            return []
        # "03761" and 3761 name the same station
        return [int(str(v).strip().lstrip("0") or "0") for v in value]

    def is_empty(self) -> bool:
        return not (self.states or self.stations or self.patterns)


class ParserConfig(BaseModel):
    """Parse tolerance."""
    failure_threshold: float = 0.10

    @field_validator("failure_threshold")
    @classmethod
    def _fraction(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("failure_threshold must be between 0 and 1")
        return value


class IngestConfig(BaseSettings):
    """Main ingestion configuration."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    locations: LocationFilter = Field(default_factory=LocationFilter)
    parser: ParserConfig = Field(default_factory=ParserConfig)

    log_level: str = "INFO"
    metrics_port: Optional[int] = None

    model_config = SettingsConfigDict(
        env_prefix="USCRN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_config(path: Optional[Union[str, Path]] = None) -> IngestConfig:
    """Load and validate configuration.

    Values from the YAML file (if given) take precedence over environment
    variables, which take precedence over defaults. Nested sections are
    merged, so secrets can stay in the environment.

    Args:
        path: Optional YAML configuration file

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file cannot be read or validation fails
    """
    data = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        config = IngestConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.info(
        f"Configuration loaded: source={config.source.base_url}, "
        f"years={config.source.years}, interval={config.scheduler.interval_minutes}m"
    )
    return config
