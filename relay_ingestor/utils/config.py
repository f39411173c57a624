"""Configuration loader and settings helpers for Relay_Ingestor."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic import (
    ValidationError as PydanticValidationError,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError
from ..schemas.source import IntegrationSource


logger = logging.getLogger(__name__)


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If file not found or invalid YAML
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            return config if config else {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")


def parse_sources(config: dict[str, Any]) -> list[IntegrationSource]:
    """
    Validate the ``sources`` section of a configuration mapping.

    Args:
        config: Parsed configuration containing a ``sources`` list

    Returns:
        Validated integration sources in declaration order

    Raises:
        ConfigurationError: If the list is missing, an entry is malformed,
            or two sources share an id
    """
    raw_sources = config.get("sources")
    if raw_sources is None:
        raw_sources = []
    if not isinstance(raw_sources, list):
        raise ConfigurationError("Sources configuration must contain a 'sources' list")

    sources: list[IntegrationSource] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_sources):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"sources[{index}] must be a mapping")
        if not entry.get("id"):
            raise ConfigurationError(f"sources[{index}] must have an 'id'")
        if not entry.get("type"):
            raise ConfigurationError(f"Source {entry['id']} must have a 'type' field")
        if entry["id"] in seen:
            raise ConfigurationError(f"Duplicate source id: {entry['id']}")
        seen.add(entry["id"])
        try:
            sources.append(IntegrationSource.model_validate(entry))
        except PydanticValidationError as exc:
            raise ConfigurationError(f"Invalid source '{entry['id']}': {exc}") from exc
    return sources


def load_sources(path: str | Path) -> list[IntegrationSource]:
    """Load and validate integration sources from a YAML file."""

    return parse_sources(load_yaml_config(path))


def enabled_sources(sources: list[IntegrationSource]) -> list[IntegrationSource]:
    """Return only the sources that are not explicitly disabled."""

    return [source for source in sources if source.enabled]


class SecretsSettings(BaseModel):
    """Credential resolution backend settings."""

    model_config = ConfigDict(extra="forbid")

    backend: str = "env"
    env_prefix: str = "RELAY_SECRET_"
    secret_name: str | None = None
    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None

    @field_validator("backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"env", "aws"}:
            raise ValueError("secrets.backend must be 'env' or 'aws'")
        return normalized


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the SQLAlchemy engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class GlobalSettings(BaseSettings):
    """Global application settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_nested_delimiter="__",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"
    sources_file: Path = Path("config/sources.yaml")
    plugin_dir: Path = Field(
        default=Path("~/.config/relay-ingestor/plugins"), validate_default=True
    )
    attachment_dir: Path = Field(
        default=Path("~/.local/share/relay-ingestor/attachments"), validate_default=True
    )
    database_url: str | None = None
    database: DatabasePoolSettings = DatabasePoolSettings()
    secrets: SecretsSettings = SecretsSettings()
    api_keys: list[str] = Field(default_factory=list)

    dedup_max_items: int = Field(default=10_000, ge=1)
    default_poll_interval_seconds: float = Field(default=60.0, gt=0)
    poll_timeout_seconds: float = Field(default=60.0, gt=0)
    startup_stagger_seconds: float = Field(default=2.0, ge=0)
    config_check_interval_seconds: float = Field(default=30.0, gt=0)
    max_tracked_threads: int = Field(default=50, ge=0)

    realtime_long_poll_seconds: float = Field(default=30.0, gt=0)
    realtime_request_timeout_seconds: float = Field(default=45.0, gt=0)
    realtime_reconnect_delay_seconds: float = Field(default=5.0, ge=0)
    realtime_max_backoff_seconds: float = Field(default=3600.0, gt=0)
    realtime_stale_seconds: float = Field(default=300.0, ge=0)
    realtime_health_interval_seconds: float = Field(default=60.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=60.0, gt=0)

    kafka_bootstrap_servers: str | None = None
    kafka_topic: str = "relay.work-items"
    kafka_publish_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """Ensure log level values are uppercase for logging config."""

        return value.upper()

    @field_validator("api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, value: Any) -> list[str]:
        """Support comma-separated strings or iterables for API key configuration."""

        if value is None:
            return []
        if isinstance(value, str):
            keys = [item.strip() for item in value.split(",")]
            return [key for key in keys if key]
        if isinstance(value, list | tuple | set):
            return [str(item) for item in value if str(item).strip()]
        raise ValueError("api_keys must be a comma-separated string or iterable of strings")

    @field_validator("sources_file", "plugin_dir", "attachment_dir", mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        """Allow string paths and expand user markers."""

        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @model_validator(mode="after")
    def _check_timeouts(self) -> "GlobalSettings":
        """A hung transport must be abandoned after the long-poll would have returned."""

        if self.realtime_request_timeout_seconds <= self.realtime_long_poll_seconds:
            raise ValueError(
                "realtime_request_timeout_seconds must exceed realtime_long_poll_seconds"
            )
        return self


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()


