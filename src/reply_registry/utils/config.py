"""
Configuration loader for the reply session registry.

This module provides configuration management with:
- Multiple configuration sources (files, env vars, explicit overrides)
- Schema validation through pydantic
- Type coercion of environment values
- Priority-ordered merging
"""

import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import yaml
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("reply-registry.config")

ENV_PREFIX = "OMC_REGISTRY_"
ENV_NESTING = "__"
ENV_PRIORITY = 50


def default_state_dir() -> Path:
    """Global state directory shared by every process on the host."""
    return Path.home() / ".omc" / "state"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RegistryConfig(BaseModel):
    """Session registry configuration."""
    state_dir: Path = Field(default_factory=default_state_dir)
    registry_filename: str = "reply-session-registry.jsonl"
    lock_filename: str = "reply-session-registry.lock"

    # A lock older than this is reclaimable once its owner is gone
    lock_timeout_ms: int = Field(default=2000, gt=0)
    # Caller patience, distinct from staleness detection
    acquire_timeout_seconds: float = Field(default=30.0, gt=0)
    retry_initial_ms: int = Field(default=10, gt=0)
    retry_max_ms: int = Field(default=200, gt=0)

    max_age_hours: float = Field(default=24.0, gt=0)
    max_record_bytes: int = Field(default=4096, gt=0, le=4096)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)

    @field_validator('state_dir', mode='before')
    @classmethod
    def expand_state_dir(cls, v):
        """Expand ``~`` and make the path absolute."""
        return Path(v).expanduser().absolute()

    @field_validator('registry_filename', 'lock_filename')
    @classmethod
    def validate_filename(cls, v):
        """Filenames must not escape the state directory."""
        if not v or os.sep in v or v in (".", ".."):
            raise ValueError(f"Invalid filename: {v!r}")
        return v

    @property
    def registry_path(self) -> Path:
        return self.state_dir / self.registry_filename

    @property
    def lock_path(self) -> Path:
        return self.state_dir / self.lock_filename


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".omc" / "logs")
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v


class AppConfig(BaseModel):
    """Main configuration."""
    app_name: str = "reply-registry"
    debug: bool = False

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration loader.

        Args:
            environ: Environment mapping to read ``OMC_REGISTRY_*`` values from
                (defaults to ``os.environ``)
        """
        self._sources: List[ConfigSource] = []
        self._config: Optional[AppConfig] = None
        self._environ = environ

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source).expanduser()
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> AppConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}
        env_merged = False

        for source in self._sources:
            # Environment sits above files and below explicit overrides
            if not env_merged and source.priority >= ENV_PRIORITY:
                merged_data = self._deep_merge(merged_data, self._load_env_vars())
                env_merged = True
            data = self._load_source(source)
            merged_data = self._deep_merge(merged_data, data)

        if not env_merged:
            merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = AppConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")

            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.debug(
            "configuration_loaded",
            sources=len(self._sources),
            state_dir=str(self._config.registry.state_dir),
        )
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        try:
            content = source.path.read_text(encoding="utf-8")
            if source.source_type == "json":
                data = json.loads(content)
            elif source.source_type == "yaml":
                data = yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                data = toml.loads(content)
            else:
                raise ConfigurationError(f"Unknown source type: {source.source_type}")
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read configuration from {source.path}: {e}",
                cause=e
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration in {source.path} must be a mapping"
            )
        return data

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        result: Dict[str, Any] = {}
        environ = os.environ if self._environ is None else self._environ

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = result

            for part in parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    raise ConfigurationError(f"Conflicting environment variable: {key}")

            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        if value.startswith("/") or value.startswith("~"):
            return Path(value).expanduser()

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> AppConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def default_config_paths() -> List[Path]:
    """User-level configuration files, checked in this order."""
    base = Path.home() / ".omc"
    return [
        base / "reply-registry.toml",
        base / "reply-registry.json",
        base / "reply-registry.yaml",
        base / "reply-registry.yml",
    ]


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> AppConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader(environ=environ)

    for path in default_config_paths():
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'AppConfig',
    'RegistryConfig',
    'LoggingConfig',
    'ConfigLoader',
    'ENV_PREFIX',
    'default_state_dir',
    'default_config_paths',
    'load_config',
]
