"""
Shielded Counter Configuration

Configuration management with YAML files, environment variables and
validation.

Configuration Sources (in order of precedence):
    1. Environment variables (COUNTER_*)
    2. Runtime overrides and loaded YAML files
    3. Project config file (./shielded_counter.yaml), when loaded
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from shielded_counter.merkle import MAX_DEPTH

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)  # type: ignore
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
        except ValueError as e:
            raise ValidationError(f"Cannot read {value!r} as {target_type.__name__}") from e
        return value  # type: ignore


@dataclass
class TreeConfig:
    """Configuration for the commitment tree."""
    depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=32,
        env_var="COUNTER_TREE_DEPTH",
        description="Depth of the ledger commitment tree",
        validator=lambda x: 1 <= x <= MAX_DEPTH,
    ))


@dataclass
class ProverConfig:
    """Configuration for proof generation."""
    max_workers: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=os.cpu_count() or 1,
        env_var="COUNTER_PROVER_MAX_WORKERS",
        description="Worker threads used for proof assembly",
        validator=lambda x: x > 0,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=120.0,
        env_var="COUNTER_PROVER_TIMEOUT",
        description="Upper bound on proving one transition",
        validator=lambda x: x > 0,
    ))


@dataclass
class OrchestratorConfig:
    """Configuration for the transition orchestrator."""
    lock_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="COUNTER_LOCK_TIMEOUT",
        description="Wait for the per-account lock before failing",
        validator=lambda x: x > 0,
    ))
    submit_max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="COUNTER_SUBMIT_MAX_ATTEMPTS",
        description="Submissions of one candidate before giving up",
        validator=lambda x: x >= 1,
    ))
    retry_base_delay: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.2,
        env_var="COUNTER_RETRY_BASE_DELAY",
        description="Base backoff delay between submissions in seconds",
        validator=lambda x: x >= 0,
    ))
    attempt_history: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=50,
        env_var="COUNTER_ATTEMPT_HISTORY",
        description="Transition attempts kept per account",
        validator=lambda x: x > 0,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the ledger service."""
    fetch_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="COUNTER_FETCH_TIMEOUT",
        description="Upper bound on fetching an authentication path",
        validator=lambda x: x > 0,
    ))
    submit_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="COUNTER_SUBMIT_TIMEOUT",
        description="Upper bound on one transaction submission",
        validator=lambda x: x > 0,
    ))
    chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=11155111,
        env_var="COUNTER_CHAIN_ID",
        description="Chain id reported by the ledger service",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="COUNTER_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="COUNTER_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class CounterConfig:
    """Root configuration for the shielded counter."""
    tree: TreeConfig = field(default_factory=TreeConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = CounterConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> CounterConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        self._apply_dict(data)
        self._config_paths.append(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Config section {path} must be a mapping")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("orchestrator.submit_max_attempts", 5)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("tree.depth")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (ConfigError, TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> CounterConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
