"""
verigraph Configuration

Typed configuration with YAML files, environment variables and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (VERIGRAPH_*)
    2. Values set at runtime or loaded from a YAML file
    3. Default values

There is no process-wide configuration. Each ``ConfigManager`` owns its own
``EngineConfig``, and that object is handed to the orchestrator at
construction, so orchestrators with different credentials can share a process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")

STORAGE_BACKENDS = ("pinning", "object-store")
BATCH_POLICIES = ("continue", "abort")
PLACEMENTS = ("ownership", "dated")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
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
    secret: bool = False
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
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass
class LedgerConfig:
    """Ledger write policy."""
    max_gas_price: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="VERIGRAPH_MAX_GAS_PRICE",
        description="Refuse writes above this network price (0 disables the ceiling)",
        validator=lambda x: x >= 0,
    ))


@dataclass
class StorageConfig:
    """Storage backend selection and credentials."""
    backend: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="object-store",
        env_var="VERIGRAPH_STORAGE_BACKEND",
        description="Storage backend (pinning, object-store)",
        validator=lambda x: x in STORAGE_BACKENDS,
    ))
    api_root: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://api.pinata.cloud",
        env_var="VERIGRAPH_PINNING_API_ROOT",
        description="Pinning service API root",
    ))
    gateway: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://gateway.pinata.cloud",
        env_var="VERIGRAPH_PINNING_GATEWAY",
        description="Gateway used to read pinned content",
    ))
    api_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VERIGRAPH_PINNING_API_KEY",
        description="Pinning service API key",
        secret=True,
    ))
    api_secret: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VERIGRAPH_PINNING_API_SECRET",
        description="Pinning service API secret",
        secret=True,
    ))
    root_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="dist/objects",
        env_var="VERIGRAPH_OBJECT_STORE_DIR",
        description="Object-store root directory",
        validator=lambda x: bool(str(x).strip()),
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="VERIGRAPH_STORAGE_TIMEOUT",
        description="HTTP timeout for storage calls in seconds",
        validator=lambda x: x > 0,
    ))


@dataclass
class EncryptionConfig:
    """Encryption service settings."""
    enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="VERIGRAPH_ENCRYPTION_ENABLED",
        description="Encrypt items that request it",
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="VERIGRAPH_ENCRYPTION_TIMEOUT",
        description="Bounded wait for one encryption call in seconds",
        validator=lambda x: x > 0,
    ))


@dataclass
class PublishConfig:
    """Batch and placement policy."""
    batch_policy: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="continue",
        env_var="VERIGRAPH_BATCH_POLICY",
        description="On item failure: continue with the next item or abort the batch",
        validator=lambda x: x in BATCH_POLICIES,
    ))
    placement: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ownership",
        env_var="VERIGRAPH_PLACEMENT",
        description="Hierarchy placement policy (ownership, dated)",
        validator=lambda x: x in PLACEMENTS,
    ))
    license: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="VERIGRAPH_LICENSE",
        description="License node label used by dated placement",
    ))
    skip_hierarchy_on_noop: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="VERIGRAPH_SKIP_HIERARCHY_ON_NOOP",
        description="Do not resolve hierarchy for items that need no write",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="VERIGRAPH_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="VERIGRAPH_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class EngineConfig:
    """
    Root configuration of one publish engine.

    Aggregates all component configurations.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Convert to dictionary, masking secret values unless ``redact`` is False."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if redact and obj.secret and value:
                    return "***"
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Each instance owns an independent ``EngineConfig``.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self._config = config or EngineConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> EngineConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")
        if data:
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
                    raise ConfigError(f"Invalid config section: {path}")

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

        Example: manager.set("ledger.max_gas_price", 50)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("publish.batch_policy")
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
                        errors.append(f"{path}: validation failed for value {value!r}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        if self.get("storage.backend") == "pinning":
            if not self.get("storage.api_key") or not self.get("storage.api_secret"):
                errors.append("storage: pinning backend requires api_key and api_secret")
        if self.get("publish.placement") == "dated" and not self.get("publish.license"):
            errors.append("publish.license: dated placement requires a license label")
        return errors


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Build a fresh configuration, optionally from a YAML file."""
    manager = ConfigManager()
    if path is not None:
        manager.load_from_file(path)
    return manager.config
