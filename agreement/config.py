"""
Agreement Configuration System

Configuration with YAML files, environment variables, validation and
runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (AGREEMENT_*)
    2. Runtime overrides
    3. Config files (./agreement.yaml, ./config/agreement.yaml,
       ~/.agreement/config.yaml)
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from agreement.hardening import AgreementError, Validators

T = TypeVar("T")

_log = logging.getLogger("agreement.config")


class ConfigError(AgreementError):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

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

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


_KEY_PREFIX_RE = re.compile(r"^[A-Za-z0-9_]{1,32}$")
_ACCOUNT_NAME_RE = re.compile(r"^[a-z_0-9]{1,32}$")


@dataclass
class LedgerConfig:
    """Configuration for the ledger collaborator."""
    account_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="clone",
        env_var="AGREEMENT_LEDGER_ACCOUNT",
        description="Ledger account shared by all replicas of a domain",
        validator=lambda x: bool(_ACCOUNT_NAME_RE.match(x)),
    ))
    query_timeout_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5000,
        env_var="AGREEMENT_LEDGER_TIMEOUT_MS",
        description="Bounded wait for ledger commands and queries",
        validator=lambda x: x > 0,
    ))
    max_retry_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="AGREEMENT_LEDGER_MAX_RETRIES",
        description="Attempts per ledger call when the ledger is unavailable",
        validator=lambda x: x >= 1,
    ))
    retry_base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="AGREEMENT_LEDGER_RETRY_DELAY",
        description="Base delay between ledger retries",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ProofConfig:
    """Configuration for proof tokens."""
    key_prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="pk_",
        env_var="AGREEMENT_PROOF_KEY_PREFIX",
        description="Prefix of proof keys; must conform to [A-Za-z0-9_]",
        validator=lambda x: bool(_KEY_PREFIX_RE.match(x)),
    ))
    token_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=16,
        env_var="AGREEMENT_PROOF_TOKEN_BYTES",
        description="Random bytes per proof key (hex encoded)",
        validator=lambda x: 8 <= x <= 30,
    ))


@dataclass
class AwaitConfig:
    """Configuration for waiting on proofs that are not yet visible."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="AGREEMENT_AWAIT_MAX_ATTEMPTS",
        description="Tests attempted while the proof is not yet in the ledger",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="AGREEMENT_AWAIT_DELAY",
        description="Base backoff delay between attempts",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="AGREEMENT_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="AGREEMENT_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    enable_tracing: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="AGREEMENT_TRACING_ENABLED",
        description="Export tracing spans",
    ))


@dataclass
class AgreementConfig:
    """
    Root configuration.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    proof: ProofConfig = field(default_factory=ProofConfig)
    agreement: AwaitConfig = field(default_factory=AwaitConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
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

        self._config = AgreementConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[AgreementConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> AgreementConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("agreement.yaml"),
            Path("config/agreement.yaml"),
            Path.home() / ".agreement" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    _log.warning("skipping config file %s: %s", path, e)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("proof.key_prefix", "pk_")
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """Get a configuration value by path."""
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[AgreementConfig], None]) -> None:
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop runtime overrides and loaded files, back to defaults."""
        self._config = AgreementConfig()
        self._config_paths = []
        self._watchers = []

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
                except ValueError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        prefix = self._config.proof.key_prefix.get()
        nbytes = self._config.proof.token_bytes.get()
        shape = Validators.validate_token_shape(prefix, nbytes)
        errors.extend(f"proof: {e.message}" for e in shape.errors)
        return errors


def get_config() -> AgreementConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
