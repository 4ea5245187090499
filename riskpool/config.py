"""
Risk Pool Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (RISKPOOL_*)
    2. Runtime overrides
    3. YAML files passed to ConfigManager.load_from_file
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import jsonschema
import yaml

T = TypeVar("T")

CONFIG_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "config.schema.json"


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
        """Get the current value.

        Raises ValidationError when the bound environment variable holds a
        value that does not convert or fails the validator.
        """
        if self.env_var and self.env_var in os.environ:
            value = self._coerce(os.environ[self.env_var])
            if self.validator and not self.validator(value):
                raise ValidationError(f"Invalid value for {self.env_var}: {value!r}")
            return value
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            try:
                return int(value)  # type: ignore
            except ValueError:
                raise ValidationError(
                    f"Invalid value for {self.env_var}: expected an integer, got {value!r}"
                ) from None
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


def _int_value(default: int, env_var: str, description: str, validator: Callable[[int], bool]) -> ConfigValue[int]:
    return ConfigValue(default=default, env_var=env_var, description=description, validator=validator)


@dataclass
class ClaimsConfig:
    """Configuration for the claim resolution state machine."""
    min_votes_required: ConfigValue[int] = field(default_factory=lambda: _int_value(
        3, "RISKPOOL_CLAIMS_MIN_VOTES",
        "Votes needed before the majority path may finalize a claim",
        lambda x: x > 0,
    ))
    claim_duration: ConfigValue[int] = field(default_factory=lambda: _int_value(
        144, "RISKPOOL_CLAIMS_DURATION",
        "Heights a claim stays open for voting",
        lambda x: x > 0,
    ))
    risk_threshold: ConfigValue[int] = field(default_factory=lambda: _int_value(
        65, "RISKPOOL_CLAIMS_RISK_THRESHOLD",
        "Fraud score at or above which a claim goes to manual review",
        lambda x: x >= 0,
    ))
    majority_consumes_policy: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="RISKPOOL_CLAIMS_MAJORITY_CONSUMES_POLICY",
        description="Deactivate the claimer's policy on majority-path approval",
    ))


@dataclass
class FraudConfig:
    """Weights for the fraud scoring engine."""
    base_score: ConfigValue[int] = field(default_factory=lambda: _int_value(
        50, "RISKPOOL_FRAUD_BASE_SCORE", "Score every claim starts from", lambda x: x >= 0,
    ))
    new_policy_window: ConfigValue[int] = field(default_factory=lambda: _int_value(
        1000, "RISKPOOL_FRAUD_NEW_POLICY_WINDOW",
        "Policy age (heights) below which the policy counts as new",
        lambda x: x >= 0,
    ))
    new_policy_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        15, "RISKPOOL_FRAUD_NEW_POLICY_RISK", "Risk added for new policies", lambda x: x >= 0,
    ))
    high_ratio_percent: ConfigValue[int] = field(default_factory=lambda: _int_value(
        80, "RISKPOOL_FRAUD_HIGH_RATIO_PERCENT",
        "Claim-to-coverage percentage above which the claim is high ratio",
        lambda x: 0 <= x <= 100,
    ))
    high_ratio_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        25, "RISKPOOL_FRAUD_HIGH_RATIO_RISK", "Risk added for high-ratio claims", lambda x: x >= 0,
    ))
    missing_evidence_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        25, "RISKPOOL_FRAUD_MISSING_EVIDENCE_RISK", "Risk added when no evidence is supplied", lambda x: x >= 0,
    ))
    min_signal_votes: ConfigValue[int] = field(default_factory=lambda: _int_value(
        3, "RISKPOOL_FRAUD_MIN_SIGNAL_VOTES", "Votes needed for a voting signal", lambda x: x >= 0,
    ))
    weak_signal_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        10, "RISKPOOL_FRAUD_WEAK_SIGNAL_RISK", "Risk for insufficient voting signal", lambda x: x >= 0,
    ))
    approval_signal_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        0, "RISKPOOL_FRAUD_APPROVAL_SIGNAL_RISK", "Risk for majority approval signal", lambda x: x >= 0,
    ))
    rejection_signal_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        25, "RISKPOOL_FRAUD_REJECTION_SIGNAL_RISK", "Risk for majority rejection signal", lambda x: x >= 0,
    ))
    mixed_signal_risk: ConfigValue[int] = field(default_factory=lambda: _int_value(
        15, "RISKPOOL_FRAUD_MIXED_SIGNAL_RISK", "Risk for a split vote", lambda x: x >= 0,
    ))


@dataclass
class PoolsConfig:
    """Configuration for pool administration."""
    max_premium_rate_bps: ConfigValue[int] = field(default_factory=lambda: _int_value(
        10000, "RISKPOOL_POOLS_MAX_PREMIUM_BPS",
        "Highest premium rate a pool may charge (basis points)",
        lambda x: 0 <= x <= 10000,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="RISKPOOL_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="RISKPOOL_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RiskPoolConfig:
    """
    Root configuration for the ledger core.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    claims: ClaimsConfig = field(default_factory=ClaimsConfig)
    fraud: FraudConfig = field(default_factory=FraudConfig)
    pools: PoolsConfig = field(default_factory=PoolsConfig)
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
        return yaml.dump(self.to_dict(), default_flow_style=False)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply nested dictionary values onto this configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if hasattr(config_obj, key):
                    attr = getattr(config_obj, key)
                    if isinstance(attr, ConfigValue):
                        attr.set(value)
                    elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                        apply_to_config(attr, value)

        apply_to_config(self, data)

    def validate(self) -> List[str]:
        """
        Validate all configuration values, environment overrides included.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                except ValidationError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self)
        return errors


def load_config_schema() -> Dict[str, Any]:
    return json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))


def validate_config_document(data: Any, source: str = "<memory>") -> None:
    """Check a raw configuration document against the bundled JSON schema."""
    validator = jsonschema.Draft202012Validator(load_config_schema())
    errs = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errs:
        location = ".".join(str(p) for p in errs[0].path) or "<root>"
        raise ValidationError(f"invalid riskpool config: {source}: {location}: {errs[0].message}")


def load_config_file(path: Union[str, Path], config: Optional[RiskPoolConfig] = None) -> RiskPoolConfig:
    """Load a YAML file into a (new or given) configuration."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    config = config or RiskPoolConfig()
    if data:
        validate_config_document(data, str(path))
        config.apply_dict(data)
    return config


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

        self._config = RiskPoolConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[RiskPoolConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the singleton (tests and embedding hosts)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> RiskPoolConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        load_config_file(path, self._config)
        self._config_paths.append(Path(path))

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("claims.min_votes_required", 5)
        """
        parts = path.split(".")
        obj: Any = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("claims.risk_threshold")
        """
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[RiskPoolConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                load_config_file(path, self._config)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """Validate the managed configuration; returns list of errors."""
        return self._config.validate()

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


def get_config() -> RiskPoolConfig:
    """Get the current process-wide configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
