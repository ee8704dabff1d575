"""Configuration for latencykit.

``LatencyConfig`` is the single configuration surface consumed at startup:
bucket layout, export schedule, retry policy and exposition options. It can
be built directly, from a dictionary, from environment variables or from a
JSON/YAML file.

Configuration Precedence (highest to lowest):
    1. Explicit parameters
    2. Environment variables
    3. Configuration file
    4. Default values

Example:
    >>> from latencykit.config import load_config
    >>> config = load_config("latencykit.yaml", export_interval_seconds=5.0)
    >>> layout = config.bucket_layout()
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from latencykit.exceptions import ConfigurationError, InvalidConfigValueError, MissingConfigError


if TYPE_CHECKING:
    from latencykit.aggregator import BucketLayout
    from latencykit.retry import RetryConfig


# =============================================================================
# Constants
# =============================================================================

DEFAULT_ENV_PREFIX = "LATENCYKIT"
EXPOSITION_FORMATS = ("text", "json")
RETRY_STRATEGIES = ("exponential", "linear", "fixed")


# =============================================================================
# Environment Variable Utilities
# =============================================================================


class EnvReader:
    """Typed accessors for prefixed environment variables.

    Example:
        >>> reader = EnvReader(prefix="LATENCYKIT")
        >>> reader.get_int("BUCKET_COUNT", default=160)
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    def _make_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}_{name}"
        return name

    def get(self, name: str, default: str | None = None) -> str | None:
        return os.environ.get(self._make_key(name), default)

    def get_required(self, name: str) -> str:
        """Get a required variable.

        Raises:
            MissingConfigError: If the variable is not set.
        """
        key = self._make_key(name)
        value = os.environ.get(key)
        if value is None:
            raise MissingConfigError(f"Missing environment variable {key}", config_key=key)
        return value

    def get_int(self, name: str, default: int | None = None) -> int | None:
        value = self.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid integer value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="integer",
                cause=e,
            ) from e

    def get_float(self, name: str, default: float | None = None) -> float | None:
        value = self.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid float value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="float",
                cause=e,
            ) from e

    def get_bool(self, name: str, default: bool | None = None) -> bool | None:
        """Get a boolean variable.

        Truthy values: "1", "true", "yes", "on" (case-insensitive)
        Falsy values: "0", "false", "no", "off" (case-insensitive)
        """
        value = self.get(name)
        if value is None:
            return default
        lower_value = value.lower()
        if lower_value in ("1", "true", "yes", "on"):
            return True
        if lower_value in ("0", "false", "no", "off"):
            return False
        raise InvalidConfigValueError(
            f"Invalid boolean value for {self._make_key(name)}",
            config_key=self._make_key(name),
            value=value,
            expected="boolean (1/0, true/false, yes/no, on/off)",
        )

    def get_list(
        self,
        name: str,
        separator: str = ",",
        default: list[str] | None = None,
    ) -> list[str] | None:
        """Get a separated list. An empty string yields an empty list."""
        value = self.get(name)
        if value is None:
            return default
        if not value.strip():
            return []
        return [item.strip() for item in value.split(separator)]


# =============================================================================
# File Configuration Utilities
# =============================================================================


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml
    except ImportError as e:
        raise ConfigurationError(
            "PyYAML is required for YAML configuration files. "
            "Install with: pip install pyyaml",
            cause=e,
        ) from e

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Failed to parse JSON configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def load_config_file(path: Path | str) -> dict[str, Any]:
    """Load a JSON or YAML configuration file into a dictionary.

    A top-level ``latencykit`` section is unwrapped if present, so the
    settings can live inside a larger application config file.

    Raises:
        ConfigurationError: If the file is missing, unparsable, or has an
            unsupported extension.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            details={"path": str(path)},
        )

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = _load_yaml(path)
    elif suffix == ".json":
        data = _load_json(path)
    else:
        raise ConfigurationError(
            f"Unsupported configuration file format: {suffix}",
            details={"path": str(path), "suffix": suffix},
        )

    section = data.get("latencykit")
    return section if isinstance(section, dict) else data


# =============================================================================
# Latency Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class LatencyConfig:
    """Startup configuration for instrumentation, aggregation and export.

    Attributes:
        base: Bucket growth factor; controls quantile relative error.
        bucket_count: Number of buckets; controls covered range.
        resolution_ns: Smallest distinguished duration in nanoseconds.
        export_interval_seconds: Push cycle period; bounds staleness.
        retry_attempts: Attempts per push cycle before the batch is dropped.
        retry_base_delay_seconds: First backoff delay.
        retry_max_delay_seconds: Backoff cap.
        retry_strategy: Backoff growth, one of ``"exponential"``, ``"linear"`` or
            ``"fixed"``.
        retry_jitter: Whether backoff delays get up to 10% random jitter.
        quantiles: Quantiles included in the exposition.
        include_buckets: Whether raw bucket boundaries are exported.
        label_keys: Which label keys are part of the aggregator key.
            ``None`` keeps every label, a tuple keeps only those keys and an
            empty tuple aggregates by name only.
        exposition_format: ``"text"`` or ``"json"``.
        push_endpoint: URL the HTTP push transport posts to.
        push_timeout_seconds: Timeout for one push request.

    Example:
        >>> config = LatencyConfig(base=1.1, bucket_count=200)
        >>> config.with_export(interval_seconds=5.0).export_interval_seconds
        5.0
    """

    base: float = 1.15
    bucket_count: int = 160
    resolution_ns: int = 1_000
    export_interval_seconds: float = 15.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 5.0
    retry_strategy: str = "exponential"
    retry_jitter: bool = True
    quantiles: tuple[float, ...] = (0.5, 0.9, 0.99)
    include_buckets: bool = False
    label_keys: tuple[str, ...] | None = None
    exposition_format: str = "text"
    push_endpoint: str | None = None
    push_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.base > 1.0:
            raise InvalidConfigValueError(
                "base must be greater than 1",
                config_key="base",
                value=self.base,
                expected="> 1.0",
            )
        if self.bucket_count < 1:
            raise InvalidConfigValueError(
                "bucket_count must be at least 1",
                config_key="bucket_count",
                value=self.bucket_count,
                expected=">= 1",
            )
        if self.resolution_ns < 1:
            raise InvalidConfigValueError(
                "resolution_ns must be at least 1",
                config_key="resolution_ns",
                value=self.resolution_ns,
                expected=">= 1",
            )
        if self.export_interval_seconds <= 0:
            raise InvalidConfigValueError(
                "export_interval_seconds must be positive",
                config_key="export_interval_seconds",
                value=self.export_interval_seconds,
                expected="> 0",
            )
        if self.retry_attempts < 1:
            raise InvalidConfigValueError(
                "retry_attempts must be at least 1",
                config_key="retry_attempts",
                value=self.retry_attempts,
                expected=">= 1",
            )
        if self.retry_base_delay_seconds < 0:
            raise InvalidConfigValueError(
                "retry_base_delay_seconds must be non-negative",
                config_key="retry_base_delay_seconds",
                value=self.retry_base_delay_seconds,
                expected=">= 0",
            )
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise InvalidConfigValueError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds",
                config_key="retry_max_delay_seconds",
                value=self.retry_max_delay_seconds,
                expected=f">= {self.retry_base_delay_seconds}",
            )
        if self.retry_strategy not in RETRY_STRATEGIES:
            raise InvalidConfigValueError(
                f"Unknown retry strategy: {self.retry_strategy}",
                config_key="retry_strategy",
                value=self.retry_strategy,
                expected=", ".join(RETRY_STRATEGIES),
            )
        for q in self.quantiles:
            if not 0.0 <= q <= 1.0:
                raise InvalidConfigValueError(
                    "quantiles must be between 0 and 1",
                    config_key="quantiles",
                    value=self.quantiles,
                    expected="each value in [0, 1]",
                )
        if self.exposition_format not in EXPOSITION_FORMATS:
            raise InvalidConfigValueError(
                f"Unknown exposition format: {self.exposition_format}",
                config_key="exposition_format",
                value=self.exposition_format,
                expected=" or ".join(EXPOSITION_FORMATS),
            )
        if self.push_timeout_seconds <= 0:
            raise InvalidConfigValueError(
                "push_timeout_seconds must be positive",
                config_key="push_timeout_seconds",
                value=self.push_timeout_seconds,
                expected="> 0",
            )

    # -------------------------------------------------------------------------
    # Builders
    # -------------------------------------------------------------------------

    def with_layout(
        self,
        base: float | None = None,
        bucket_count: int | None = None,
        resolution_ns: int | None = None,
    ) -> LatencyConfig:
        return replace(
            self,
            base=base if base is not None else self.base,
            bucket_count=bucket_count if bucket_count is not None else self.bucket_count,
            resolution_ns=resolution_ns if resolution_ns is not None else self.resolution_ns,
        )

    def with_export(
        self,
        interval_seconds: float | None = None,
        endpoint: str | None = None,
        exposition_format: str | None = None,
    ) -> LatencyConfig:
        return replace(
            self,
            export_interval_seconds=interval_seconds
            if interval_seconds is not None
            else self.export_interval_seconds,
            push_endpoint=endpoint if endpoint is not None else self.push_endpoint,
            exposition_format=exposition_format or self.exposition_format,
        )

    def with_retry(
        self,
        attempts: int | None = None,
        base_delay_seconds: float | None = None,
        max_delay_seconds: float | None = None,
        strategy: str | None = None,
        jitter: bool | None = None,
    ) -> LatencyConfig:
        return replace(
            self,
            retry_attempts=attempts if attempts is not None else self.retry_attempts,
            retry_base_delay_seconds=base_delay_seconds
            if base_delay_seconds is not None
            else self.retry_base_delay_seconds,
            retry_max_delay_seconds=max_delay_seconds
            if max_delay_seconds is not None
            else self.retry_max_delay_seconds,
            retry_strategy=strategy or self.retry_strategy,
            retry_jitter=jitter if jitter is not None else self.retry_jitter,
        )

    def with_quantiles(self, *quantiles: float) -> LatencyConfig:
        return replace(self, quantiles=tuple(quantiles))

    def with_label_keys(self, label_keys: tuple[str, ...] | None) -> LatencyConfig:
        """Select which labels form the aggregator key (``None`` keeps all)."""
        return replace(self, label_keys=label_keys)

    def with_buckets(self, include: bool = True) -> LatencyConfig:
        return replace(self, include_buckets=include)

    # -------------------------------------------------------------------------
    # Derived objects
    # -------------------------------------------------------------------------

    def bucket_layout(self) -> BucketLayout:
        """Bucket layout described by this configuration."""
        from latencykit.aggregator import BucketLayout

        return BucketLayout(
            base=self.base,
            bucket_count=self.bucket_count,
            resolution_ns=self.resolution_ns,
        )

    def retry_config(self) -> RetryConfig:
        """Retry policy for push export cycles."""
        from latencykit.retry import RetryConfig, RetryStrategy

        return RetryConfig(
            max_attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            strategy=RetryStrategy[self.retry_strategy.upper()],
            jitter=self.retry_jitter,
        )

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "base": self.base,
            "bucket_count": self.bucket_count,
            "resolution_ns": self.resolution_ns,
            "export_interval_seconds": self.export_interval_seconds,
            "retry_attempts": self.retry_attempts,
            "retry_base_delay_seconds": self.retry_base_delay_seconds,
            "retry_max_delay_seconds": self.retry_max_delay_seconds,
            "retry_strategy": self.retry_strategy,
            "retry_jitter": self.retry_jitter,
            "quantiles": list(self.quantiles),
            "include_buckets": self.include_buckets,
            "label_keys": list(self.label_keys) if self.label_keys is not None else None,
            "exposition_format": self.exposition_format,
            "push_endpoint": self.push_endpoint,
            "push_timeout_seconds": self.push_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create a config from a dictionary; unknown keys are rejected.

        Raises:
            ConfigurationError: If ``data`` contains unknown keys.
            InvalidConfigValueError: If a value fails validation.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                details={"unknown_keys": unknown},
            )

        values = dict(data)
        if "quantiles" in values:
            values["quantiles"] = tuple(float(q) for q in values["quantiles"])
        if values.get("label_keys") is not None:
            values["label_keys"] = tuple(values["label_keys"])
        return cls(**values)

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> Self:
        """Create configuration from environment variables.

        Environment Variables:
            {PREFIX}_BASE, {PREFIX}_BUCKET_COUNT, {PREFIX}_RESOLUTION_NS,
            {PREFIX}_EXPORT_INTERVAL_SECONDS, {PREFIX}_RETRY_ATTEMPTS,
            {PREFIX}_RETRY_BASE_DELAY_SECONDS, {PREFIX}_RETRY_MAX_DELAY_SECONDS,
            {PREFIX}_RETRY_STRATEGY, {PREFIX}_RETRY_JITTER,
            {PREFIX}_QUANTILES (comma-separated), {PREFIX}_INCLUDE_BUCKETS,
            {PREFIX}_LABEL_KEYS (comma-separated, empty for name only),
            {PREFIX}_EXPOSITION_FORMAT, {PREFIX}_PUSH_ENDPOINT,
            {PREFIX}_PUSH_TIMEOUT_SECONDS
        """
        return cls.from_dict(env_overrides(prefix))

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        """Create configuration from a JSON or YAML file.

        Raises:
            ConfigurationError: If the file cannot be loaded or has unknown keys.
        """
        return cls.from_dict(load_config_file(path))


def env_overrides(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """Read only the settings that are actually present in the environment."""
    env = EnvReader(prefix)
    overrides: dict[str, Any] = {}

    for name in ("base", "export_interval_seconds", "retry_base_delay_seconds",
                 "retry_max_delay_seconds", "push_timeout_seconds"):
        value = env.get_float(name.upper())
        if value is not None:
            overrides[name] = value

    for name in ("bucket_count", "resolution_ns", "retry_attempts"):
        value = env.get_int(name.upper())
        if value is not None:
            overrides[name] = value

    for name in ("include_buckets", "retry_jitter"):
        flag = env.get_bool(name.upper())
        if flag is not None:
            overrides[name] = flag

    strategy = env.get("RETRY_STRATEGY")
    if strategy is not None:
        overrides["retry_strategy"] = strategy.strip().lower()

    quantiles = env.get_list("QUANTILES")
    if quantiles is not None:
        try:
            overrides["quantiles"] = tuple(float(q) for q in quantiles)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid quantile list for {prefix}_QUANTILES",
                config_key=f"{prefix}_QUANTILES",
                value=env.get("QUANTILES"),
                expected="comma-separated floats",
                cause=e,
            ) from e

    label_keys = env.get_list("LABEL_KEYS")
    if label_keys is not None:
        overrides["label_keys"] = tuple(label_keys)

    for name in ("exposition_format", "push_endpoint"):
        value = env.get(name.upper())
        if value is not None:
            overrides[name] = value

    return overrides


def load_config(
    path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    **overrides: Any,
) -> LatencyConfig:
    """Load configuration with precedence explicit > env > file > defaults.

    Args:
        path: Optional JSON or YAML file.
        env_prefix: Environment variable prefix.
        **overrides: Explicit settings, highest precedence.

    Returns:
        Merged LatencyConfig.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(load_config_file(path))
    data.update(env_overrides(env_prefix))
    data.update(overrides)
    return LatencyConfig.from_dict(data)


# Preset configurations
DEFAULT_LATENCY_CONFIG = LatencyConfig()

HIGH_PRECISION_LATENCY_CONFIG = LatencyConfig(
    base=1.02,
    bucket_count=1_200,
    quantiles=(0.5, 0.9, 0.95, 0.99, 0.999),
)

COARSE_LATENCY_CONFIG = LatencyConfig(
    base=1.5,
    bucket_count=60,
    quantiles=(0.5, 0.99),
    export_interval_seconds=60.0,
)
