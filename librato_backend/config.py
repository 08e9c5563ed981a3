"""Configuration module — frozen dataclass loaded from YAML, env vars and CLI args."""

import importlib
import logging
import os
import re
import socket
from dataclasses import dataclass, replace
from typing import Callable, Optional
from urllib.parse import urlsplit

import yaml

logger = logging.getLogger(__name__)

DEFAULT_API = "https://metrics-api.librato.com"
PROXY_SCHEMES = ("http", "https", "socks5")

# statsd-style option name -> LibratoConfig field
_YAML_KEYS = {
    "api": "api",
    "email": "email",
    "token": "token",
    "source": "source",
    "sourceRegex": "source_regex",
    "measureName": "measure_name",
    "measureSource": "measure_source",
    "snapTime": "snap_time",
    "countersAsGauges": "counters_as_gauges",
    "skipInternalMetrics": "skip_internal_metrics",
    "retryDelaySecs": "retry_delay_secs",
    "postTimeoutSecs": "post_timeout_secs",
    "batchSize": "batch_size",
    "alwaysSuffixPercentile": "always_suffix_percentile",
}


class ConfigError(Exception):
    """Raised when the backend cannot be initialized from its configuration."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class LibratoConfig:
    email: str = ""
    token: str = ""
    api: str = DEFAULT_API
    source: Optional[str] = None
    source_regex: Optional[str] = None
    measure_name: Optional[Callable[[str], str]] = None
    measure_source: Optional[Callable[[str], str]] = None
    snap_time: Optional[int] = None
    flush_interval: int = 10000  # milliseconds, as statsd configures it
    counters_as_gauges: bool = True
    skip_internal_metrics: bool = True
    retry_delay_secs: float = 5.0
    post_timeout_secs: float = 4.0
    batch_size: int = 500
    always_suffix_percentile: bool = False
    proxy_uri: Optional[str] = None
    debug: bool = False

    @property
    def measure_time_interval(self) -> int:
        """Interval measure times are aligned to; defaults to the flush interval."""
        if self.snap_time:
            return int(self.snap_time)
        return int(self.flush_interval // 1000)


def load_yaml_config(path: str | None) -> dict:
    """Load a statsd-style YAML config file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


def _from_yaml(data: dict) -> dict:
    """Flatten the statsd layout (top-level flushInterval/debug plus a
    nested ``librato`` hash) into LibratoConfig keyword arguments."""
    kwargs: dict = {}
    if data.get("flushInterval") is not None:
        kwargs["flush_interval"] = int(data["flushInterval"])
    if data.get("debug") is not None:
        kwargs["debug"] = bool(data["debug"])

    section = data.get("librato") or {}
    for key, field_name in _YAML_KEYS.items():
        if section.get(key) is not None:
            kwargs[field_name] = section[key]

    proxy = section.get("proxy") or {}
    if proxy.get("uri"):
        kwargs["proxy_uri"] = proxy["uri"]
    return kwargs


def _from_env() -> dict:
    """Collect overrides from LIBRATO_* environment variables."""
    kwargs: dict = {}
    env = os.environ

    for name, field_name in (
        ("LIBRATO_API", "api"),
        ("LIBRATO_EMAIL", "email"),
        ("LIBRATO_TOKEN", "token"),
        ("LIBRATO_SOURCE", "source"),
        ("LIBRATO_SOURCE_REGEX", "source_regex"),
        ("LIBRATO_PROXY_URI", "proxy_uri"),
    ):
        if name in env:
            kwargs[field_name] = env[name]

    for name, field_name, convert in (
        ("LIBRATO_SNAP_TIME", "snap_time", int),
        ("LIBRATO_BATCH_SIZE", "batch_size", int),
        ("FLUSH_INTERVAL", "flush_interval", int),
        ("LIBRATO_RETRY_DELAY_SECS", "retry_delay_secs", float),
        ("LIBRATO_POST_TIMEOUT_SECS", "post_timeout_secs", float),
    ):
        if name in env:
            try:
                kwargs[field_name] = convert(env[name])
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {name}: {env[name]!r}") from exc

    for name, field_name in (
        ("LIBRATO_COUNTERS_AS_GAUGES", "counters_as_gauges"),
        ("LIBRATO_SKIP_INTERNAL_METRICS", "skip_internal_metrics"),
        ("LIBRATO_ALWAYS_SUFFIX_PERCENTILE", "always_suffix_percentile"),
        ("LIBRATO_DEBUG", "debug"),
    ):
        if name in env:
            kwargs[field_name] = _parse_bool(env[name])

    return kwargs


def resolve_callable(value):
    """Return *value* if callable, otherwise import a ``module:attr`` path."""
    if value is None or callable(value):
        return value
    module_name, _, attr = str(value).partition(":")
    if not attr:
        raise ConfigError(f"Measure function {value!r} must look like 'module:function'")
    try:
        func = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot import measure function {value!r}: {exc}") from exc
    if not callable(func):
        raise ConfigError(f"Measure function {value!r} is not callable")
    return func


def strip_regex_slashes(pattern: str) -> str:
    """Accept JavaScript-style ``/pattern/`` literals as well as bare patterns."""
    if len(pattern) > 2 and pattern[0] == "/" and pattern[-1] == "/":
        return pattern[1:-1]
    return pattern


def validate_config(config: LibratoConfig) -> LibratoConfig:
    """Check a config for initialization errors and fill derived defaults.

    Raises ConfigError when the backend cannot start.
    """
    if not config.email or not config.token:
        raise ConfigError("Invalid configuration for Librato Metrics backend: email and token are required")

    if config.batch_size <= 0:
        raise ConfigError(f"batch_size must be positive, got {config.batch_size}")
    if config.post_timeout_secs <= 0:
        raise ConfigError(f"post_timeout_secs must be positive, got {config.post_timeout_secs}")
    if config.retry_delay_secs < 0:
        raise ConfigError(f"retry_delay_secs must not be negative, got {config.retry_delay_secs}")

    if config.source_regex:
        try:
            re.compile(strip_regex_slashes(config.source_regex))
        except re.error as exc:
            raise ConfigError(f"Invalid source regex {config.source_regex!r}: {exc}") from exc

    if (config.measure_name is None) != (config.measure_source is None):
        raise ConfigError("measure_name and measure_source must be configured together")

    if config.proxy_uri:
        scheme = urlsplit(config.proxy_uri).scheme
        if scheme not in PROXY_SCHEMES:
            raise ConfigError(
                f"Unsupported proxy scheme {scheme!r} in {config.proxy_uri!r}; "
                f"expected one of {', '.join(PROXY_SCHEMES)}"
            )

    return replace(
        config,
        measure_name=resolve_callable(config.measure_name),
        measure_source=resolve_callable(config.measure_source),
        source=config.source or socket.gethostname(),
    )


def load_config(yaml_path: str | None = None, overrides: dict | None = None) -> LibratoConfig:
    """Build LibratoConfig from defaults <- YAML <- env vars <- overrides.

    *overrides* normally carries parsed CLI flags; None values are ignored.
    """
    kwargs = _from_yaml(load_yaml_config(yaml_path))
    kwargs.update(_from_env())
    if overrides:
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
    return validate_config(LibratoConfig(**kwargs))
