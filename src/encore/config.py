"""Resilience configuration loading and validation.

Reads an ``encore.toml`` file, resolves ``${VAR}`` references from the
environment, and returns a validated EncoreConfig dataclass holding default
retry/circuit-breaker settings plus per-dependency overrides.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from encore.reliability.circuit_breaker import CircuitBreakerConfig
from encore.reliability.retry import RetryPolicy

# Well-known dependency names used by the chat backend's call sites.
DATABASE = "database-operation"
LLM = "llm-chat"
MUSIC_API = "music-api"

# Built-in per-dependency overrides, applied on top of the [encore.retry] and
# [encore.circuit_breaker] defaults and below any [encore.dependencies.*] entry.
BUILTIN_DEPENDENCY_OVERRIDES: dict[str, dict[str, dict[str, Any]]] = {
    DATABASE: {
        "retry": {"max_attempts": 3, "initial_delay_seconds": 0.5, "max_delay_seconds": 5.0},
        "circuit_breaker": {"failure_threshold": 3, "reset_timeout_seconds": 30.0},
    },
    LLM: {
        "retry": {"max_attempts": 2, "initial_delay_seconds": 1.0, "max_delay_seconds": 8.0},
        "circuit_breaker": {"failure_threshold": 5, "reset_timeout_seconds": 60.0},
    },
    MUSIC_API: {
        "retry": {"max_attempts": 3, "initial_delay_seconds": 1.0, "max_delay_seconds": 10.0},
        "circuit_breaker": {"failure_threshold": 5, "reset_timeout_seconds": 60.0},
    },
}

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [encore.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass(frozen=True)
class DependencyProfile:
    """Effective retry policy and breaker config for one dependency name."""

    name: str
    retry_policy: RetryPolicy
    circuit_breaker: CircuitBreakerConfig


@dataclass
class EncoreConfig:
    """Parsed configuration."""

    environment: str = "development"
    service_name: str = "encore"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    retry: dict[str, Any] = field(default_factory=dict)
    circuit_breaker: dict[str, Any] = field(default_factory=dict)
    dependencies: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)

    @property
    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.retry)

    @property
    def default_circuit_breaker(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig.from_config(self.circuit_breaker)

    def profile_for(self, name: str) -> DependencyProfile:
        """Merge defaults, built-in overrides, and configured overrides for *name*."""
        builtin = BUILTIN_DEPENDENCY_OVERRIDES.get(name, {})
        configured = self.dependencies.get(name, {})
        retry = {**self.retry, **builtin.get("retry", {}), **configured.get("retry", {})}
        breaker = {
            **self.circuit_breaker,
            **builtin.get("circuit_breaker", {}),
            **configured.get("circuit_breaker", {}),
        }
        return DependencyProfile(
            name=name,
            retry_policy=RetryPolicy.from_config(retry),
            circuit_breaker=CircuitBreakerConfig.from_config(breaker),
        )

    def dependency_names(self) -> list[str]:
        names = list(BUILTIN_DEPENDENCY_OVERRIDES)
        names.extend(n for n in self.dependencies if n not in BUILTIN_DEPENDENCY_OVERRIDES)
        return names


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _coerce_numbers(section: dict[str, Any], where: str) -> dict[str, Any]:
    """Env-var substitution yields strings; turn numeric strings back into numbers."""
    out: dict[str, Any] = {}
    for key, value in section.items():
        if isinstance(value, str):
            try:
                value = float(value) if any(c in value for c in ".eE") else int(value)
            except ValueError as exc:
                raise ConfigError(f"{where}.{key} must be numeric, got {value!r}") from exc
        out[key] = value
    return out


def _table(parent: dict[str, Any], key: str, where: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{where}] must be a table")
    return value


def _parse_dependencies(encore_section: dict[str, Any]) -> dict[str, dict[str, dict[str, Any]]]:
    raw = _table(encore_section, "dependencies", "encore.dependencies")
    parsed: dict[str, dict[str, dict[str, Any]]] = {}
    for name, entry in raw.items():
        where = f"encore.dependencies.{name}"
        if not isinstance(entry, dict):
            raise ConfigError(f"[{where}] must be a table")
        unknown = set(entry) - {"retry", "circuit_breaker"}
        if unknown:
            raise ConfigError(f"Unknown key(s) in [{where}]: {', '.join(sorted(unknown))}")
        parsed[name] = {
            "retry": _coerce_numbers(_table(entry, "retry", f"{where}.retry"), f"{where}.retry"),
            "circuit_breaker": _coerce_numbers(
                _table(entry, "circuit_breaker", f"{where}.circuit_breaker"),
                f"{where}.circuit_breaker",
            ),
        }
    return parsed


def load_config(path: Path | None = None) -> EncoreConfig:
    """Load and validate an ``encore.toml`` file.

    Parameters
    ----------
    path:
        Path to the TOML file.  ``None`` returns the built-in defaults.

    Returns
    -------
    EncoreConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        return EncoreConfig()

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    data = resolve_env_vars(data)

    encore_section = data.get("encore")
    if not isinstance(encore_section, dict):
        raise ConfigError("Missing [encore] section in config")

    # --- [encore.logging] ---
    logging_section = _table(encore_section, "logging", "encore.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid encore.logging.format: {log_format!r}. Expected text or json.")
    log_file = logging_section.get("file")

    config = EncoreConfig(
        environment=str(encore_section.get("environment", "development")),
        service_name=str(encore_section.get("service_name", "encore")),
        logging=LoggingConfig(
            level=str(logging_section.get("level", "INFO")).upper(),
            format=log_format,
            file=str(log_file) if log_file else None,
        ),
        retry=_coerce_numbers(_table(encore_section, "retry", "encore.retry"), "encore.retry"),
        circuit_breaker=_coerce_numbers(
            _table(encore_section, "circuit_breaker", "encore.circuit_breaker"),
            "encore.circuit_breaker",
        ),
        dependencies=_parse_dependencies(encore_section),
    )

    # Surface invalid numeric values now rather than at first call.
    try:
        RetryPolicy.from_config(config.retry)
        CircuitBreakerConfig.from_config(config.circuit_breaker)
        for name in config.dependency_names():
            config.profile_for(name)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid resilience settings in {path}: {exc}") from exc

    return config
