"""
Configuration for CSV Job Orchestrator

Settings come from, in increasing precedence: defaults, a YAML file,
``CJO_*`` environment variables and explicit overrides.
"""

import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..core.exceptions import ConfigurationError

ENV_PREFIX = "CJO_"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class OrchestratorConfig:
    """Recognized orchestrator options."""

    # Chunking and dispatch
    max_chunk_size: int = 1000
    max_concurrent_chunks: int = 10
    chunk_timeout: float = 900.0

    # Locking
    lock_lease_duration: float = 300.0
    lock_acquire_attempts: int = 1

    # Retry
    max_retry_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    backoff_jitter: float = 0.3

    # Retention
    job_ttl: float = 30 * 24 * 3600.0
    audit_retention_days: float = 90.0

    # Infrastructure
    database_url: Optional[str] = None
    log_level: str = "INFO"

    @property
    def lease_renew_interval(self) -> float:
        """Renew well before the lease runs out."""
        return self.lock_lease_duration / 3

    def validate(self) -> "OrchestratorConfig":
        """Raise ConfigurationError for out-of-range values."""
        positive = {
            "max_chunk_size": self.max_chunk_size,
            "max_concurrent_chunks": self.max_concurrent_chunks,
            "chunk_timeout": self.chunk_timeout,
            "lock_lease_duration": self.lock_lease_duration,
            "lock_acquire_attempts": self.lock_acquire_attempts,
            "max_retry_attempts": self.max_retry_attempts,
            "job_ttl": self.job_ttl,
            "audit_retention_days": self.audit_retention_days,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ConfigurationError(key, f"must be positive, got {value}")

        if self.backoff_base < 0:
            raise ConfigurationError("backoff_base", "must not be negative")
        if self.backoff_max < self.backoff_base:
            raise ConfigurationError("backoff_max", "must be at least backoff_base")
        if not 0 <= self.backoff_jitter <= 1:
            raise ConfigurationError("backoff_jitter", "must be between 0 and 1")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError("log_level", f"must be one of {', '.join(_LOG_LEVELS)}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        """Build a config from a mapping, coercing values to the field types."""
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            if key not in known:
                raise ConfigurationError(key, "unknown option")
            values[key] = _coerce(key, known[key].type, value)
        return cls(**values).validate()

    @classmethod
    def env_overrides(cls, environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Collect ``CJO_*`` variables as lower-case option names."""
        environ = os.environ if environ is None else environ
        names = {f.name for f in fields(cls)}
        found = {}
        for key, value in environ.items():
            if key.startswith(ENV_PREFIX):
                name = key[len(ENV_PREFIX):].lower()
                if name in names:
                    found[name] = value
        return found


def _coerce(key: str, field_type: Any, value: Any) -> Any:
    if value is None:
        return None
    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", "")
    try:
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(key, f"expected {type_name}, got {value!r}")
    return str(value)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
    **overrides
) -> OrchestratorConfig:
    """
    Load configuration.

    Args:
        config_path: Optional YAML file with option names as keys
        environ: Environment mapping (defaults to ``os.environ``)
        **overrides: Explicit values; ``None`` values are ignored

    Returns:
        Validated OrchestratorConfig
    """
    data: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError("config_path", f"{path} does not exist")
        with path.open("r", encoding="utf-8") as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError("config_path", f"invalid YAML: {e}")
        if not isinstance(loaded, dict):
            raise ConfigurationError("config_path", "top level must be a mapping")
        data.update(loaded)

    data.update(OrchestratorConfig.env_overrides(environ))
    data.update({k: v for k, v in overrides.items() if v is not None})

    return OrchestratorConfig.from_dict(data)
