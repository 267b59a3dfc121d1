"""
feeledger configuration

Configuration is a validated pydantic model built from (in increasing
precedence) defaults, an optional YAML file, FEELEDGER_* environment variables
and explicit overrides. Any invalid value raises ConfigurationError at
construction time; this is the only failure allowed to abort startup.
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from feeledger.core.constants import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    LABEL_RETRY_CYCLES,
    MAX_POLL_INTERVAL_SECONDS,
    MIN_POLL_INTERVAL_SECONDS,
    UNKNOWN_LABEL,
)
from feeledger.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")


class IntegrityPolicy(Enum):
    DEGRADED = "degraded"  # Keep polling after a failed verification, status flagged
    HALT = "halt"  # Refuse to start polling after a failed verification


def validate_address(address: str) -> str:
    """Check that ``address`` looks like a base58 account address (32-44 chars)."""
    if not address or not isinstance(address, str):
        raise ValueError("Address is required")
    if not _BASE58_RE.match(address):
        raise ValueError("Address contains invalid characters (must be base58)")
    if len(address) < 32 or len(address) > 44:
        raise ValueError("Address must be 32-44 characters long")
    return address


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=10.0, gt=0)
    jitter: float = Field(default=0.1, ge=0)


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = Field(default=5, gt=0)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    half_open_success_threshold: int = Field(default=2, gt=0)


class RateLimitSettings(BaseModel):
    capacity: float = Field(default=10, gt=0)
    refill_rate: float = Field(default=2.0, gt=0)


class CacheSettings(BaseModel):
    max_size: int = Field(default=100, gt=0)
    ttl_seconds: float = Field(default=300.0, gt=0)


class AssetConfig(BaseModel):
    asset_id: str
    label: str = UNKNOWN_LABEL
    origin_pool: str
    destination_pool: str | None = None
    migrated: bool = False

    @field_validator("asset_id", "origin_pool")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("destination_pool")
    @classmethod
    def _check_optional_address(cls, value: str | None) -> str | None:
        return validate_address(value) if value else None


class FeeLedgerConfig(BaseModel):
    creator_address: str
    origin_vault: str
    destination_vault: str
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    history_file: str | None = None
    state_file: str | None = None
    assets: list[AssetConfig] = Field(default_factory=list)
    excluded_assets: list[str] = Field(default_factory=list)
    enable_health_check: bool = True
    health_check_timeout: float = Field(default=5.0, gt=0)
    read_timeout: float = Field(default=10.0, ge=0)
    integrity_policy: IntegrityPolicy = IntegrityPolicy.DEGRADED
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    metrics_port: int | None = Field(default=None, ge=1, le=65535)
    discover_on_start: bool = True
    label_retry_cycles: int = Field(default=LABEL_RETRY_CYCLES, ge=0)
    log_level: str | None = None
    log_file: str | None = None

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise _configuration_error(exc) from exc

    @field_validator("creator_address", "origin_vault", "destination_vault")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("poll_interval_seconds")
    @classmethod
    def _check_poll_interval(cls, value: float) -> float:
        if value < MIN_POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"Poll interval must be at least {MIN_POLL_INTERVAL_SECONDS:g} second(s)"
            )
        if value > MAX_POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"Poll interval must not exceed {MAX_POLL_INTERVAL_SECONDS:g} seconds"
            )
        return value

    @model_validator(mode="after")
    def _check_vaults(self) -> "FeeLedgerConfig":
        if self.origin_vault == self.destination_vault:
            raise ValueError("Origin and destination vaults must differ")
        if self.retry.base_delay > self.retry.max_delay:
            raise ValueError("retry.base_delay must not exceed retry.max_delay")
        return self

    @classmethod
    def build(cls, data: dict[str, Any]) -> "FeeLedgerConfig":
        """Validate ``data``, converting pydantic errors to ConfigurationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise _configuration_error(exc) from exc


def _configuration_error(exc: ValidationError) -> ConfigurationError:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
        for err in exc.errors()
    )
    return ConfigurationError(
        f"Invalid feeledger configuration: {problems}",
        {"errors": exc.errors(include_url=False)},
    )


# Environment variable -> config key
_ENV_FIELDS: dict[str, str] = {
    "FEELEDGER_CREATOR": "creator_address",
    "FEELEDGER_ORIGIN_VAULT": "origin_vault",
    "FEELEDGER_DESTINATION_VAULT": "destination_vault",
    "FEELEDGER_POLL_INTERVAL": "poll_interval_seconds",
    "FEELEDGER_HISTORY_FILE": "history_file",
    "FEELEDGER_STATE_FILE": "state_file",
    "FEELEDGER_HEALTH_CHECK": "enable_health_check",
    "FEELEDGER_HEALTH_TIMEOUT": "health_check_timeout",
    "FEELEDGER_READ_TIMEOUT": "read_timeout",
    "FEELEDGER_INTEGRITY_POLICY": "integrity_policy",
    "FEELEDGER_METRICS_PORT": "metrics_port",
    "FEELEDGER_DISCOVER_ON_START": "discover_on_start",
}


def _env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for env_var, key in _ENV_FIELDS.items():
        raw = environ.get(env_var, "").strip()
        if raw:
            values[key] = raw
    excluded = environ.get("FEELEDGER_EXCLUDED_ASSETS", "")
    if excluded.strip():
        values["excluded_assets"] = [item.strip() for item in excluded.split(",") if item.strip()]
    return values


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {path}", {"path": path}) from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to read config file {path}: {exc}", {"path": path}) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", {"path": path})
    return data


def load_config(
    path: str | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> FeeLedgerConfig:
    """
    Build a FeeLedgerConfig.

    Args:
        path: Optional YAML file (defaults to FEELEDGER_CONFIG when set)
        overrides: Values that take precedence over file and environment
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: On a missing file, malformed YAML or invalid values
    """
    env = os.environ if environ is None else environ
    path = path or env.get("FEELEDGER_CONFIG") or None

    data: dict[str, Any] = _read_yaml(path) if path else {}
    data.update(_env_overrides(env))
    data.update(overrides or {})

    config = FeeLedgerConfig.build(data)
    logger.info(
        "Configuration loaded",
        extra={
            "event": "config.loaded",
            "config_source": path or "environment",
            "assets": len(config.assets),
            "poll_interval": config.poll_interval_seconds,
        },
    )
    return config
