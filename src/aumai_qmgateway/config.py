"""Configuration loading for aumai-qmgateway.

Configuration is read from a YAML file, then selected values are
overridden from ``QMGW_*`` environment variables (a ``.env`` file in the
working directory is honoured).  The merged document is validated by
:class:`GatewayConfig`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from aumai_qmgateway.models import Credentials, Endpoint, RoleDefinition

logger = structlog.get_logger(__name__)

ENV_PREFIX = "QMGW_"


class ConfigError(Exception):
    """Raised when configuration cannot be read or is invalid."""


class ServerSettings(BaseModel):
    name: str = "aumai-qmgateway"
    log_level: Literal["error", "warn", "info", "debug"] = "info"


class VersionNegotiationSettings(BaseModel):
    enabled: bool = True
    supported_versions: list[str] = Field(default_factory=list)
    fallback_version: str = "v1"


class BackendSettings(BaseModel):
    endpoints: list[Endpoint] = Field(..., min_length=1)
    default_endpoint: str
    credentials: Credentials
    version_negotiation: VersionNegotiationSettings = Field(
        default_factory=VersionNegotiationSettings
    )

    @model_validator(mode="after")
    def default_endpoint_declared(self) -> BackendSettings:
        """Endpoint names must be unique and include the default."""
        names = [endpoint.name for endpoint in self.endpoints]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate endpoint names: {', '.join(duplicates)}")
        if self.default_endpoint not in names:
            raise ValueError(
                f"default endpoint '{self.default_endpoint}' is not among the configured endpoints"
            )
        return self

    def endpoint(self, name: str) -> Endpoint | None:
        for endpoint in self.endpoints:
            if endpoint.name == name:
                return endpoint
        return None


def _default_roles() -> list[RoleDefinition]:
    return [
        RoleDefinition(name="QM_Read", permissions=frozenset({"read:*"})),
        RoleDefinition(
            name="QM_Write",
            permissions=frozenset(
                {"read:*", "write:actions", "write:complaints", "write:lots"}
            ),
        ),
        RoleDefinition(name="Production_Write", permissions=frozenset({"read:*", "write:lots"})),
        RoleDefinition(name="Audit_Write", permissions=frozenset({"read:*", "write:audits"})),
        RoleDefinition(
            name="Admin", permissions=frozenset({"read:*", "write:*", "read:audit"})
        ),
    ]


class AuditSettings(BaseModel):
    enabled: bool = True
    log_path: str = "./audit-logs"


class RateLimitSettings(BaseModel):
    enabled: bool = True
    max_requests: int = Field(default=100, gt=0)
    window_ms: int = Field(default=60_000, gt=0)


class CircuitBreakerSettings(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=5, gt=0)
    reset_timeout_ms: int = Field(default=60_000, gt=0)


class SecuritySettings(BaseModel):
    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)


class RetrySettings(BaseModel):
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class GatewayConfig(BaseModel):
    """Complete, validated gateway configuration."""

    server: ServerSettings = Field(default_factory=ServerSettings)
    backend: BackendSettings
    roles: list[RoleDefinition] = Field(default_factory=_default_roles)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)


def default_config_paths() -> list[Path]:
    """Candidate config file locations, in lookup order."""
    cwd = Path.cwd()
    home = Path.home()
    return [
        cwd / "config.yaml",
        cwd / "config.yml",
        cwd / "config" / "config.yaml",
        home / ".qmgateway" / "config.yaml",
        home / ".qmgateway" / "config.yml",
    ]


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> GatewayConfig:
    """Load, merge and validate configuration.

    Args:
        path: Explicit YAML file.  When omitted, the first existing file from
              :func:`default_config_paths` is used (none is fine if the
              environment supplies an endpoint).
        environ: Environment mapping; defaults to ``os.environ`` after
                 loading ``.env``.

    Raises:
        ConfigError: If the file cannot be parsed or validation fails.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    data: dict[str, Any] = {}
    if path is not None:
        data = _read_yaml(Path(path))
    else:
        for candidate in default_config_paths():
            if candidate.is_file():
                data = _read_yaml(candidate)
                break

    merged = _apply_env_overrides(data, environ)

    try:
        config = GatewayConfig.model_validate(merged)
    except ValidationError as exc:
        logger.error("config_validation_failed", errors=exc.error_count())
        raise ConfigError(f"invalid configuration: {exc}") from exc

    logger.info(
        "config_loaded",
        endpoints=[endpoint.name for endpoint in config.backend.endpoints],
        default_endpoint=config.backend.default_endpoint,
    )
    return config


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"could not read config file '{path}': {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"config file '{path}' must contain a mapping")
    logger.info("config_file_read", path=str(path))
    return raw


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    """Overlay ``QMGW_*`` variables onto the file configuration."""

    def env(name: str) -> str | None:
        value = environ.get(ENV_PREFIX + name)
        return value if value else None

    merged = dict(data)
    backend = dict(merged.get("backend") or {})

    endpoint_url = env("ENDPOINT_URL")
    if endpoint_url:
        endpoint: dict[str, Any] = {
            "name": "default",
            "base_url": endpoint_url,
            "transport": env("ENDPOINT_TRANSPORT") or "rest",
        }
        if env("API_VERSION"):
            endpoint["api_version"] = env("API_VERSION")
        backend["endpoints"] = [endpoint]
        backend["default_endpoint"] = "default"

    auth_type = env("AUTH_TYPE")
    if auth_type:
        credentials: dict[str, Any] = {"type": auth_type}
        optional = {
            "username": env("USERNAME"),
            "password": env("PASSWORD"),
            "token": env("TOKEN"),
            "api_key": env("API_KEY"),
            "header": env("API_KEY_HEADER"),
        }
        credentials.update({key: value for key, value in optional.items() if value})
        backend["credentials"] = credentials

    if backend:
        merged["backend"] = backend

    log_level = env("LOG_LEVEL")
    if log_level:
        server = dict(merged.get("server") or {})
        server["log_level"] = log_level.lower()
        merged["server"] = server

    return merged


__all__ = [
    "AuditSettings",
    "BackendSettings",
    "CircuitBreakerSettings",
    "ConfigError",
    "GatewayConfig",
    "RateLimitSettings",
    "RetrySettings",
    "SecuritySettings",
    "ServerSettings",
    "VersionNegotiationSettings",
    "default_config_paths",
    "load_config",
]
