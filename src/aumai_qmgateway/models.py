"""Pydantic models for aumai-qmgateway."""

from __future__ import annotations

import datetime
import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

ANONYMOUS_PRINCIPAL = "anonymous"


class TransportKind(str, enum.Enum):
    """Wire transport spoken by an endpoint."""

    REST = "rest"
    SOAP = "soap"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Operation(str, enum.Enum):
    READ = "read"
    WRITE = "write"


class Endpoint(BaseModel):
    """One configured remote backend instance."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique endpoint identifier, e.g. 'primary'")
    base_url: str = Field(..., description="Base address, e.g. 'https://qm.example.com'")
    transport: TransportKind = TransportKind.REST
    api_version: str | None = Field(
        default=None, description="Declared API version used when detection fails"
    )
    timeout_ms: int = Field(default=30_000, gt=0)
    retries: int = Field(default=3, ge=0, le=5, description="Per-call retry budget")

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, value: str) -> str:
        """Reject blank endpoint names."""
        stripped = value.strip()
        if not stripped:
            raise ValueError("endpoint name must not be blank")
        return stripped

    @field_validator("base_url")
    @classmethod
    def base_url_is_http(cls, value: str) -> str:
        """Require an absolute http(s) URL."""
        stripped = value.strip()
        if not stripped.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return stripped.rstrip("/")


# ---------------------------------------------------------------------------
# Credentials (exactly one variant is active)
# ---------------------------------------------------------------------------


class BasicCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["basic"] = "basic"
    username: str
    password: str


class BearerCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["bearer"] = "bearer"
    token: str


class ApiKeyCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["api-key"] = "api-key"
    api_key: str
    header: str = "X-API-Key"


class WsSecurityCredentials(BaseModel):
    """WS-Security UsernameToken, embedded in SOAP envelope headers."""

    model_config = ConfigDict(frozen=True)

    type: Literal["ws-security"] = "ws-security"
    username: str
    password: str


Credentials = Annotated[
    Union[BasicCredentials, BearerCredentials, ApiKeyCredentials, WsSecurityCredentials],
    Field(discriminator="type"),
]


class RoleDefinition(BaseModel):
    """A named role and the permission strings it grants."""

    model_config = ConfigDict(frozen=True)

    name: str
    permissions: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("permissions")
    @classmethod
    def permissions_well_formed(cls, value: frozenset[str]) -> frozenset[str]:
        """Every permission must look like ``resource:action``."""
        for permission in value:
            resource, sep, action = permission.partition(":")
            if not sep or not resource or not action:
                raise ValueError(
                    f"permission '{permission}' must have the form 'resource:action'"
                )
        return value


class CallerContext(BaseModel):
    """Identity of the principal invoking a tool."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    roles: tuple[str, ...] = ()

    @property
    def principal(self) -> str:
        """Key used for per-principal state; falls back to the anonymous sentinel."""
        return self.user_id or ANONYMOUS_PRINCIPAL


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditLogEntry(BaseModel):
    """Immutable record of one tool invocation."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.UTC)
    )
    user_id: str | None = None
    user_roles: list[str] = Field(default_factory=list)
    tool: str
    operation: Operation
    entity_type: str | None = None
    entity_id: str | None = None
    before: Any = None
    after: Any = None
    result: Literal["success", "failure"] = "success"
    error: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_utc(cls, value: datetime.datetime) -> datetime.datetime:
        """Naive timestamps are interpreted as UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value


class AuditQueryOptions(BaseModel):
    """Filters and pagination for reading the audit trail back."""

    start_date: datetime.datetime | None = None
    end_date: datetime.datetime | None = None
    user_id: str | None = None
    tool: str | None = None
    operation: Operation | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: datetime.datetime | None) -> datetime.datetime | None:
        """Naive datetimes are interpreted as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value


class AuditQueryResult(BaseModel):
    entries: list[AuditLogEntry] = Field(default_factory=list)
    total: int = 0


# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------


class ErrorEnvelope(BaseModel):
    """Uniform external error shape returned at the pipeline boundary."""

    kind: str
    message: str
    details: Any = None


class ToolResponse(BaseModel):
    """Outcome of one tool invocation: a payload or an error envelope."""

    ok: bool
    data: Any = None
    error: ErrorEnvelope | None = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class EndpointHealth(BaseModel):
    name: str
    status: Literal["connected", "degraded", "disconnected"]
    circuit_breaker: CircuitState
    version: str | None = None


class AuditHealth(BaseModel):
    enabled: bool
    log_path: str
    status: Literal["operational", "error"]


class HealthStatus(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.UTC)
    )
    uptime_seconds: int = 0
    version: str
    endpoints: list[EndpointHealth] = Field(default_factory=list)
    audit: AuditHealth
    tools_registered: int = 0


__all__ = [
    "ANONYMOUS_PRINCIPAL",
    "ApiKeyCredentials",
    "AuditHealth",
    "AuditLogEntry",
    "AuditQueryOptions",
    "AuditQueryResult",
    "BasicCredentials",
    "BearerCredentials",
    "CallerContext",
    "CircuitState",
    "Credentials",
    "Endpoint",
    "EndpointHealth",
    "ErrorEnvelope",
    "HealthStatus",
    "Operation",
    "RoleDefinition",
    "ToolResponse",
    "TransportKind",
    "WsSecurityCredentials",
]
