"""AumAI QM Gateway — guarded tool access to a quality-management backend.

Public API::

    from aumai_qmgateway import (
        AuditLogger,
        AuditQuery,
        CallerContext,
        CircuitBreaker,
        Connector,
        FixedWindowRateLimiter,
        GatewayConfig,
        GatewayError,
        PermissionChecker,
        RetryPolicy,
        ToolPipeline,
        ToolRegistry,
        ToolSpec,
        load_config,
        retry,
    )
"""

from aumai_qmgateway.audit import AuditLogger, AuditQuery
from aumai_qmgateway.circuit_breaker import CircuitBreaker, CircuitBreakerSnapshot
from aumai_qmgateway.client import (
    EndpointClient,
    RestEndpointClient,
    SoapEndpointClient,
    build_client,
)
from aumai_qmgateway.config import ConfigError, GatewayConfig, load_config
from aumai_qmgateway.connector import Connector
from aumai_qmgateway.errors import ErrorKind, GatewayError, to_envelope
from aumai_qmgateway.health import HealthChecker
from aumai_qmgateway.log import configure_logging
from aumai_qmgateway.models import (
    AuditLogEntry,
    AuditQueryOptions,
    AuditQueryResult,
    CallerContext,
    CircuitState,
    Endpoint,
    ErrorEnvelope,
    HealthStatus,
    Operation,
    RoleDefinition,
    ToolResponse,
    TransportKind,
)
from aumai_qmgateway.pipeline import ToolPipeline, validate_arguments
from aumai_qmgateway.rate_limiter import FixedWindowRateLimiter
from aumai_qmgateway.rbac import PermissionChecker
from aumai_qmgateway.registry import RegistryError, ToolCall, ToolRegistry, ToolSpec
from aumai_qmgateway.retry import RetryPolicy, is_retryable_error, retry
from aumai_qmgateway.tools import register_system_tools

__version__ = "0.1.0"

__all__ = [
    # models
    "AuditLogEntry",
    "AuditQueryOptions",
    "AuditQueryResult",
    "CallerContext",
    "CircuitState",
    "Endpoint",
    "ErrorEnvelope",
    "HealthStatus",
    "Operation",
    "RoleDefinition",
    "ToolResponse",
    "TransportKind",
    # errors
    "ErrorKind",
    "GatewayError",
    "to_envelope",
    # configuration
    "ConfigError",
    "GatewayConfig",
    "configure_logging",
    "load_config",
    # resilience
    "CircuitBreaker",
    "CircuitBreakerSnapshot",
    "RetryPolicy",
    "is_retryable_error",
    "retry",
    # connectivity
    "Connector",
    "EndpointClient",
    "RestEndpointClient",
    "SoapEndpointClient",
    "build_client",
    # access control
    "FixedWindowRateLimiter",
    "PermissionChecker",
    # audit
    "AuditLogger",
    "AuditQuery",
    # tools
    "HealthChecker",
    "RegistryError",
    "ToolCall",
    "ToolPipeline",
    "ToolRegistry",
    "ToolSpec",
    "register_system_tools",
    "validate_arguments",
]
