"""Built-in system tools for aumai-qmgateway.

Business tools are registered by the embedding application; the gateway
itself ships a health check and read access to the audit trail.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from aumai_qmgateway.audit import AuditQuery
from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.health import HealthChecker
from aumai_qmgateway.models import AuditQueryOptions, Operation
from aumai_qmgateway.registry import ToolCall, ToolRegistry, ToolSpec

HEALTH_TOOL = "qm_health_check"
AUDIT_QUERY_TOOL = "qm_query_audit_logs"

AUDIT_QUERY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "start_date": {"type": "string", "description": "Start (ISO 8601, inclusive)"},
        "end_date": {"type": "string", "description": "End (ISO 8601, inclusive)"},
        "user_id": {"type": "string", "description": "Filter by user id"},
        "tool": {"type": "string", "description": "Filter by tool name"},
        "operation": {"type": "string", "enum": ["read", "write"]},
        "entity_type": {"type": "string", "description": "Filter by entity type"},
        "entity_id": {"type": "string", "description": "Filter by entity id"},
        "limit": {"type": "integer", "minimum": 1, "maximum": 1000, "default": 100},
        "offset": {"type": "integer", "minimum": 0, "default": 0},
    },
    "additionalProperties": False,
}


def create_health_tool(checker: HealthChecker) -> ToolSpec:
    """Health check: no permission required, no backend call."""

    async def handler(call: ToolCall) -> dict[str, Any]:
        return checker.get_health_status().model_dump(mode="json")

    return ToolSpec(
        name=HEALTH_TOOL,
        description="Health of the gateway and its backend endpoints",
        handler=handler,
        requires_backend=False,
    )


def create_audit_query_tool(query: AuditQuery) -> ToolSpec:
    """Audit trail search; requires ``read:audit``."""

    async def handler(call: ToolCall) -> dict[str, Any]:
        try:
            options = AuditQueryOptions.model_validate(call.arguments)
        except ValidationError as exc:
            raise GatewayError.validation(
                "invalid audit query filters", details=exc.errors(include_url=False)
            ) from exc
        result = await query.query(options)
        return result.model_dump(mode="json", exclude_none=True)

    return ToolSpec(
        name=AUDIT_QUERY_TOOL,
        description="Query audit logs with filters (admin)",
        handler=handler,
        input_schema=AUDIT_QUERY_SCHEMA,
        required_permission="read:audit",
        operation=Operation.READ,
        entity_type="audit",
        read_metadata=lambda result: {"count": len(result["entries"]), "total": result["total"]},
        requires_backend=False,
    )


def register_system_tools(
    registry: ToolRegistry,
    checker: HealthChecker,
    query: AuditQuery,
) -> None:
    """Register the built-in tools."""
    registry.register(create_health_tool(checker))
    registry.register(create_audit_query_tool(query))


__all__ = [
    "AUDIT_QUERY_SCHEMA",
    "AUDIT_QUERY_TOOL",
    "HEALTH_TOOL",
    "create_audit_query_tool",
    "create_health_tool",
    "register_system_tools",
]
