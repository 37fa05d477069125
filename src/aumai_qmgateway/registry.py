"""Tool declarations and the tool registry for aumai-qmgateway."""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import jsonschema

from aumai_qmgateway.client import EndpointClient
from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.models import CallerContext, Operation


class RegistryError(Exception):
    """Raised when a tool lookup fails."""


@dataclasses.dataclass(frozen=True)
class ToolCall:
    """Everything a handler needs for one invocation.

    ``client`` is ``None`` for tools that do not talk to the backend.
    """

    arguments: dict[str, Any]
    caller: CallerContext
    client: EndpointClient | None = None

    def require_client(self) -> EndpointClient:
        if self.client is None:
            raise GatewayError.validation("tool has no backend client")
        return self.client


ToolHandler = Callable[[ToolCall], Awaitable[Any]]


@dataclasses.dataclass(frozen=True)
class ToolSpec:
    """Declarative description of one tool.

    Attributes:
        name: Unique tool name.
        description: Human-readable summary.
        handler: Coroutine performing the business call.
        input_schema: JSON Schema for the arguments object.
        required_permission: Permission string, or ``None`` for system tools.
        operation: Whether the tool reads or writes backend state.
        entity_type: Entity kind recorded in the audit trail.
        entity_id_arg: Argument holding the entity id, if any.
        fetch_before: For writes, coroutine returning the current entity state.
        read_metadata: For reads, builds audit metadata from the result.
        requires_backend: Resolve an endpoint client and retry the handler.
        endpoint: Preferred endpoint name (default endpoint when ``None``).
    """

    name: str
    description: str
    handler: ToolHandler
    input_schema: Mapping[str, Any] = dataclasses.field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    required_permission: str | None = None
    operation: Operation = Operation.READ
    entity_type: str | None = None
    entity_id_arg: str | None = None
    fetch_before: ToolHandler | None = None
    read_metadata: Callable[[Any], dict[str, Any]] | None = None
    requires_backend: bool = True
    endpoint: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("tool name must not be blank")
        try:
            jsonschema.Draft202012Validator.check_schema(dict(self.input_schema))
        except jsonschema.SchemaError as exc:
            raise ValueError(f"invalid input schema for tool '{self.name}': {exc.message}") from exc

    def describe(self) -> dict[str, Any]:
        """Listing shape exposed to callers (name, description, schema)."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }


class ToolRegistry:
    """Register and look up :class:`ToolSpec` objects.

    Thread-safe.  Tools are keyed by name; re-registering with the same
    name overwrites the previous declaration.

    Example::

        registry = ToolRegistry()
        registry.register(ToolSpec(name="qm_get_lot", description="...", handler=get_lot))
        spec = registry.get("qm_get_lot")
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._lock = threading.Lock()

    def register(self, spec: ToolSpec) -> None:
        """Add or replace a tool in the registry."""
        with self._lock:
            self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        """Return the tool registered as *name*.

        Raises:
            RegistryError: If no tool is registered under *name*.
        """
        with self._lock:
            spec = self._tools.get(name)
        if spec is None:
            raise RegistryError(f"tool '{name}' is not registered")
        return spec

    def all_names(self) -> list[str]:
        """Return a sorted list of all registered tool names."""
        with self._lock:
            return sorted(self._tools.keys())

    def list_tools(self) -> list[dict[str, Any]]:
        with self._lock:
            specs = sorted(self._tools.values(), key=lambda spec: spec.name)
        return [spec.describe() for spec in specs]

    def unregister(self, name: str) -> None:
        """Remove a tool from the registry (no-op if not present)."""
        with self._lock:
            self._tools.pop(name, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)


__all__ = ["RegistryError", "ToolCall", "ToolHandler", "ToolRegistry", "ToolSpec"]
