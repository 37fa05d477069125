"""Tool invocation pipeline for aumai-qmgateway."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import jsonschema
import structlog

from aumai_qmgateway.audit import AuditLogger
from aumai_qmgateway.config import GatewayConfig
from aumai_qmgateway.connector import Connector
from aumai_qmgateway.errors import ErrorKind, GatewayError, to_envelope
from aumai_qmgateway.models import CallerContext, Operation, ToolResponse
from aumai_qmgateway.rate_limiter import FixedWindowRateLimiter
from aumai_qmgateway.rbac import PermissionChecker
from aumai_qmgateway.registry import (
    RegistryError,
    ToolCall,
    ToolHandler,
    ToolRegistry,
    ToolSpec,
)
from aumai_qmgateway.retry import RetryPolicy, retry

logger = structlog.get_logger(__name__)


class ToolPipeline:
    """Run registered tools behind authorization, rate limiting and auditing.

    Pipeline (in order):

    1. Resolve the tool and authorize the caller for its permission.
    2. Consume one rate-limit point for the caller.
    3. Validate arguments against the tool's JSON Schema (defaults filled).
    4. For writes, take a best-effort "before" snapshot.
    5. Run the handler against a connector-resolved endpoint client,
       retried per the endpoint's budget; every client call passes
       through that endpoint's circuit breaker.
    6. Schedule the audit record without waiting for it.
    7. Return a :class:`~aumai_qmgateway.models.ToolResponse`; any error
       becomes an :class:`~aumai_qmgateway.models.ErrorEnvelope`.

    Args:
        registry: Tools available to callers.
        connector: Endpoint clients.
        permissions: Role table lookup.
        rate_limiter: Per-principal quota.
        audit_logger: Destination of audit records.
        retry_policy: Delay settings; ``max_retries`` is replaced by each
                      endpoint's ``retries`` budget.
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        registry: ToolRegistry,
        connector: Connector,
        permissions: PermissionChecker,
        rate_limiter: FixedWindowRateLimiter,
        audit_logger: AuditLogger,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._connector = connector
        self._permissions = permissions
        self._rate_limiter = rate_limiter
        self._audit_logger = audit_logger
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._pending_audits: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        registry: ToolRegistry,
        connector: Connector,
        **kwargs: Any,
    ) -> ToolPipeline:
        """Wire a pipeline from configuration sections."""
        limits = config.security.rate_limiting
        return cls(
            registry=registry,
            connector=connector,
            permissions=PermissionChecker(config.roles),
            rate_limiter=FixedWindowRateLimiter(
                max_requests=limits.max_requests,
                window_ms=limits.window_ms,
                enabled=limits.enabled,
            ),
            audit_logger=AuditLogger(config.audit.log_path, enabled=config.audit.enabled),
            retry_policy=RetryPolicy(
                initial_delay_ms=config.retry.initial_delay_ms,
                max_delay_ms=config.retry.max_delay_ms,
                backoff_multiplier=config.retry.backoff_multiplier,
            ),
            **kwargs,
        )

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def rate_limiter(self) -> FixedWindowRateLimiter:
        return self._rate_limiter

    async def invoke(
        self,
        tool_name: str,
        arguments: Mapping[str, Any] | None,
        caller: CallerContext,
    ) -> ToolResponse:
        """Invoke *tool_name* for *caller* and return a uniform response."""
        try:
            spec = self._registry.get(tool_name)
        except RegistryError as exc:
            logger.warning("tool_not_found", tool=tool_name)
            error = GatewayError(ErrorKind.NOT_FOUND, str(exc), status_code=404)
            return ToolResponse(ok=False, error=to_envelope(error))

        logger.info("tool_called", tool=tool_name, user_id=caller.user_id)
        entity_id = _entity_id(spec, arguments)
        before: Any = None

        try:
            if spec.required_permission is not None:
                self._permissions.check(spec.required_permission, caller)
            self._rate_limiter.check_limit(caller)
            args = validate_arguments(spec.input_schema, arguments)
            entity_id = _entity_id(spec, args)

            client = None
            if spec.requires_backend:
                client = self._connector.fallback_to_secondary(
                    spec.endpoint or self._connector.default_client.name
                )
            call = ToolCall(arguments=args, caller=caller, client=client)

            if spec.operation is Operation.WRITE and spec.fetch_before is not None:
                before = await self._snapshot(spec.name, spec.fetch_before, call)

            result = await self._execute(spec, call)
        except Exception as exc:
            envelope = to_envelope(exc)
            logger.warning("tool_failed", tool=tool_name, kind=envelope.kind, error=envelope.message)
            self._schedule_audit(spec, caller, entity_id, before, None, error=envelope.message)
            return ToolResponse(ok=False, error=envelope)

        self._schedule_audit(spec, caller, entity_id, before, result)
        return ToolResponse(ok=True, data=result)

    async def drain(self) -> None:
        """Wait for every scheduled audit write to finish."""
        while self._pending_audits:
            await asyncio.gather(*list(self._pending_audits))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _execute(self, spec: ToolSpec, call: ToolCall) -> Any:
        if call.client is None:
            return await spec.handler(call)
        policy = self._retry_policy.with_max_retries(call.client.endpoint.retries)
        return await retry(lambda: spec.handler(call), policy, sleep=self._sleep)

    async def _snapshot(self, tool_name: str, fetch: ToolHandler, call: ToolCall) -> Any:
        try:
            return await fetch(call)
        except Exception as exc:
            logger.warning("before_snapshot_failed", tool=tool_name, error=str(exc))
            return None

    def _schedule_audit(
        self,
        spec: ToolSpec,
        caller: CallerContext,
        entity_id: str | None,
        before: Any,
        result: Any,
        *,
        error: str | None = None,
    ) -> None:
        if spec.operation is Operation.WRITE:
            coro = self._audit_logger.log_write(
                spec.name,
                caller,
                spec.entity_type,
                entity_id,
                before,
                result if error is None else None,
                error=error,
            )
        else:
            coro = self._audit_logger.log_read(
                spec.name,
                caller,
                spec.entity_type,
                entity_id,
                _read_metadata(spec, result) if error is None else None,
                error=error,
            )
        task = asyncio.get_running_loop().create_task(coro)
        self._pending_audits.add(task)
        task.add_done_callback(self._pending_audits.discard)


def validate_arguments(
    schema: Mapping[str, Any], arguments: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Fill top-level defaults and validate *arguments* against *schema*.

    Raises:
        GatewayError: With kind ``VALIDATION`` describing the first problem.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, Mapping):
        raise GatewayError.validation("arguments must be an object")

    normalized = dict(arguments)
    for key, prop in (schema.get("properties") or {}).items():
        if key not in normalized and isinstance(prop, Mapping) and "default" in prop:
            normalized[key] = copy.deepcopy(prop["default"])

    try:
        jsonschema.validate(instance=normalized, schema=dict(schema))
    except jsonschema.ValidationError as exc:
        path = ".".join(str(part) for part in exc.absolute_path)
        logger.warning("argument_validation_failed", path=path, error=exc.message)
        raise GatewayError.validation(
            f"input validation failed: {exc.message}",
            details=[{"path": path, "message": exc.message}],
        ) from exc
    return normalized


def _entity_id(spec: ToolSpec, arguments: Mapping[str, Any] | None) -> str | None:
    if spec.entity_id_arg is None or not isinstance(arguments, Mapping):
        return None
    value = arguments.get(spec.entity_id_arg)
    return None if value is None else str(value)


def _read_metadata(spec: ToolSpec, result: Any) -> dict[str, Any] | None:
    if spec.read_metadata is None:
        return None
    try:
        return spec.read_metadata(result)
    except Exception as exc:
        logger.warning("read_metadata_failed", tool=spec.name, error=str(exc))
        return None


__all__ = ["ToolPipeline", "validate_arguments"]
