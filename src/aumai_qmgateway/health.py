"""Health reporting for aumai-qmgateway."""

from __future__ import annotations

import os
import time

import structlog

from aumai_qmgateway.audit import AuditLogger
from aumai_qmgateway.connector import Connector
from aumai_qmgateway.models import (
    AuditHealth,
    CircuitState,
    EndpointHealth,
    HealthStatus,
)
from aumai_qmgateway.registry import ToolRegistry

logger = structlog.get_logger(__name__)

_ENDPOINT_STATUS = {
    CircuitState.CLOSED: "connected",
    CircuitState.HALF_OPEN: "degraded",
    CircuitState.OPEN: "disconnected",
}


class HealthChecker:
    """Summarize endpoint breakers, the audit trail and registered tools.

    Overall status is ``unhealthy`` if any endpoint circuit is open,
    ``degraded`` if any is half-open or the audit directory is unusable,
    and ``healthy`` otherwise.
    """

    def __init__(
        self,
        connector: Connector,
        audit_logger: AuditLogger,
        registry: ToolRegistry | None = None,
        version: str = "0.1.0",
    ) -> None:
        self._connector = connector
        self._audit_logger = audit_logger
        self._registry = registry
        self._version = version
        self._started = time.monotonic()

    def get_health_status(self) -> HealthStatus:
        endpoints = self._check_endpoints()
        audit = self._check_audit()

        status = "healthy"
        if any(ep.status == "disconnected" for ep in endpoints):
            status = "unhealthy"
        elif any(ep.status == "degraded" for ep in endpoints) or audit.status == "error":
            status = "degraded"

        return HealthStatus(
            status=status,
            uptime_seconds=int(time.monotonic() - self._started),
            version=self._version,
            endpoints=endpoints,
            audit=audit,
            tools_registered=len(self._registry) if self._registry is not None else 0,
        )

    def _check_endpoints(self) -> list[EndpointHealth]:
        statuses = []
        for name in self._connector.names():
            client = self._connector.get_client(name)
            state = client.circuit_state
            statuses.append(
                EndpointHealth(
                    name=name,
                    status=_ENDPOINT_STATUS[state],
                    circuit_breaker=state,
                    version=client.detected_version,
                )
            )
        return statuses

    def _check_audit(self) -> AuditHealth:
        path = self._audit_logger.log_path
        operational = True
        if self._audit_logger.enabled:
            # The directory is created on first write; until then check its parent.
            probe = path if path.exists() else path.parent
            operational = probe.is_dir() and os.access(probe, os.W_OK)
            if not operational:
                logger.warning("audit_path_not_writable", log_path=str(path))
        return AuditHealth(
            enabled=self._audit_logger.enabled,
            log_path=str(path),
            status="operational" if operational else "error",
        )


__all__ = ["HealthChecker"]
