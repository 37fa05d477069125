"""aumai-qmgateway quickstart example.

Demonstrates:
- Building a GatewayConfig and a Connector with two endpoints.
- Registering business tools alongside the built-in system tools.
- Invoking tools through the ToolPipeline (authorization, rate limiting,
  validation, retries, circuit breaking and auditing).
- Failing over to the secondary endpoint once the primary circuit opens.
- Reading the audit trail back with AuditQuery.

The backend is simulated with ``httpx.MockTransport`` so the example runs
offline.  Run this file directly::

    python examples/quickstart.py
"""

from __future__ import annotations

import asyncio
import json
import tempfile
from typing import Any

import httpx

from aumai_qmgateway import (
    AuditLogger,
    AuditQuery,
    AuditQueryOptions,
    CallerContext,
    Connector,
    GatewayConfig,
    HealthChecker,
    Operation,
    ToolCall,
    ToolPipeline,
    ToolRegistry,
    ToolSpec,
    configure_logging,
    register_system_tools,
)


class SimulatedBackend:
    """A tiny lot service; the primary can be switched into an outage."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.down = False
        self.lots = {"L-100": {"id": "L-100", "status": "open", "served_by": name}}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            return httpx.Response(503, json={"message": f"{self.name} unavailable"})
        lot_id = request.url.path.rsplit("/", 1)[-1]
        if request.method == "PUT":
            self.lots[lot_id] = {**self.lots.get(lot_id, {}), **json.loads(request.content)}
        lot = self.lots.get(lot_id)
        if lot is None:
            return httpx.Response(404, json={"message": f"lot {lot_id} not found"})
        return httpx.Response(200, json={**lot, "served_by": self.name})


async def get_lot(call: ToolCall) -> Any:
    return await call.require_client().get(f"/api/lots/{call.arguments['lot_id']}")


async def set_lot_status(call: ToolCall) -> Any:
    return await call.require_client().put(
        f"/api/lots/{call.arguments['lot_id']}", {"status": call.arguments["status"]}
    )


def business_tools() -> list[ToolSpec]:
    return [
        ToolSpec(
            name="qm_get_lot",
            description="Fetch a production lot",
            handler=get_lot,
            input_schema={
                "type": "object",
                "properties": {"lot_id": {"type": "string"}},
                "required": ["lot_id"],
            },
            required_permission="read:lots",
            entity_type="lot",
            entity_id_arg="lot_id",
        ),
        ToolSpec(
            name="qm_set_lot_status",
            description="Change the status of a production lot",
            handler=set_lot_status,
            input_schema={
                "type": "object",
                "properties": {
                    "lot_id": {"type": "string"},
                    "status": {"type": "string", "enum": ["open", "blocked", "released"]},
                },
                "required": ["lot_id", "status"],
            },
            required_permission="write:lots",
            operation=Operation.WRITE,
            entity_type="lot",
            entity_id_arg="lot_id",
            fetch_before=get_lot,
        ),
    ]


def show(label: str, response: Any) -> None:
    if response.ok:
        print(f"  {label}: OK   {response.data}")
    else:
        print(f"  {label}: FAIL {response.error.kind}: {response.error.message}")


async def main() -> None:
    configure_logging("error")
    audit_dir = tempfile.mkdtemp(prefix="qmgw-audit-")

    config = GatewayConfig.model_validate(
        {
            "backend": {
                "endpoints": [
                    {"name": "primary", "base_url": "https://qm-a.example.com", "retries": 2},
                    {"name": "secondary", "base_url": "https://qm-b.example.com"},
                ],
                "default_endpoint": "primary",
                "credentials": {"type": "bearer", "token": "demo-token"},
            },
            "audit": {"log_path": audit_dir},
            "security": {"circuit_breaker": {"failure_threshold": 2}},
            "retry": {"initial_delay_ms": 10, "max_delay_ms": 50},
        }
    )
    backends = {"primary": SimulatedBackend("primary"), "secondary": SimulatedBackend("secondary")}
    connector = Connector(
        config, transport_factory=lambda endpoint: httpx.MockTransport(backends[endpoint.name])
    )

    registry = ToolRegistry()
    for spec in business_tools():
        registry.register(spec)
    pipeline = ToolPipeline.from_config(config, registry, connector)
    checker = HealthChecker(connector, AuditLogger(audit_dir), registry)
    register_system_tools(registry, checker, AuditQuery(audit_dir))

    operator = CallerContext(user_id="operator-1", roles=("Production_Write",))
    viewer = CallerContext(user_id="viewer-7", roles=("QM_Read",))
    auditor = CallerContext(user_id="admin", roles=("Admin",))

    print("=" * 60)
    print("Demo 1: Authorized reads and writes")
    print("=" * 60)
    show("viewer reads lot", await pipeline.invoke("qm_get_lot", {"lot_id": "L-100"}, viewer))
    show(
        "viewer blocks lot",
        await pipeline.invoke("qm_set_lot_status", {"lot_id": "L-100", "status": "blocked"}, viewer),
    )
    show(
        "operator blocks lot",
        await pipeline.invoke(
            "qm_set_lot_status", {"lot_id": "L-100", "status": "blocked"}, operator
        ),
    )
    show("missing argument", await pipeline.invoke("qm_get_lot", {}, viewer))

    print()
    print("=" * 60)
    print("Demo 2: Outage, circuit breaker and failover")
    print("=" * 60)
    backends["primary"].down = True
    show("primary down", await pipeline.invoke("qm_get_lot", {"lot_id": "L-100"}, viewer))
    show("after failover", await pipeline.invoke("qm_get_lot", {"lot_id": "L-100"}, viewer))
    health = await pipeline.invoke("qm_health_check", {}, viewer)
    print(f"  health: {health.data['status']}")
    for endpoint in health.data["endpoints"]:
        print(f"    {endpoint['name']}: {endpoint['status']} ({endpoint['circuit_breaker']})")

    print()
    print("=" * 60)
    print("Demo 3: Audit trail")
    print("=" * 60)
    await pipeline.drain()
    page = await AuditQuery(audit_dir).query(AuditQueryOptions(limit=10))
    print(f"  {page.total} entries in {audit_dir}")
    for entry in page.entries:
        print(f"    [{entry.result:7}] {entry.tool} user={entry.user_id} entity={entry.entity_id}")
    writes = await pipeline.invoke("qm_query_audit_logs", {"operation": "write"}, auditor)
    print(f"  writes visible to auditor: {writes.data['total']}")

    await connector.aclose()


if __name__ == "__main__":
    asyncio.run(main())
