"""Tests for aumai_qmgateway.registry."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from aumai_qmgateway.errors import ErrorKind, GatewayError
from aumai_qmgateway.models import CallerContext
from aumai_qmgateway.registry import RegistryError, ToolCall, ToolRegistry, ToolSpec


async def _noop(call: ToolCall) -> Any:
    return None


def _spec(name: str, **kwargs: Any) -> ToolSpec:
    return ToolSpec(name=name, description=f"{name} tool", handler=_noop, **kwargs)


# ---------------------------------------------------------------------------
# ToolSpec
# ---------------------------------------------------------------------------


class TestToolSpec:
    def test_default_schema_is_open_object(self) -> None:
        assert _spec("qm_ping").input_schema == {"type": "object", "properties": {}}

    def test_blank_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            _spec("  ")

    def test_invalid_schema_rejected(self) -> None:
        with pytest.raises(ValueError, match="invalid input schema"):
            _spec("qm_bad", input_schema={"type": "not-a-type"})

    def test_describe(self) -> None:
        spec = _spec("qm_get_lot", input_schema={"type": "object", "required": ["lot_id"]})
        assert spec.describe() == {
            "name": "qm_get_lot",
            "description": "qm_get_lot tool",
            "inputSchema": {"type": "object", "required": ["lot_id"]},
        }


class TestToolCall:
    def test_require_client_without_client(self) -> None:
        call = ToolCall(arguments={}, caller=CallerContext())
        with pytest.raises(GatewayError) as exc_info:
            call.require_client()
        assert exc_info.value.kind is ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_register_and_get_round_trip(self) -> None:
        registry = ToolRegistry()
        spec = _spec("qm_get_lot")
        registry.register(spec)
        assert registry.get("qm_get_lot") is spec

    def test_get_unregistered_raises_registry_error(self) -> None:
        with pytest.raises(RegistryError, match="qm_missing"):
            ToolRegistry().get("qm_missing")

    def test_re_register_overwrites_previous(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec("qm_get_lot", required_permission="read:lots"))
        registry.register(_spec("qm_get_lot", required_permission="read:*"))
        assert registry.get("qm_get_lot").required_permission == "read:*"
        assert len(registry) == 1

    def test_all_names_returns_sorted_list(self) -> None:
        registry = ToolRegistry()
        for name in ("qm_z", "qm_a", "qm_m"):
            registry.register(_spec(name))
        assert registry.all_names() == ["qm_a", "qm_m", "qm_z"]

    def test_list_tools_describes_each(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec("qm_b"))
        registry.register(_spec("qm_a"))
        assert [tool["name"] for tool in registry.list_tools()] == ["qm_a", "qm_b"]

    def test_unregister_removes_tool(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec("qm_get_lot"))
        registry.unregister("qm_get_lot")
        assert registry.all_names() == []

    def test_unregister_nonexistent_is_no_op(self) -> None:
        ToolRegistry().unregister("ghost")  # must not raise

    def test_thread_safety_concurrent_register(self) -> None:
        registry = ToolRegistry()
        errors: list[Exception] = []

        def register_many(prefix: str) -> None:
            try:
                for i in range(50):
                    registry.register(_spec(f"{prefix}-{i}"))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [
            threading.Thread(target=register_many, args=(f"t{j}",)) for j in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == [], f"Thread errors: {errors}"
        assert len(registry) == 200
