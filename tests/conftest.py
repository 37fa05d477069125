"""Shared test fixtures for aumai-qmgateway tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from helpers import FakeClock, SleepRecorder

from aumai_qmgateway.config import GatewayConfig
from aumai_qmgateway.models import CallerContext

# ---------------------------------------------------------------------------
# Logging isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo any structlog configuration a test (e.g. the CLI) applied."""
    yield
    structlog.reset_defaults()


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def audit_dir(tmp_path: Path) -> Path:
    """Directory for audit day files (not yet created)."""
    return tmp_path / "audit-logs"


@pytest.fixture()
def config_data(audit_dir: Path) -> dict[str, Any]:
    """Raw configuration with two REST endpoints and tight thresholds."""
    return {
        "backend": {
            "endpoints": [
                {"name": "primary", "base_url": "https://qm-a.example.com", "retries": 3},
                {"name": "secondary", "base_url": "https://qm-b.example.com", "retries": 1},
            ],
            "default_endpoint": "primary",
            "credentials": {"type": "bearer", "token": "secret-token"},
            "version_negotiation": {"enabled": True, "supported_versions": ["v2.1", "v1.0"]},
        },
        "audit": {"enabled": True, "log_path": str(audit_dir)},
        "security": {
            "rate_limiting": {"enabled": True, "max_requests": 5, "window_ms": 60_000},
            "circuit_breaker": {"enabled": True, "failure_threshold": 3, "reset_timeout_ms": 1000},
        },
    }


@pytest.fixture()
def gateway_config(config_data: dict[str, Any]) -> GatewayConfig:
    return GatewayConfig.model_validate(config_data)


# ---------------------------------------------------------------------------
# Clocks and timers
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Callers
# ---------------------------------------------------------------------------


@pytest.fixture()
def reader() -> CallerContext:
    """A caller holding only the read role."""
    return CallerContext(user_id="alice", roles=("QM_Read",))


@pytest.fixture()
def writer() -> CallerContext:
    """A caller allowed to write lots."""
    return CallerContext(user_id="bob", roles=("Production_Write",))


@pytest.fixture()
def admin() -> CallerContext:
    return CallerContext(user_id="root", roles=("Admin",))


@pytest.fixture()
def nobody() -> CallerContext:
    """A caller with an identity but no roles."""
    return CallerContext(user_id="mallory", roles=())
