"""Test doubles and file helpers shared by the aumai-qmgateway tests."""

from __future__ import annotations

import datetime
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from aumai_qmgateway.models import AuditLogEntry


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingBackend:
    """httpx mock backend: routes requests to a handler and records them."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, json={}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


async def failing_operation() -> Any:
    raise RuntimeError("boom")


def write_audit_day(directory: Path, day: str, entries: list[AuditLogEntry | str]) -> Path:
    """Write raw lines (entries or literal strings) into one audit day file."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"audit-{day}.jsonl"
    with path.open("a", encoding="utf-8") as handle:
        for entry in entries:
            line = entry if isinstance(entry, str) else entry.model_dump_json(exclude_none=True)
            handle.write(line + "\n")
    return path


def read_audit_lines(directory: Path) -> list[dict[str, Any]]:
    lines: list[dict[str, Any]] = []
    for path in sorted(directory.glob("audit-*.jsonl")):
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                lines.append(json.loads(line))
    return lines


def utc(*args: int) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=datetime.UTC)


