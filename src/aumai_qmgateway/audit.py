"""Append-only audit trail for aumai-qmgateway.

Every tool invocation is written as one JSON object per line to a
per-UTC-day file named ``audit-YYYY-MM-DD.jsonl``.  Entries are never
edited or deleted; :class:`AuditQuery` reads them back.
"""

from __future__ import annotations

import asyncio
import datetime
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from aumai_qmgateway.errors import ErrorKind, GatewayError
from aumai_qmgateway.models import (
    AuditLogEntry,
    AuditQueryOptions,
    AuditQueryResult,
    CallerContext,
    Operation,
)

logger = structlog.get_logger(__name__)

FILE_PREFIX = "audit-"
FILE_SUFFIX = ".jsonl"


def audit_file_name(day: datetime.date) -> str:
    return f"{FILE_PREFIX}{day.isoformat()}{FILE_SUFFIX}"


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class AuditLogger:
    """Append audit entries to per-day JSONL files.

    Writing never raises: a failed append is reported to the operational
    log and the audited operation carries on unaffected.

    Args:
        log_path: Directory holding the day files (created on first write).
        enabled: When ``False``, :meth:`log` does nothing.
        clock: Source of "now" used to pick the day file.
    """

    def __init__(
        self,
        log_path: str | Path,
        enabled: bool = True,
        clock: Callable[[], datetime.datetime] = _utc_now,
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()

    def current_file(self) -> Path:
        today = self._clock().astimezone(datetime.UTC).date()
        return self.log_path / audit_file_name(today)

    async def log(self, entry: AuditLogEntry) -> None:
        """Append *entry*; failures are logged, never raised."""
        if not self.enabled:
            return
        try:
            await asyncio.to_thread(self._append, entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                tool=entry.tool,
                operation=entry.operation.value,
                error=str(exc),
            )
            return
        logger.debug("audit_entry_written", tool=entry.tool, operation=entry.operation.value)

    async def log_read(
        self,
        tool: str,
        caller: CallerContext,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        error: str | None = None,
    ) -> None:
        """Record a read; reads carry optional metadata but never snapshots."""
        await self._record(
            user_id=caller.user_id,
            user_roles=list(caller.roles),
            tool=tool,
            operation=Operation.READ,
            entity_type=entity_type,
            entity_id=entity_id,
            result="failure" if error else "success",
            error=error,
            metadata=metadata,
        )

    async def log_write(
        self,
        tool: str,
        caller: CallerContext,
        entity_type: str | None,
        entity_id: str | None,
        before: Any,
        after: Any,
        *,
        error: str | None = None,
    ) -> None:
        """Record a write with its before/after snapshots."""
        await self._record(
            user_id=caller.user_id,
            user_roles=list(caller.roles),
            tool=tool,
            operation=Operation.WRITE,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
            result="failure" if error else "success",
            error=error,
        )

    async def _record(self, **fields: Any) -> None:
        if not self.enabled:
            return
        try:
            entry = AuditLogEntry(**fields)
        except ValidationError as exc:
            logger.error(
                "audit_write_failed",
                tool=fields["tool"],
                operation=fields["operation"].value,
                error=str(exc),
            )
            return
        await self.log(entry)

    def _append(self, entry: AuditLogEntry) -> None:
        line = entry.model_dump_json(exclude_none=True) + "\n"
        with self._lock:
            self.log_path.mkdir(parents=True, exist_ok=True)
            with self.current_file().open("a", encoding="utf-8") as handle:
                handle.write(line)


class AuditQuery:
    """Filter and paginate the audit trail written by :class:`AuditLogger`.

    Example::

        query = AuditQuery("./audit-logs")
        page = await query.query(AuditQueryOptions(user_id="alice", limit=20))
        print(page.total, [e.tool for e in page.entries])
    """

    def __init__(self, log_path: str | Path) -> None:
        self.log_path = Path(log_path)

    async def query(self, options: AuditQueryOptions | None = None) -> AuditQueryResult:
        """Return matching entries, newest first, with the overall match count.

        Every ``audit-*.jsonl`` file is scanned.  A line that cannot be parsed
        is skipped with a warning.  ``total`` counts all matches; ``entries``
        holds at most ``limit`` of them after skipping ``offset``.

        Raises:
            GatewayError: If a day file cannot be read.
        """
        options = options or AuditQueryOptions()
        return await asyncio.to_thread(self._scan, options)

    def _scan(self, options: AuditQueryOptions) -> AuditQueryResult:
        if not self.log_path.is_dir():
            return AuditQueryResult()

        matches: list[AuditLogEntry] = []
        for path in sorted(self.log_path.glob(f"{FILE_PREFIX}*{FILE_SUFFIX}")):
            try:
                # Read bytes: invalid UTF-8 surfaces as a ValidationError.
                with path.open("rb") as handle:
                    for line_number, line in enumerate(handle, start=1):
                        if not line.strip():
                            continue
                        try:
                            entry = AuditLogEntry.model_validate_json(line)
                        except ValidationError:
                            logger.warning(
                                "audit_entry_unparseable", file=path.name, line=line_number
                            )
                            continue
                        if _matches(entry, options):
                            matches.append(entry)
            except OSError as exc:
                logger.error("audit_query_failed", file=path.name, error=str(exc))
                raise GatewayError(
                    ErrorKind.UNKNOWN, f"failed to query audit logs: {exc}"
                ) from exc

        matches.sort(key=lambda entry: entry.timestamp, reverse=True)
        page = matches[options.offset : options.offset + options.limit]
        return AuditQueryResult(entries=page, total=len(matches))


def _matches(entry: AuditLogEntry, options: AuditQueryOptions) -> bool:
    """Conjunction of every filter supplied in *options*."""
    if options.start_date is not None and entry.timestamp < options.start_date:
        return False
    if options.end_date is not None and entry.timestamp > options.end_date:
        return False
    checks = (
        (options.user_id, entry.user_id),
        (options.tool, entry.tool),
        (options.operation, entry.operation),
        (options.entity_type, entry.entity_type),
        (options.entity_id, entry.entity_id),
    )
    return all(wanted is None or wanted == actual for wanted, actual in checks)


__all__ = ["AuditLogger", "AuditQuery", "audit_file_name"]
