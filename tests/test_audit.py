"""Tests for aumai_qmgateway.audit."""

from __future__ import annotations

import datetime
from pathlib import Path

import pytest
from helpers import read_audit_lines, utc, write_audit_day
from structlog.testing import capture_logs

from aumai_qmgateway.audit import AuditLogger, AuditQuery, audit_file_name
from aumai_qmgateway.errors import ErrorKind, GatewayError
from aumai_qmgateway.models import (
    AuditLogEntry,
    AuditQueryOptions,
    CallerContext,
    Operation,
)


def _entry(tool: str, when: datetime.datetime, **kwargs: object) -> AuditLogEntry:
    return AuditLogEntry(timestamp=when, tool=tool, operation=Operation.READ, **kwargs)


@pytest.fixture()
def populated(audit_dir: Path) -> Path:
    """Two day files with a mix of users, tools and operations."""
    write_audit_day(
        audit_dir,
        "2024-03-01",
        [
            _entry("qm_get_lot", utc(2024, 3, 1, 9), user_id="alice", entity_type="lot", entity_id="L-1"),
            AuditLogEntry(
                timestamp=utc(2024, 3, 1, 10),
                tool="qm_update_lot",
                operation=Operation.WRITE,
                user_id="bob",
                entity_type="lot",
                entity_id="L-1",
                before={"status": "open"},
                after={"status": "closed"},
            ),
        ],
    )
    write_audit_day(
        audit_dir,
        "2024-03-02",
        [
            _entry("qm_get_lot", utc(2024, 3, 2, 8), user_id="alice", entity_type="lot", entity_id="L-2"),
            _entry("qm_list_complaints", utc(2024, 3, 2, 12), user_id="carol"),
        ],
    )
    return audit_dir


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------


class TestAuditLogger:
    def test_file_name_format(self) -> None:
        assert audit_file_name(datetime.date(2024, 1, 5)) == "audit-2024-01-05.jsonl"

    def test_current_file_uses_utc_day(self, audit_dir: Path) -> None:
        late_evening = datetime.datetime(
            2024, 6, 30, 23, 30, tzinfo=datetime.timezone(datetime.timedelta(hours=-5))
        )
        logger = AuditLogger(audit_dir, clock=lambda: late_evening)
        assert logger.current_file().name == "audit-2024-07-01.jsonl"

    async def test_log_creates_directory_and_appends(self, audit_dir: Path) -> None:
        logger = AuditLogger(audit_dir, clock=lambda: utc(2024, 3, 1, 12))
        await logger.log(_entry("qm_get_lot", utc(2024, 3, 1, 12)))
        await logger.log(_entry("qm_get_lot", utc(2024, 3, 1, 13)))
        assert (audit_dir / "audit-2024-03-01.jsonl").is_file()
        assert len(read_audit_lines(audit_dir)) == 2

    async def test_log_read_records_metadata(
        self, audit_dir: Path, reader: CallerContext
    ) -> None:
        logger = AuditLogger(audit_dir)
        await logger.log_read("qm_list_lots", reader, "lot", metadata={"count": 3})
        [line] = read_audit_lines(audit_dir)
        assert line["user_id"] == "alice"
        assert line["user_roles"] == ["QM_Read"]
        assert line["operation"] == "read"
        assert line["result"] == "success"
        assert line["metadata"] == {"count": 3}
        assert "before" not in line

    async def test_log_write_records_snapshots(
        self, audit_dir: Path, writer: CallerContext
    ) -> None:
        logger = AuditLogger(audit_dir)
        await logger.log_write(
            "qm_update_lot", writer, "lot", "L-7", {"qty": 1}, {"qty": 2}
        )
        [line] = read_audit_lines(audit_dir)
        assert line["operation"] == "write"
        assert line["before"] == {"qty": 1}
        assert line["after"] == {"qty": 2}
        assert line["entity_id"] == "L-7"

    async def test_failure_is_recorded_with_error(
        self, audit_dir: Path, writer: CallerContext
    ) -> None:
        logger = AuditLogger(audit_dir)
        await logger.log_write("qm_update_lot", writer, "lot", "L-7", None, None, error="boom")
        [line] = read_audit_lines(audit_dir)
        assert line["result"] == "failure"
        assert line["error"] == "boom"

    async def test_disabled_logger_writes_nothing(self, audit_dir: Path) -> None:
        logger = AuditLogger(audit_dir, enabled=False)
        await logger.log(_entry("qm_get_lot", utc(2024, 3, 1)))
        assert not audit_dir.exists()

    async def test_write_failure_is_swallowed_and_logged(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("occupied", encoding="utf-8")
        logger = AuditLogger(blocker)
        with capture_logs() as logs:
            await logger.log(_entry("qm_get_lot", utc(2024, 3, 1)))
        assert logs[0]["event"] == "audit_write_failed"
        assert logs[0]["log_level"] == "error"

    async def test_invalid_entry_fields_are_logged(
        self, audit_dir: Path, reader: CallerContext
    ) -> None:
        logger = AuditLogger(audit_dir)
        with capture_logs() as logs:
            await logger.log_read(
                "qm_list_lots", reader, metadata=["not", "a", "mapping"]  # type: ignore[arg-type]
            )
        assert [log["event"] for log in logs] == ["audit_write_failed"]
        assert logs[0]["tool"] == "qm_list_lots"
        assert not audit_dir.exists()


# ---------------------------------------------------------------------------
# AuditQuery
# ---------------------------------------------------------------------------


class TestAuditQuery:
    async def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        result = await AuditQuery(tmp_path / "absent").query()
        assert result.entries == []
        assert result.total == 0

    async def test_newest_first_across_files(self, populated: Path) -> None:
        result = await AuditQuery(populated).query()
        assert result.total == 4
        timestamps = [entry.timestamp for entry in result.entries]
        assert timestamps == sorted(timestamps, reverse=True)
        assert result.entries[0].tool == "qm_list_complaints"

    async def test_filter_by_user(self, populated: Path) -> None:
        result = await AuditQuery(populated).query(AuditQueryOptions(user_id="alice"))
        assert result.total == 2
        assert {entry.entity_id for entry in result.entries} == {"L-1", "L-2"}

    async def test_filters_are_conjunctive(self, populated: Path) -> None:
        options = AuditQueryOptions(user_id="alice", entity_id="L-2")
        result = await AuditQuery(populated).query(options)
        assert [entry.timestamp for entry in result.entries] == [utc(2024, 3, 2, 8)]

    async def test_filter_by_operation(self, populated: Path) -> None:
        result = await AuditQuery(populated).query(AuditQueryOptions(operation="write"))
        assert result.total == 1
        assert result.entries[0].before == {"status": "open"}

    async def test_date_range_is_inclusive(self, populated: Path) -> None:
        options = AuditQueryOptions(start_date=utc(2024, 3, 1, 10), end_date=utc(2024, 3, 2, 8))
        result = await AuditQuery(populated).query(options)
        assert result.total == 2

    async def test_naive_dates_are_utc(self, populated: Path) -> None:
        options = AuditQueryOptions(start_date=datetime.datetime(2024, 3, 2))
        result = await AuditQuery(populated).query(options)
        assert result.total == 2

    async def test_pagination_reports_full_total(self, populated: Path) -> None:
        page = await AuditQuery(populated).query(AuditQueryOptions(limit=2, offset=1))
        assert page.total == 4
        assert [entry.timestamp for entry in page.entries] == [
            utc(2024, 3, 2, 8),
            utc(2024, 3, 1, 10),
        ]

    async def test_offset_past_end(self, populated: Path) -> None:
        page = await AuditQuery(populated).query(AuditQueryOptions(offset=10))
        assert page.entries == []
        assert page.total == 4

    async def test_corrupt_lines_are_skipped(self, audit_dir: Path) -> None:
        write_audit_day(
            audit_dir,
            "2024-03-03",
            [_entry("qm_get_lot", utc(2024, 3, 3)), "{not json", "", '{"tool": "x"}'],
        )
        with capture_logs() as logs:
            result = await AuditQuery(audit_dir).query()
        assert result.total == 1
        assert sum(log["event"] == "audit_entry_unparseable" for log in logs) == 2

    async def test_undecodable_line_is_skipped(self, audit_dir: Path) -> None:
        good = _entry("qm_get_lot", utc(2024, 1, 1)).model_dump_json(exclude_none=True).encode()
        audit_dir.mkdir(parents=True, exist_ok=True)
        (audit_dir / "audit-2024-01-01.jsonl").write_bytes(
            good + b"\n" + b"\xff\xfe garbage\n" + good + b"\n"
        )
        with capture_logs() as logs:
            result = await AuditQuery(audit_dir).query()
        assert result.total == 2
        [warning] = [log for log in logs if log["event"] == "audit_entry_unparseable"]
        assert warning["line"] == 2

    async def test_other_files_are_ignored(self, populated: Path) -> None:
        (populated / "notes.txt").write_text("ignore me", encoding="utf-8")
        assert (await AuditQuery(populated).query()).total == 4

    async def test_unreadable_file_raises(self, audit_dir: Path) -> None:
        (audit_dir / "audit-2024-03-04.jsonl").mkdir(parents=True)
        with pytest.raises(GatewayError) as exc_info:
            await AuditQuery(audit_dir).query()
        assert exc_info.value.kind is ErrorKind.UNKNOWN

    async def test_written_entries_round_trip(
        self, audit_dir: Path, writer: CallerContext
    ) -> None:
        logger = AuditLogger(audit_dir)
        await logger.log_write("qm_update_lot", writer, "lot", "L-9", {"a": 1}, {"a": 2})
        result = await AuditQuery(audit_dir).query(AuditQueryOptions(entity_id="L-9"))
        [entry] = result.entries
        assert entry.user_id == "bob"
        assert entry.after == {"a": 2}
