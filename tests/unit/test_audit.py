"""Tests for branchflow/engine/audit.py."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from branchflow.config.settings import AuditConfig
from branchflow.engine.audit import AuditMetricsRecorder, AuditSink, InMemoryAuditSink, JsonlAuditSink
from branchflow.enums import AuditOutcome, OperationType
from branchflow.models.domain import AuditFilter, AuditLogEntry

START = datetime(2024, 1, 1, tzinfo=UTC)


class SteppingClock:
    """Advance one minute per call."""

    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(minutes=1)
        return current


class BrokenSink(AuditSink):
    async def append(self, entry: AuditLogEntry) -> None:
        raise OSError("disk full")

    async def entries(self):
        return
        yield


class SlowSink(InMemoryAuditSink):
    async def append(self, entry: AuditLogEntry) -> None:
        await asyncio.sleep(1)
        await super().append(entry)


async def seed(recorder: AuditMetricsRecorder) -> None:
    """Two completed runs (one failed), one retried push and a validation rejection."""
    common = {"project_path": "/repos/webapp", "task_id": "101"}
    await recorder.log(OperationType.BRANCH_CREATE, AuditOutcome.SUCCESS, workflow_id="wf-1", **common)
    await recorder.log(OperationType.PUSH, AuditOutcome.RETRY, workflow_id="wf-1", attempt=1, **common)
    await recorder.log(OperationType.PUSH, AuditOutcome.SUCCESS, workflow_id="wf-1", **common)
    await recorder.log(
        OperationType.WORKFLOW_COMPLETE, AuditOutcome.SUCCESS, workflow_id="wf-1", duration_ms=100.0, **common
    )
    await recorder.log(OperationType.BRANCH_CREATE, AuditOutcome.SUCCESS, workflow_id="wf-2", **common)
    await recorder.log(
        OperationType.WORKFLOW_COMPLETE, AuditOutcome.FAILURE, workflow_id="wf-2", duration_ms=300.0, **common
    )
    await recorder.log(OperationType.VALIDATION, AuditOutcome.REJECTED, project_path="", task_id="102")


@pytest.fixture
def recorder() -> AuditMetricsRecorder:
    return AuditMetricsRecorder(clock=SteppingClock())


class TestRecorder:
    @pytest.mark.asyncio
    async def test_log_drops_empty_detail_values(self, recorder):
        entry = await recorder.log(
            OperationType.PUSH,
            AuditOutcome.FAILURE,
            project_path="/repos/webapp",
            task_id="101",
            error="denied",
            branch=None,
        )
        assert entry.detail == {"error": "denied"}
        assert entry.timestamp == START

    @pytest.mark.asyncio
    async def test_empty_sink_is_kept(self):
        sink = InMemoryAuditSink()
        recorder = AuditMetricsRecorder(sink)
        assert recorder.sink is sink

        await recorder.log(OperationType.PUSH, AuditOutcome.SUCCESS, project_path="/repos/webapp", task_id="101")
        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_raise(self):
        recorder = AuditMetricsRecorder(BrokenSink())
        entry = AuditLogEntry(START, OperationType.MERGE, "/repos/webapp", "101", AuditOutcome.SUCCESS)
        assert await recorder.record(entry) is False

    @pytest.mark.asyncio
    async def test_slow_sink_is_bounded(self):
        sink = SlowSink()
        recorder = AuditMetricsRecorder(sink, write_timeout=0.01)
        entry = AuditLogEntry(START, OperationType.MERGE, "/repos/webapp", "101", AuditOutcome.SUCCESS)

        assert await recorder.record(entry) is False
        assert len(sink) == 0

    def test_from_config_selects_sink(self, tmp_path):
        assert isinstance(AuditMetricsRecorder.from_config(AuditConfig()).sink, InMemoryAuditSink)
        recorder = AuditMetricsRecorder.from_config(AuditConfig(log_path=str(tmp_path / "audit.jsonl")))
        assert isinstance(recorder.sink, JsonlAuditSink)


class TestQuery:
    @pytest.mark.asyncio
    async def test_filters(self, recorder):
        await seed(recorder)

        pushes = await recorder.query(AuditFilter(operation_type=OperationType.PUSH))
        assert [entry.outcome for entry in pushes] == [AuditOutcome.RETRY, AuditOutcome.SUCCESS]

        second_run = await recorder.query(AuditFilter(workflow_id="wf-2"))
        assert len(second_run) == 2

        window = await recorder.query(
            AuditFilter(start_date=START + timedelta(minutes=1), end_date=START + timedelta(minutes=2))
        )
        assert [entry.operation_type for entry in window] == [OperationType.PUSH, OperationType.PUSH]

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, recorder):
        await seed(recorder)
        entries = await recorder.query(limit=2, newest_first=True)
        assert [entry.operation_type for entry in entries] == [
            OperationType.VALIDATION,
            OperationType.WORKFLOW_COMPLETE,
        ]


class TestMetrics:
    @pytest.mark.asyncio
    async def test_completed_workflows(self, recorder):
        await seed(recorder)
        snapshot = await recorder.metrics()

        assert snapshot.total_executions == 2
        assert snapshot.success_rate == 0.5
        assert snapshot.average_duration_ms == 200.0
        assert snapshot.branch_creation_count == 2

    @pytest.mark.asyncio
    async def test_retry_entries_are_not_executions(self, recorder):
        await seed(recorder)
        snapshot = await recorder.metrics(AuditFilter(operation_type=OperationType.PUSH))

        assert snapshot.total_executions == 1
        assert snapshot.success_rate == 1.0
        assert snapshot.branch_creation_count == 2

    @pytest.mark.asyncio
    async def test_empty_window(self, recorder):
        await seed(recorder)
        snapshot = await recorder.metrics(AuditFilter(start_date=START + timedelta(days=1)))
        assert snapshot.to_dict() == {
            "total_executions": 0,
            "success_rate": 0.0,
            "average_duration_ms": 0.0,
            "branch_creation_count": 0,
        }

    @pytest.mark.asyncio
    async def test_statistics(self, recorder):
        await seed(recorder)
        stats = await recorder.statistics()

        assert stats["total_entries"] == 7
        assert stats["by_operation"]["push"] == 2
        assert stats["by_outcome"] == {"failure": 1, "rejected": 1, "retry": 1, "success": 4}


class TestJsonlSink:
    @pytest.mark.asyncio
    async def test_entries_survive_reopen(self, tmp_path):
        path = tmp_path / "logs" / "audit.jsonl"
        await seed(AuditMetricsRecorder(JsonlAuditSink(path), clock=SteppingClock()))

        reopened = AuditMetricsRecorder(JsonlAuditSink(path))
        entries = await reopened.query()

        assert len(entries) == 7
        assert entries[1].detail == {"attempt": 1}
        assert entries[0].timestamp == START

    @pytest.mark.asyncio
    async def test_unparseable_lines_are_skipped(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        sink = JsonlAuditSink(path)
        entry = AuditLogEntry(START, OperationType.MERGE, "/repos/webapp", "101", AuditOutcome.SUCCESS)
        await sink.append(entry)
        with path.open("a") as f:
            f.write("not json\n\n")
            f.write('{"operation_type": "merge"}\n')
        await sink.append(entry)

        entries = [item async for item in sink.entries()]
        assert entries == [entry, entry]

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit.jsonl")
        assert [item async for item in sink.entries()] == []

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_whole_lines(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        recorder = AuditMetricsRecorder(JsonlAuditSink(path))
        await asyncio.gather(
            *(
                recorder.log(OperationType.PUSH, AuditOutcome.SUCCESS, project_path="/repos/webapp", task_id=str(i))
                for i in range(20)
            )
        )

        assert len(path.read_text().splitlines()) == 20
        assert len(await recorder.query()) == 20
