"""
Audit trail and metrics for workflow operations.

Every operation attempt (branch creation, push, pull request, merge,
fallback, ...) is recorded as an immutable :class:`AuditLogEntry` in an
append-only sink. Aggregate metrics are computed by streaming the stored
entries on every request, so they can never go stale.

Sinks:
    - InMemoryAuditSink: Process-local list, used by tests and embedders
    - JsonlAuditSink: One JSON object per line, written with aiofiles

Write Policy:
    ``record()`` bounds each sink write with ``write_timeout``. When the sink
    is slow or unavailable the entry is dropped with a local warning and the
    workflow carries on; audit problems never fail a run.

Example:
    >>> recorder = AuditMetricsRecorder(JsonlAuditSink(".branchflow/audit.jsonl"))
    >>> await recorder.log(
    ...     OperationType.BRANCH_CREATE,
    ...     AuditOutcome.SUCCESS,
    ...     project_path="/srv/repos/webapp",
    ...     task_id="101",
    ...     duration_ms=42.0,
    ... )
    >>> snapshot = await recorder.metrics()
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from branchflow.config.settings import AuditConfig
from branchflow.enums import AuditOutcome, OperationType
from branchflow.models.domain import AuditFilter, AuditLogEntry, MetricsSnapshot
from branchflow.monitoring.metrics import MetricsCollector

log = structlog.get_logger(__name__)


class AuditSink(ABC):
    """Append-only storage for audit entries."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        """Persist one entry."""
        pass

    @abstractmethod
    def entries(self) -> AsyncIterator[AuditLogEntry]:
        """Stream stored entries in insertion order."""
        pass


class InMemoryAuditSink(AuditSink):
    """Keep entries in a list for the lifetime of the process."""

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)

    async def entries(self) -> AsyncIterator[AuditLogEntry]:
        for entry in list(self._entries):
            yield entry

    def __len__(self) -> int:
        return len(self._entries)


class JsonlAuditSink(AuditSink):
    """Append entries to a JSON-lines file.

    Appends are serialized through a lock so concurrent runs never interleave
    partial lines. Lines that cannot be parsed when reading are skipped with a
    warning.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        line = json.dumps(entry.to_dict(), sort_keys=True) + "\n"
        async with self._lock:
            async with aiofiles.open(self.path, "a") as f:
                await f.write(line)
                await f.flush()

    async def entries(self) -> AsyncIterator[AuditLogEntry]:
        if not self.path.exists():
            return
        async with aiofiles.open(self.path) as f:
            line_number = 0
            async for line in f:
                line_number += 1
                if not line.strip():
                    continue
                try:
                    yield AuditLogEntry.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    log.warning("audit_line_skipped", path=str(self.path), line=line_number, error=str(e))


class AuditMetricsRecorder:
    """Durable, queryable log of operation attempts and derived metrics.

    Attributes:
        sink: Storage backend
        write_timeout: Upper bound in seconds for a single write
    """

    def __init__(
        self,
        sink: AuditSink | None = None,
        write_timeout: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sink = sink if sink is not None else InMemoryAuditSink()
        self.write_timeout = write_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, config: AuditConfig, clock: Callable[[], datetime] | None = None) -> AuditMetricsRecorder:
        """Create a recorder with the sink described by ``config``."""
        sink: AuditSink = JsonlAuditSink(config.log_path) if config.log_path else InMemoryAuditSink()
        return cls(sink=sink, write_timeout=config.write_timeout, clock=clock)

    async def record(self, entry: AuditLogEntry) -> bool:
        """Append ``entry`` to the sink within the write timeout.

        Returns:
            True if the entry was persisted, False if the sink failed
        """
        MetricsCollector.record_operation(entry.operation_type.value, entry.outcome.value, entry.duration_ms)
        try:
            await asyncio.wait_for(self.sink.append(entry), timeout=self.write_timeout)
        except Exception as e:
            MetricsCollector.record_audit_failure()
            log.warning(
                "audit_write_failed",
                operation=entry.operation_type.value,
                outcome=entry.outcome.value,
                task_id=entry.task_id,
                error=str(e) or type(e).__name__,
            )
            return False
        return True

    async def log(
        self,
        operation_type: OperationType,
        outcome: AuditOutcome,
        *,
        project_path: str,
        task_id: str,
        workflow_id: str | None = None,
        duration_ms: float = 0.0,
        **detail: Any,
    ) -> AuditLogEntry:
        """Build an entry stamped with the current time and record it."""
        entry = AuditLogEntry(
            timestamp=self._clock(),
            operation_type=operation_type,
            project_path=project_path,
            task_id=task_id,
            outcome=outcome,
            duration_ms=duration_ms,
            detail={key: value for key, value in detail.items() if value is not None},
            workflow_id=workflow_id,
        )
        await self.record(entry)
        return entry

    async def _matching(self, audit_filter: AuditFilter) -> AsyncIterator[AuditLogEntry]:
        async for entry in self.sink.entries():
            if audit_filter.matches(entry):
                yield entry

    async def query(
        self,
        audit_filter: AuditFilter | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[AuditLogEntry]:
        """Return entries matching ``audit_filter``.

        Args:
            audit_filter: Date range, operation type and scope criteria
            limit: Maximum number of entries to return
            newest_first: Sort by timestamp descending instead of insertion order
        """
        entries = [entry async for entry in self._matching(audit_filter or AuditFilter())]
        if newest_first:
            entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit] if limit is not None else entries

    async def metrics(self, audit_filter: AuditFilter | None = None) -> MetricsSnapshot:
        """Aggregate executions in the filter's time window.

        Executions are entries of ``audit_filter.operation_type`` (completed
        workflows when unset), excluding intermediate retry entries. The
        branch creation count covers successful branch creations in the same
        window regardless of the operation filter.
        """
        audit_filter = audit_filter or AuditFilter()
        execution_type = audit_filter.operation_type or OperationType.WORKFLOW_COMPLETE

        total = 0
        succeeded = 0
        duration_sum = 0.0
        branches_created = 0
        async for entry in self._matching(audit_filter.time_range_only()):
            if entry.operation_type == OperationType.BRANCH_CREATE and entry.outcome == AuditOutcome.SUCCESS:
                branches_created += 1
            if entry.operation_type != execution_type or entry.outcome == AuditOutcome.RETRY:
                continue
            total += 1
            duration_sum += entry.duration_ms
            if entry.outcome == AuditOutcome.SUCCESS:
                succeeded += 1

        return MetricsSnapshot(
            total_executions=total,
            success_rate=succeeded / total if total else 0.0,
            average_duration_ms=duration_sum / total if total else 0.0,
            branch_creation_count=branches_created,
        )

    async def statistics(self, audit_filter: AuditFilter | None = None) -> dict[str, Any]:
        """Counts of matching entries by operation type and by outcome."""
        by_operation: Counter[str] = Counter()
        by_outcome: Counter[str] = Counter()
        total = 0
        async for entry in self._matching(audit_filter or AuditFilter()):
            total += 1
            by_operation[entry.operation_type.value] += 1
            by_outcome[entry.outcome.value] += 1
        return {
            "total_entries": total,
            "by_operation": dict(sorted(by_operation.items())),
            "by_outcome": dict(sorted(by_outcome.items())),
        }
