from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

from citewatch.models.records import (
    AnalysisRun,
    ItemStatus,
    QueryPayload,
    QueryResult,
    RunStatus,
    WorkItem,
)

LAST_ERROR_MAX_CHARS = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def truncate_error(error: str) -> str:
    return (error or "")[:LAST_ERROR_MAX_CHARS]


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def item_from_row(row: Any) -> WorkItem:
    """Build a WorkItem from any mapping-like row (sqlite3.Row, asyncpg Record, dict)."""
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return WorkItem(
        id=str(row["id"]),
        run_id=str(row["run_id"]),
        payload=QueryPayload.from_dict(payload or {}),
        status=ItemStatus(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        processor_id=row["processor_id"],
        claimed_at=parse_timestamp(row["claimed_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
    )


def run_from_row(row: Any) -> AnalysisRun:
    return AnalysisRun(
        id=str(row["id"]),
        queries_total=int(row["queries_total"]),
        queries_completed=int(row["queries_completed"]),
        queries_failed=int(row["queries_failed"]),
        status=RunStatus(row["status"]),
        platform=row["platform"] or "",
        created_at=parse_timestamp(row["created_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
    )


def status_after_progress(
    total: int, completed: int, failed: int, outstanding: int = 0
) -> RunStatus:
    """Run status from its counters and the number of pending or processing items."""
    if completed < total or outstanding > 0:
        return RunStatus.RUNNING
    if total > 0 and failed >= total:
        return RunStatus.FAILED
    return RunStatus.COMPLETED


class QueueStore(ABC):
    """Durable storage for runs, work items and query results.

    Every state transition here is a single atomic statement or transaction;
    callers never read-modify-write counters.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def create_run(
        self, queries_total: int, platform: str, status: RunStatus = RunStatus.QUEUED
    ) -> AnalysisRun: ...

    @abstractmethod
    async def get_run(self, run_id: str) -> AnalysisRun | None: ...

    @abstractmethod
    async def enqueue(self, run_id: str, payload: QueryPayload, max_attempts: int) -> str: ...

    @abstractmethod
    async def get_item(self, item_id: str) -> WorkItem | None: ...

    @abstractmethod
    async def claim_batch(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        """Atomically move up to `batch_size` oldest pending items to processing.

        Runs that had not started yet move to running in the same transaction.
        """

    @abstractmethod
    async def complete(self, item_id: str) -> bool:
        """Mark a processing item completed and count it against its run in one transaction.

        True only for the call that made the transition.
        """

    @abstractmethod
    async def fail_or_retry(self, item_id: str, error: str) -> ItemStatus | None:
        """Consume an attempt; requeue or mark failed. None if the item was not processing.

        A failed outcome is counted against the run in the same transaction.
        """

    @abstractmethod
    async def fail(self, item_id: str, error: str) -> bool:
        """Mark a processing item failed without retry. False if it was not processing."""

    @abstractmethod
    async def reclaim_stuck(self, threshold: timedelta) -> int: ...

    @abstractmethod
    async def pending_count(self, run_id: str | None = None) -> int: ...

    @abstractmethod
    async def item_counts(self, run_id: str | None = None) -> dict[str, int]: ...

    @abstractmethod
    async def retry_failed(self, run_id: str) -> int:
        """Requeue the failed items of a run. Only `queries_failed` is rolled back."""

    @abstractmethod
    async def save_result(self, result: QueryResult) -> None:
        """Upsert keyed by item id; repeated saves overwrite."""

    @abstractmethod
    async def get_results(self, run_id: str) -> list[dict[str, Any]]: ...
