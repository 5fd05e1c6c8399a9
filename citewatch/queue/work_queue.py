from __future__ import annotations

from datetime import timedelta
from typing import Any

from citewatch.config import settings
from citewatch.models.records import (
    ItemStatus,
    QueryPayload,
    QueryResult,
    WorkItem,
)
from citewatch.queue.base import QueueStore
from citewatch.services.logger import log_queue_operation


def get_store(backend: str | None = None) -> QueueStore:
    """Build the store selected by `queue_backend`."""
    backend = (backend or settings.queue_backend).lower().strip()
    if backend == "sqlite":
        from citewatch.queue.sqlite_store import SQLiteQueueStore

        return SQLiteQueueStore()
    if backend == "postgres":
        from citewatch.queue.postgres_store import PostgresQueueStore

        return PostgresQueueStore()
    if backend == "supabase":
        from citewatch.queue.supabase_store import SupabaseQueueStore

        return SupabaseQueueStore()
    raise ValueError(f"Unknown queue backend: {backend}")


class WorkQueue:
    """Item-level queue operations over a store backend.

    `complete`, `fail` and `fail_or_retry` act only on processing items and report
    whether this caller made the transition. The store counts a terminal item
    against its run in the same transaction.
    """

    def __init__(self, store: QueueStore | None = None):
        self.store = store or get_store()

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    async def get_item(self, item_id: str) -> WorkItem | None:
        return await self.store.get_item(item_id)

    async def enqueue(
        self, run_id: str, payload: QueryPayload, *, max_attempts: int | None = None
    ) -> str:
        return await self.store.enqueue(
            run_id, payload, max_attempts or settings.worker_max_attempts
        )

    async def claim_batch(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        items = await self.store.claim_batch(batch_size, processor_id)
        if items:
            log_queue_operation(
                "claim_batch",
                "claimed",
                details={"processor_id": processor_id, "count": len(items)},
            )
        return items

    async def complete(self, item: WorkItem) -> bool:
        transitioned = await self.store.complete(item.id)
        if transitioned:
            log_queue_operation("complete", "completed", item_id=item.id, run_id=item.run_id)
        else:
            log_queue_operation(
                "complete", "noop", item_id=item.id, run_id=item.run_id,
                details={"reason": "not processing"},
            )
        return transitioned

    async def fail_or_retry(self, item: WorkItem, error: str) -> ItemStatus | None:
        status = await self.store.fail_or_retry(item.id, error)
        log_queue_operation(
            "fail_or_retry",
            status.value if status else "noop",
            item_id=item.id,
            run_id=item.run_id,
            error=error,
        )
        return status

    async def fail(self, item: WorkItem, error: str) -> bool:
        transitioned = await self.store.fail(item.id, error)
        log_queue_operation(
            "fail", "failed" if transitioned else "noop",
            item_id=item.id, run_id=item.run_id, error=error,
        )
        return transitioned

    async def reclaim_stuck(self, threshold: timedelta | None = None) -> int:
        if threshold is None:
            threshold = timedelta(seconds=settings.worker_liveness_threshold_seconds)
        count = await self.store.reclaim_stuck(threshold)
        if count:
            log_queue_operation("reclaim_stuck", "reclaimed", details={"count": count})
        return count

    async def pending_count(self, run_id: str | None = None) -> int:
        return await self.store.pending_count(run_id)

    async def stats(self, run_id: str | None = None) -> dict[str, Any]:
        counts = await self.store.item_counts(run_id)
        return {"total": sum(counts.values()), **counts}

    async def retry_failed(self, run_id: str) -> int:
        count = await self.store.retry_failed(run_id)
        log_queue_operation("retry_failed", "requeued", run_id=run_id, details={"count": count})
        return count

    async def save_result(self, result: QueryResult) -> None:
        await self.store.save_result(result)

    async def get_results(self, run_id: str) -> list[dict[str, Any]]:
        return await self.store.get_results(run_id)
