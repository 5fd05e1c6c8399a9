"""Bounded-runtime queue worker.

Each invocation reclaims stuck items, claims and processes batches until the
queue is empty or the wall-clock budget runs low, then hands any remaining
work to a fresh invocation through a continuation trigger.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable

from loguru import logger

from citewatch.config import settings
from citewatch.errors import DispatchError, QueueStoreError
from citewatch.models.records import ItemStatus, WorkItem
from citewatch.queue.base import QueueStore
from citewatch.queue.work_queue import WorkQueue, get_store
from citewatch.services.logger import log_event
from citewatch.services.query_executor import QueryExecutor
from citewatch.services.run_aggregator import RunAggregator
from citewatch.worker.trigger import ContinuationTrigger, make_trigger


@dataclass(slots=True)
class WorkerSummary:
    processor_ids: list[str]
    processed: int = 0
    failed: int = 0
    retried: int = 0
    batches: int = 0
    reclaimed: int = 0
    runtime_ms: int = 0
    continued: bool = False
    stopped_reason: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Worker:
    def __init__(
        self,
        queue: WorkQueue,
        aggregator: RunAggregator,
        executor: QueryExecutor,
        *,
        trigger: ContinuationTrigger | None = None,
        batch_size: int | None = None,
        max_runtime_ms: int | None = None,
        safety_margin_ms: int | None = None,
        item_delay_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.aggregator = aggregator
        self.executor = executor
        self.trigger = trigger or make_trigger()
        self.batch_size = batch_size or settings.worker_batch_size
        self.max_runtime_ms = max_runtime_ms or settings.worker_max_runtime_ms
        self.safety_margin_ms = (
            settings.worker_safety_margin_ms if safety_margin_ms is None else safety_margin_ms
        )
        self.item_delay_ms = settings.worker_item_delay_ms if item_delay_ms is None else item_delay_ms
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def run(self) -> WorkerSummary:
        started = self._clock()
        summary = WorkerSummary(processor_ids=[])

        try:
            summary.reclaimed = await self.queue.reclaim_stuck(
                timedelta(seconds=settings.worker_liveness_threshold_seconds)
            )
            while True:
                remaining = self.max_runtime_ms - self._elapsed_ms(started)
                if remaining < self.safety_margin_ms:
                    summary.stopped_reason = "time_budget"
                    break

                processor_id = f"worker-{uuid.uuid4().hex[:12]}"
                items = await self.queue.claim_batch(self.batch_size, processor_id)
                if not items:
                    summary.stopped_reason = "queue_empty"
                    break

                summary.batches += 1
                summary.processor_ids.append(processor_id)
                for index, item in enumerate(items):
                    if index > 0 and self.item_delay_ms > 0:
                        await asyncio.sleep(self.item_delay_ms / 1000)
                    await self._process(item, summary)
        except QueueStoreError as exc:
            logger.error(f"Worker aborted, queue store unavailable: {exc}")
            summary.error = str(exc)
            summary.stopped_reason = "store_error"

        summary.runtime_ms = self._elapsed_ms(started)

        if summary.error is None:
            pending = await self.queue.pending_count()
            if pending > 0:
                summary.continued = self.trigger.trigger(self.batch_size, self.max_runtime_ms)

        log_event("worker_finished", "Worker invocation finished", **summary.to_dict())
        return summary

    async def _process(self, item: WorkItem, summary: WorkerSummary) -> None:
        try:
            await self.executor.execute(item)
        except QueueStoreError:
            raise
        except DispatchError as exc:
            if exc.retryable:
                await self._retry_or_fail(item, str(exc), summary)
            else:
                if await self.queue.fail(item, str(exc)):
                    await self.aggregator.item_finished(item)
                    summary.failed += 1
            return
        except Exception as exc:
            # isolate the item; the error is kept on the item as last_error
            logger.exception(f"Item {item.id} failed")
            await self._retry_or_fail(item, f"{type(exc).__name__}: {exc}", summary)
            return

        if await self.queue.complete(item):
            await self.aggregator.item_finished(item)
            summary.processed += 1

    async def _retry_or_fail(self, item: WorkItem, error: str, summary: WorkerSummary) -> None:
        status = await self.queue.fail_or_retry(item, error)
        if status == ItemStatus.FAILED:
            await self.aggregator.item_finished(item)
            summary.failed += 1
        elif status == ItemStatus.PENDING:
            summary.retried += 1


async def start_worker(
    batch_size: int | None = None,
    max_runtime_ms: int | None = None,
    *,
    store: QueueStore | None = None,
    trigger: ContinuationTrigger | None = None,
    executor_factory: Callable[[WorkQueue, asyncio.Semaphore], QueryExecutor] | None = None,
    item_delay_ms: int | None = None,
) -> WorkerSummary:
    """One worker invocation; the entry point for HTTP, CLI and continuations.

    A store created here is closed on return; a passed-in store is left open.
    """
    owns_store = store is None
    queue = WorkQueue(store or get_store())
    await queue.initialize()

    semaphore = asyncio.Semaphore(max(settings.worker_max_parallel_citations, 1))
    if executor_factory is not None:
        executor = executor_factory(queue, semaphore)
    else:
        executor = QueryExecutor(queue, citation_semaphore=semaphore)

    worker = Worker(
        queue,
        RunAggregator(queue.store),
        executor,
        trigger=trigger,
        batch_size=batch_size,
        max_runtime_ms=max_runtime_ms,
        item_delay_ms=item_delay_ms,
    )
    try:
        return await worker.run()
    finally:
        if owns_store:
            await queue.close()
