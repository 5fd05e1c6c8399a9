from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from citewatch.config import settings
from citewatch.models.records import (
    AnalysisRun,
    ClientContext,
    Platform,
    QueryPayload,
    RunStatus,
    WorkItem,
)
from citewatch.queue.base import QueueStore
from citewatch.services.logger import log_event


def expand_platforms(platform: str) -> list[Platform]:
    """`both` fans a query out to every supported platform."""
    value = (platform or "").lower().strip()
    if value == "both":
        return list(Platform)
    return [Platform(value)]


def build_payloads(
    queries: list[dict[str, Any]],
    platform: str,
    client: ClientContext | None = None,
) -> list[QueryPayload]:
    client = client or ClientContext()
    payloads: list[QueryPayload] = []
    for query in queries:
        text = str(query.get("query_text") or query.get("query") or "").strip()
        if not text:
            continue
        for target in expand_platforms(platform):
            payloads.append(
                QueryPayload(
                    query_text=text,
                    platform=target,
                    keyword=str(query.get("keyword") or ""),
                    intent=str(query.get("intent") or ""),
                    client=client,
                )
            )
    return payloads


@dataclass(slots=True)
class RunProgress:
    run: AnalysisRun
    item_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id,
            "status": self.run.status.value,
            "platform": self.run.platform,
            "queries_total": self.run.queries_total,
            "queries_completed": self.run.queries_completed,
            "queries_failed": self.run.queries_failed,
            "progress": self.run.progress,
            "items": self.item_counts,
            "created_at": self.run.created_at.isoformat() if self.run.created_at else None,
            "completed_at": self.run.completed_at.isoformat() if self.run.completed_at else None,
        }


class RunAggregator:
    """Per-run counters and terminal status. The store moves them with each item transition."""

    def __init__(self, store: QueueStore):
        self.store = store

    async def create_run(
        self,
        payloads: list[QueryPayload],
        *,
        platform: str = "",
        max_attempts: int | None = None,
    ) -> tuple[AnalysisRun, list[str]]:
        max_attempts = max_attempts or settings.worker_max_attempts
        run = await self.store.create_run(len(payloads), platform, RunStatus.QUEUED)
        item_ids = [await self.store.enqueue(run.id, p, max_attempts) for p in payloads]
        log_event("run_created", f"Run {run.id} queued", run_id=run.id, items=len(item_ids))
        return run, item_ids

    async def item_finished(self, item: WorkItem) -> AnalysisRun | None:
        """Report the run once one of its items reached a terminal state.

        The store already counted the item in the same transaction as the item
        transition; this only reads the run back and logs when it finished.
        """
        run = await self.store.get_run(item.run_id)
        if run is not None and run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            log_event(
                "run_finished",
                f"Run {run.id} {run.status.value}",
                run_id=run.id,
                queries_total=run.queries_total,
                queries_failed=run.queries_failed,
            )
        return run

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        return await self.store.get_run(run_id)

    async def progress(self, run_id: str) -> RunProgress | None:
        run = await self.store.get_run(run_id)
        if run is None:
            return None
        return RunProgress(run=run, item_counts=await self.store.item_counts(run_id))
