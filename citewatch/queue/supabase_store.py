"""Supabase queue store.

Uses the same SQL functions as the Postgres store, called over PostgREST RPC.
The supabase client is synchronous, so every execute runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any

from supabase import Client, create_client

from citewatch.config import settings
from citewatch.errors import QueueStoreError
from citewatch.models.records import (
    AnalysisRun,
    ItemStatus,
    QueryPayload,
    QueryResult,
    RunStatus,
    WorkItem,
)
from citewatch.queue.base import (
    QueueStore,
    item_from_row,
    parse_timestamp,
    run_from_row,
    utc_now,
)


class SupabaseQueueStore(QueueStore):
    def __init__(self, client: Client | None = None):
        self._client = client

    def client(self) -> Client:
        if self._client is None:
            if not settings.supabase_url or not settings.supabase_service_key:
                raise QueueStoreError(
                    "Supabase not configured. Set SUPABASE_URL and SUPABASE_SERVICE_KEY in .env"
                )
            self._client = create_client(settings.supabase_url, settings.supabase_service_key)
        return self._client

    async def _execute(self, query: Any) -> Any:
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as exc:
            raise QueueStoreError(f"Supabase queue store error: {exc}") from exc

    async def _rpc(self, name: str, params: dict[str, Any]) -> Any:
        result = await self._execute(self.client().rpc(name, params))
        return result.data

    async def create_run(
        self, queries_total: int, platform: str, status: RunStatus = RunStatus.QUEUED
    ) -> AnalysisRun:
        result = await self._execute(
            self.client()
            .table("analysis_runs")
            .insert({"queries_total": queries_total, "platform": platform, "status": status.value})
        )
        return run_from_row(result.data[0])

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        result = await self._execute(
            self.client().table("analysis_runs").select("*").eq("id", run_id)
        )
        return run_from_row(result.data[0]) if result.data else None

    async def enqueue(self, run_id: str, payload: QueryPayload, max_attempts: int) -> str:
        result = await self._execute(
            self.client()
            .table("analysis_queue")
            .insert({"run_id": run_id, "payload": payload.to_dict(), "max_attempts": max_attempts})
        )
        return str(result.data[0]["id"])

    async def get_item(self, item_id: str) -> WorkItem | None:
        result = await self._execute(
            self.client().table("analysis_queue").select("*").eq("id", item_id)
        )
        return item_from_row(result.data[0]) if result.data else None

    async def claim_batch(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        if batch_size <= 0:
            return []
        rows = await self._rpc(
            "claim_queue_batch", {"p_batch_size": batch_size, "p_processor_id": processor_id}
        )
        rows = sorted(
            rows or [],
            key=lambda row: (parse_timestamp(row.get("created_at")) or utc_now(), row.get("seq") or 0),
        )
        return [item_from_row(row) for row in rows]

    async def complete(self, item_id: str) -> bool:
        return bool(await self._rpc("complete_queue_item", {"p_item_id": item_id}))

    async def fail_or_retry(self, item_id: str, error: str) -> ItemStatus | None:
        status = await self._rpc("handle_queue_failure", {"p_item_id": item_id, "p_error": error})
        return ItemStatus(status) if status else None

    async def fail(self, item_id: str, error: str) -> bool:
        return bool(await self._rpc("fail_queue_item", {"p_item_id": item_id, "p_error": error}))

    async def reclaim_stuck(self, threshold: timedelta) -> int:
        count = await self._rpc(
            "reset_stuck_queue_items", {"p_threshold_seconds": int(threshold.total_seconds())}
        )
        return int(count or 0)

    async def pending_count(self, run_id: str | None = None) -> int:
        query = (
            self.client()
            .table("analysis_queue")
            .select("id", count="exact")
            .eq("status", ItemStatus.PENDING.value)
        )
        if run_id is not None:
            query = query.eq("run_id", run_id)
        result = await self._execute(query.limit(1))
        return int(result.count or 0)

    async def item_counts(self, run_id: str | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for status in ItemStatus:
            query = (
                self.client()
                .table("analysis_queue")
                .select("id", count="exact")
                .eq("status", status.value)
            )
            if run_id is not None:
                query = query.eq("run_id", run_id)
            result = await self._execute(query.limit(1))
            counts[status.value] = int(result.count or 0)
        return counts

    async def retry_failed(self, run_id: str) -> int:
        count = await self._rpc("retry_failed_queue_items", {"p_run_id": run_id})
        return int(count or 0)

    async def save_result(self, result: QueryResult) -> None:
        await self._execute(
            self.client()
            .table("query_results")
            .upsert(
                {
                    "item_id": result.item_id,
                    "run_id": result.run_id,
                    "result": result.to_dict(),
                    "updated_at": utc_now().isoformat(),
                },
                on_conflict="item_id",
            )
        )

    async def get_results(self, run_id: str) -> list[dict[str, Any]]:
        result = await self._execute(
            self.client()
            .table("query_results")
            .select("result")
            .eq("run_id", run_id)
            .order("updated_at")
        )
        rows = result.data or []
        return [
            json.loads(row["result"]) if isinstance(row["result"], str) else row["result"]
            for row in rows
        ]
