"""PostgreSQL queue store using asyncpg.

Claims, failures, reclaim and run progress go through the SQL functions in
migrations/001_analysis_queue.sql so every transition is a single statement.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

import asyncpg
from loguru import logger

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
from citewatch.queue.base import QueueStore, item_from_row, run_from_row

MIGRATION_PATH = Path(__file__).resolve().parents[2] / "migrations" / "001_analysis_queue.sql"


class PostgresQueueStore(QueueStore):
    def __init__(self, database_url: str | None = None, *, apply_migrations: bool = True):
        self.database_url = database_url or settings.database_url
        self.apply_migrations = apply_migrations
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise QueueStoreError("Database not configured. Set DATABASE_URL in .env")
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
            except (OSError, asyncpg.PostgresError) as exc:
                raise QueueStoreError(f"Cannot connect to Postgres: {exc}") from exc
        return self._pool

    async def initialize(self) -> None:
        pool = await self._get_pool()
        if self.apply_migrations and MIGRATION_PATH.exists():
            async with pool.acquire() as conn:
                await conn.execute(MIGRATION_PATH.read_text(encoding="utf-8"))
            logger.info("Postgres queue schema applied")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _fetch(self, sql: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(sql, *args)
        except (OSError, asyncpg.PostgresError) as exc:
            raise QueueStoreError(f"Postgres queue store error: {exc}") from exc

    async def _fetchval(self, sql: str, *args: Any) -> Any:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(sql, *args)
        except (OSError, asyncpg.PostgresError) as exc:
            raise QueueStoreError(f"Postgres queue store error: {exc}") from exc

    async def create_run(
        self, queries_total: int, platform: str, status: RunStatus = RunStatus.QUEUED
    ) -> AnalysisRun:
        rows = await self._fetch(
            """
            INSERT INTO analysis_runs (queries_total, platform, status)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            queries_total,
            platform,
            status.value,
        )
        return run_from_row(rows[0])

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        rows = await self._fetch("SELECT * FROM analysis_runs WHERE id = $1::uuid", run_id)
        return run_from_row(rows[0]) if rows else None

    async def enqueue(self, run_id: str, payload: QueryPayload, max_attempts: int) -> str:
        item_id = await self._fetchval(
            """
            INSERT INTO analysis_queue (run_id, payload, max_attempts)
            VALUES ($1::uuid, $2::jsonb, $3)
            RETURNING id
            """,
            run_id,
            json.dumps(payload.to_dict()),
            max_attempts,
        )
        return str(item_id)

    async def get_item(self, item_id: str) -> WorkItem | None:
        rows = await self._fetch("SELECT * FROM analysis_queue WHERE id = $1::uuid", item_id)
        return item_from_row(rows[0]) if rows else None

    async def claim_batch(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        if batch_size <= 0:
            return []
        rows = await self._fetch(
            "SELECT * FROM claim_queue_batch($1, $2) ORDER BY created_at, seq",
            batch_size,
            processor_id,
        )
        return [item_from_row(row) for row in rows]

    async def complete(self, item_id: str) -> bool:
        return bool(await self._fetchval("SELECT complete_queue_item($1::uuid)", item_id))

    async def fail_or_retry(self, item_id: str, error: str) -> ItemStatus | None:
        status = await self._fetchval(
            "SELECT handle_queue_failure($1::uuid, $2)", item_id, error
        )
        return ItemStatus(status) if status else None

    async def fail(self, item_id: str, error: str) -> bool:
        return bool(await self._fetchval("SELECT fail_queue_item($1::uuid, $2)", item_id, error))

    async def reclaim_stuck(self, threshold: timedelta) -> int:
        count = await self._fetchval(
            "SELECT reset_stuck_queue_items($1)", int(threshold.total_seconds())
        )
        return int(count or 0)

    async def pending_count(self, run_id: str | None = None) -> int:
        if run_id is None:
            count = await self._fetchval(
                "SELECT COUNT(*) FROM analysis_queue WHERE status = 'pending'"
            )
        else:
            count = await self._fetchval(
                "SELECT COUNT(*) FROM analysis_queue WHERE status = 'pending' AND run_id = $1::uuid",
                run_id,
            )
        return int(count or 0)

    async def item_counts(self, run_id: str | None = None) -> dict[str, int]:
        if run_id is None:
            rows = await self._fetch(
                "SELECT status, COUNT(*) AS n FROM analysis_queue GROUP BY status"
            )
        else:
            rows = await self._fetch(
                "SELECT status, COUNT(*) AS n FROM analysis_queue "
                "WHERE run_id = $1::uuid GROUP BY status",
                run_id,
            )
        counts = {status.value: 0 for status in ItemStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    async def retry_failed(self, run_id: str) -> int:
        count = await self._fetchval("SELECT retry_failed_queue_items($1::uuid)", run_id)
        return int(count or 0)

    async def save_result(self, result: QueryResult) -> None:
        await self._fetch(
            """
            INSERT INTO query_results (item_id, run_id, result, updated_at)
            VALUES ($1::uuid, $2::uuid, $3::jsonb, now())
            ON CONFLICT (item_id) DO UPDATE
               SET result = EXCLUDED.result, updated_at = EXCLUDED.updated_at
            """,
            result.item_id,
            result.run_id,
            json.dumps(result.to_dict()),
        )

    async def get_results(self, run_id: str) -> list[dict[str, Any]]:
        rows = await self._fetch(
            "SELECT result FROM query_results WHERE run_id = $1::uuid ORDER BY updated_at",
            run_id,
        )
        results = []
        for row in rows:
            value = row["result"]
            results.append(json.loads(value) if isinstance(value, str) else dict(value))
        return results
