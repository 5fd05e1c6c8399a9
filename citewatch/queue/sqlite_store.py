"""SQLite queue store.

WAL mode allows concurrent readers; every write runs inside `BEGIN IMMEDIATE`
so claimers serialize on the database write lock and never see overlapping
items. Blocking sqlite3 calls run in worker threads via `asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator

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
from citewatch.queue.base import (
    QueueStore,
    item_from_row,
    run_from_row,
    status_after_progress,
    truncate_error,
    utc_now,
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS analysis_runs (
  id TEXT PRIMARY KEY,
  queries_total INTEGER NOT NULL,
  queries_completed INTEGER NOT NULL DEFAULT 0,
  queries_failed INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'pending',
  platform TEXT,
  created_at TEXT NOT NULL,
  completed_at TEXT
);

CREATE TABLE IF NOT EXISTS analysis_queue (
  id TEXT PRIMARY KEY,
  seq INTEGER NOT NULL,
  run_id TEXT NOT NULL REFERENCES analysis_runs(id),
  payload TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 3,
  processor_id TEXT,
  claimed_at TEXT,
  completed_at TEXT,
  last_error TEXT,
  counted INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_status_created ON analysis_queue(status, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_queue_run ON analysis_queue(run_id);

CREATE TABLE IF NOT EXISTS query_results (
  item_id TEXT PRIMARY KEY,
  run_id TEXT NOT NULL,
  result TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_results_run ON query_results(run_id);
"""


class SQLiteQueueStore(QueueStore):
    def __init__(self, path: str | None = None):
        self.path = path or settings.sqlite_path
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        # autocommit mode; transactions are opened explicitly
        conn = sqlite3.connect(self.path, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise QueueStoreError(f"SQLite queue store error: {exc}") from exc
        finally:
            conn.close()

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise QueueStoreError(f"SQLite queue store error: {exc}") from exc
        finally:
            conn.close()

    async def _run(self, fn, *args):
        if not self._initialized:
            await self.initialize()
        return await asyncio.to_thread(fn, *args)

    def _initialize_sync(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=10.0)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        except sqlite3.Error as exc:
            raise QueueStoreError(f"Cannot initialize SQLite store at {self.path}: {exc}") from exc
        finally:
            conn.close()

    async def initialize(self) -> None:
        if self._initialized:
            return
        await asyncio.to_thread(self._initialize_sync)
        self._initialized = True
        logger.info(f"SQLite queue store ready at {self.path}")

    # runs

    def _create_run_sync(self, queries_total: int, platform: str, status: RunStatus) -> AnalysisRun:
        run_id = str(uuid.uuid4())
        now = utc_now().isoformat()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO analysis_runs (id, queries_total, status, platform, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (run_id, queries_total, status.value, platform, now),
            )
            row = conn.execute("SELECT * FROM analysis_runs WHERE id = ?", (run_id,)).fetchone()
        return run_from_row(row)

    async def create_run(
        self, queries_total: int, platform: str, status: RunStatus = RunStatus.QUEUED
    ) -> AnalysisRun:
        return await self._run(self._create_run_sync, queries_total, platform, status)

    def _get_run_sync(self, run_id: str) -> AnalysisRun | None:
        rows = self._read("SELECT * FROM analysis_runs WHERE id = ?", (run_id,))
        return run_from_row(rows[0]) if rows else None

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        return await self._run(self._get_run_sync, run_id)

    def _record_terminal(
        self, conn: sqlite3.Connection, run_id: str, *, counted: bool, failed: bool
    ) -> None:
        """Count one terminal item against its run inside the caller's transaction.

        An item already counted once (requeued by `retry_failed`) only moves the
        failed counter, so `queries_completed` never decreases or double counts.
        """
        conn.execute(
            "UPDATE analysis_runs SET "
            "queries_completed = CASE WHEN ? THEN queries_completed "
            "ELSE MIN(queries_completed + 1, queries_total) END, "
            "queries_failed = MIN(queries_failed + ?, queries_total) "
            "WHERE id = ?",
            (1 if counted else 0, 1 if failed else 0, run_id),
        )
        row = conn.execute("SELECT * FROM analysis_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return
        outstanding = conn.execute(
            "SELECT COUNT(*) FROM analysis_queue WHERE run_id = ? AND status IN (?, ?)",
            (run_id, ItemStatus.PENDING.value, ItemStatus.PROCESSING.value),
        ).fetchone()[0]
        status = status_after_progress(
            row["queries_total"], row["queries_completed"], row["queries_failed"], outstanding
        )
        completed_at = utc_now().isoformat() if status != RunStatus.RUNNING else None
        conn.execute(
            "UPDATE analysis_runs SET status = ?, completed_at = ? WHERE id = ?",
            (status.value, completed_at, run_id),
        )

    # items

    def _enqueue_sync(self, run_id: str, payload: QueryPayload, max_attempts: int) -> str:
        item_id = str(uuid.uuid4())
        with self._transaction() as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM analysis_queue").fetchone()[0]
            conn.execute(
                "INSERT INTO analysis_queue "
                "(id, seq, run_id, payload, status, max_attempts, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    item_id,
                    seq,
                    run_id,
                    json.dumps(payload.to_dict()),
                    ItemStatus.PENDING.value,
                    max_attempts,
                    utc_now().isoformat(),
                ),
            )
        return item_id

    async def enqueue(self, run_id: str, payload: QueryPayload, max_attempts: int) -> str:
        return await self._run(self._enqueue_sync, run_id, payload, max_attempts)

    def _get_item_sync(self, item_id: str) -> WorkItem | None:
        rows = self._read("SELECT * FROM analysis_queue WHERE id = ?", (item_id,))
        return item_from_row(rows[0]) if rows else None

    async def get_item(self, item_id: str) -> WorkItem | None:
        return await self._run(self._get_item_sync, item_id)

    def _claim_sync(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        now = utc_now().isoformat()
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM analysis_queue WHERE status = ? "
                "ORDER BY created_at ASC, seq ASC LIMIT ?",
                (ItemStatus.PENDING.value, batch_size),
            ).fetchall()
            ids = [row["id"] for row in rows]
            if not ids:
                return []
            placeholders = ",".join("?" for _ in ids)
            conn.execute(
                f"UPDATE analysis_queue SET status = ?, processor_id = ?, claimed_at = ? "
                f"WHERE id IN ({placeholders}) AND status = ?",
                (ItemStatus.PROCESSING.value, processor_id, now, *ids, ItemStatus.PENDING.value),
            )
            claimed = conn.execute(
                f"SELECT * FROM analysis_queue WHERE id IN ({placeholders}) AND processor_id = ? "
                f"ORDER BY created_at ASC, seq ASC",
                (*ids, processor_id),
            ).fetchall()
            run_ids = sorted({row["run_id"] for row in claimed})
            run_placeholders = ",".join("?" for _ in run_ids)
            conn.execute(
                f"UPDATE analysis_runs SET status = ? "
                f"WHERE id IN ({run_placeholders}) AND status IN (?, ?)",
                (RunStatus.RUNNING.value, *run_ids, RunStatus.PENDING.value, RunStatus.QUEUED.value),
            )
        return [item_from_row(row) for row in claimed]

    async def claim_batch(self, batch_size: int, processor_id: str) -> list[WorkItem]:
        if batch_size <= 0:
            return []
        return await self._run(self._claim_sync, batch_size, processor_id)

    def _complete_sync(self, item_id: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT run_id, counted FROM analysis_queue WHERE id = ? AND status = ?",
                (item_id, ItemStatus.PROCESSING.value),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE analysis_queue SET status = ?, completed_at = ?, last_error = NULL, "
                "counted = 1 WHERE id = ?",
                (ItemStatus.COMPLETED.value, utc_now().isoformat(), item_id),
            )
            self._record_terminal(conn, row["run_id"], counted=bool(row["counted"]), failed=False)
            return True

    async def complete(self, item_id: str) -> bool:
        return await self._run(self._complete_sync, item_id)

    def _fail_or_retry_sync(self, item_id: str, error: str) -> ItemStatus | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT run_id, attempts, max_attempts, counted FROM analysis_queue "
                "WHERE id = ? AND status = ?",
                (item_id, ItemStatus.PROCESSING.value),
            ).fetchone()
            if row is None:
                return None
            attempts = row["attempts"] + 1
            if attempts >= row["max_attempts"]:
                conn.execute(
                    "UPDATE analysis_queue SET status = ?, attempts = ?, last_error = ?, "
                    "completed_at = ?, counted = 1 WHERE id = ?",
                    (
                        ItemStatus.FAILED.value,
                        attempts,
                        truncate_error(error),
                        utc_now().isoformat(),
                        item_id,
                    ),
                )
                self._record_terminal(conn, row["run_id"], counted=bool(row["counted"]), failed=True)
                return ItemStatus.FAILED
            conn.execute(
                "UPDATE analysis_queue SET status = ?, attempts = ?, last_error = ?, "
                "processor_id = NULL, claimed_at = NULL WHERE id = ?",
                (ItemStatus.PENDING.value, attempts, truncate_error(error), item_id),
            )
            return ItemStatus.PENDING

    async def fail_or_retry(self, item_id: str, error: str) -> ItemStatus | None:
        return await self._run(self._fail_or_retry_sync, item_id, error)

    def _fail_sync(self, item_id: str, error: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT run_id, counted FROM analysis_queue WHERE id = ? AND status = ?",
                (item_id, ItemStatus.PROCESSING.value),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE analysis_queue SET status = ?, attempts = attempts + 1, last_error = ?, "
                "completed_at = ?, counted = 1 WHERE id = ?",
                (ItemStatus.FAILED.value, truncate_error(error), utc_now().isoformat(), item_id),
            )
            self._record_terminal(conn, row["run_id"], counted=bool(row["counted"]), failed=True)
            return True

    async def fail(self, item_id: str, error: str) -> bool:
        return await self._run(self._fail_sync, item_id, error)

    def _reclaim_sync(self, threshold: timedelta) -> int:
        cutoff = (utc_now() - threshold).isoformat()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE analysis_queue SET status = ?, processor_id = NULL, claimed_at = NULL "
                "WHERE status = ? AND claimed_at < ?",
                (ItemStatus.PENDING.value, ItemStatus.PROCESSING.value, cutoff),
            )
            return cursor.rowcount

    async def reclaim_stuck(self, threshold: timedelta) -> int:
        return await self._run(self._reclaim_sync, threshold)

    def _pending_count_sync(self, run_id: str | None) -> int:
        if run_id is None:
            rows = self._read(
                "SELECT COUNT(*) AS n FROM analysis_queue WHERE status = ?",
                (ItemStatus.PENDING.value,),
            )
        else:
            rows = self._read(
                "SELECT COUNT(*) AS n FROM analysis_queue WHERE status = ? AND run_id = ?",
                (ItemStatus.PENDING.value, run_id),
            )
        return int(rows[0]["n"])

    async def pending_count(self, run_id: str | None = None) -> int:
        return await self._run(self._pending_count_sync, run_id)

    def _item_counts_sync(self, run_id: str | None) -> dict[str, int]:
        sql = "SELECT status, COUNT(*) AS n FROM analysis_queue"
        params: tuple = ()
        if run_id is not None:
            sql += " WHERE run_id = ?"
            params = (run_id,)
        rows = self._read(sql + " GROUP BY status", params)
        counts = {status.value: 0 for status in ItemStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    async def item_counts(self, run_id: str | None = None) -> dict[str, int]:
        return await self._run(self._item_counts_sync, run_id)

    def _retry_failed_sync(self, run_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE analysis_queue SET status = ?, attempts = 0, processor_id = NULL, "
                "claimed_at = NULL, completed_at = NULL, last_error = NULL "
                "WHERE run_id = ? AND status = ?",
                (ItemStatus.PENDING.value, run_id, ItemStatus.FAILED.value),
            )
            reset = cursor.rowcount
            if reset:
                conn.execute(
                    "UPDATE analysis_runs SET queries_failed = MAX(queries_failed - ?, 0), "
                    "status = ?, completed_at = NULL WHERE id = ?",
                    (reset, RunStatus.QUEUED.value, run_id),
                )
            return reset

    async def retry_failed(self, run_id: str) -> int:
        return await self._run(self._retry_failed_sync, run_id)

    def _save_result_sync(self, result: QueryResult) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO query_results (item_id, run_id, result, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(item_id) DO UPDATE SET result = excluded.result, "
                "updated_at = excluded.updated_at",
                (result.item_id, result.run_id, json.dumps(result.to_dict()), utc_now().isoformat()),
            )

    async def save_result(self, result: QueryResult) -> None:
        await self._run(self._save_result_sync, result)

    def _get_results_sync(self, run_id: str) -> list[dict[str, Any]]:
        rows = self._read(
            "SELECT result FROM query_results WHERE run_id = ? ORDER BY updated_at ASC", (run_id,)
        )
        return [json.loads(row["result"]) for row in rows]

    async def get_results(self, run_id: str) -> list[dict[str, Any]]:
        return await self._run(self._get_results_sync, run_id)
