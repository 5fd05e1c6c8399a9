from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- Requests ---


class CompetitorIn(BaseModel):
    name: str
    domain: str = ""


class QueryIn(BaseModel):
    query_text: str
    keyword: str = ""
    intent: str = ""


class CreateRunRequest(BaseModel):
    queries: list[QueryIn] = Field(min_length=1)
    platform: str = "chatgpt"  # chatgpt | perplexity | both
    client_name: str = ""
    client_domain: str = ""
    competitors: list[CompetitorIn] = []
    max_attempts: int | None = Field(default=None, ge=1, le=10)
    start_worker: bool = True


class WorkerRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=50)
    max_runtime: int | None = Field(default=None, ge=1000)


# --- Responses ---


class RunResponse(BaseModel):
    run_id: str
    status: str
    platform: str
    queries_total: int
    queries_completed: int
    queries_failed: int
    progress: float
    items: dict[str, int] = {}
    created_at: datetime | None = None
    completed_at: datetime | None = None


class CreateRunResponse(BaseModel):
    run_id: str
    status: str
    queries_total: int
    item_ids: list[str]
    worker_triggered: bool


class RetryFailedResponse(BaseModel):
    run_id: str
    requeued: int
    worker_triggered: bool


class WorkerSummaryResponse(BaseModel):
    processor_ids: list[str]
    processed: int
    failed: int
    retried: int
    batches: int
    reclaimed: int
    runtime_ms: int
    continued: bool
    stopped_reason: str
    error: str | None = None


class QueueStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
