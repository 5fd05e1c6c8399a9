from __future__ import annotations

from fastapi import APIRouter, Depends

from citewatch.api.deps import get_queue_store
from citewatch.models.schemas import QueueStatsResponse
from citewatch.queue.base import QueueStore
from citewatch.queue.work_queue import WorkQueue

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(store: QueueStore = Depends(get_queue_store)):
    return QueueStatsResponse(**await WorkQueue(store).stats())
