from __future__ import annotations

from fastapi import APIRouter, Depends

from citewatch.api.deps import get_queue_store
from citewatch.models.schemas import WorkerRequest, WorkerSummaryResponse
from citewatch.queue.base import QueueStore
from citewatch.worker.controller import start_worker
from citewatch.worker.trigger import make_trigger

router = APIRouter(prefix="/api/worker", tags=["worker"])


@router.post("", response_model=WorkerSummaryResponse)
async def run_worker(
    request: WorkerRequest | None = None, store: QueueStore = Depends(get_queue_store)
):
    request = request or WorkerRequest()
    summary = await start_worker(
        request.batch_size,
        request.max_runtime,
        store=store,
        trigger=make_trigger(store=store),
    )
    return WorkerSummaryResponse(**summary.to_dict())
