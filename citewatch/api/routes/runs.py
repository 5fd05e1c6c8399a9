from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from citewatch.api.deps import get_queue_store
from citewatch.config import settings
from citewatch.models.records import ClientContext, Competitor
from citewatch.models.schemas import (
    CreateRunRequest,
    CreateRunResponse,
    RetryFailedResponse,
    RunResponse,
)
from citewatch.queue.base import QueueStore
from citewatch.queue.work_queue import WorkQueue
from citewatch.services.run_aggregator import RunAggregator, build_payloads
from citewatch.worker.trigger import make_trigger

router = APIRouter(prefix="/api/runs", tags=["runs"])


def kick_worker(store: QueueStore) -> bool:
    trigger = make_trigger(store=store)
    return trigger.trigger(settings.worker_batch_size, settings.worker_max_runtime_ms)


@router.post("", response_model=CreateRunResponse)
async def create_run(request: CreateRunRequest, store: QueueStore = Depends(get_queue_store)):
    client = ClientContext(
        name=request.client_name,
        domain=request.client_domain,
        competitors=[Competitor(name=c.name, domain=c.domain) for c in request.competitors],
    )
    try:
        payloads = build_payloads(
            [q.model_dump() for q in request.queries], request.platform, client
        )
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {request.platform}")
    if not payloads:
        raise HTTPException(status_code=400, detail="No non-empty queries supplied")

    run, item_ids = await RunAggregator(store).create_run(
        payloads, platform=request.platform, max_attempts=request.max_attempts
    )
    triggered = kick_worker(store) if request.start_worker else False
    return CreateRunResponse(
        run_id=run.id,
        status=run.status.value,
        queries_total=run.queries_total,
        item_ids=item_ids,
        worker_triggered=triggered,
    )


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, store: QueueStore = Depends(get_queue_store)):
    progress = await RunAggregator(store).progress(run_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse(**progress.to_dict())


@router.get("/{run_id}/results")
async def get_run_results(
    run_id: str, store: QueueStore = Depends(get_queue_store)
) -> list[dict[str, Any]]:
    if await store.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return await store.get_results(run_id)


@router.post("/{run_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(run_id: str, store: QueueStore = Depends(get_queue_store)):
    if await store.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    requeued = await WorkQueue(store).retry_failed(run_id)
    triggered = kick_worker(store) if requeued else False
    return RetryFailedResponse(run_id=run_id, requeued=requeued, worker_triggered=triggered)
