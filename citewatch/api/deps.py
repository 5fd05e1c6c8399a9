from __future__ import annotations

from fastapi import Request

from citewatch.queue.base import QueueStore


def get_queue_store(request: Request) -> QueueStore:
    return request.app.state.store
