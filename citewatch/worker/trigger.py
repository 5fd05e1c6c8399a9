"""Continuation triggers: how a finishing worker hands remaining work to the next one."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Coroutine

import httpx
from loguru import logger

from citewatch.config import settings
from citewatch.services.logger import log_event

# strong refs so fire-and-forget tasks are not garbage collected mid-flight
_background_tasks: set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class ContinuationTrigger(ABC):
    @abstractmethod
    def trigger(self, batch_size: int, max_runtime_ms: int) -> bool:
        """Schedule the next worker without waiting for it. True if something was scheduled."""


class NoContinuation(ContinuationTrigger):
    def trigger(self, batch_size: int, max_runtime_ms: int) -> bool:
        return False


class HttpContinuation(ContinuationTrigger):
    """POSTs to the worker endpoint from a background task.

    The endpoint runs a full worker invocation, so a read timeout after the
    request was sent still counts as a delivered continuation.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.url = url or settings.worker_endpoint_url
        self.timeout = timeout if timeout is not None else settings.worker_trigger_timeout_seconds
        self._client = http_client

    def trigger(self, batch_size: int, max_runtime_ms: int) -> bool:
        spawn(self._post(batch_size, max_runtime_ms))
        log_event("continuation", "Worker continuation scheduled", url=self.url, batch_size=batch_size)
        return True

    async def _post(self, batch_size: int, max_runtime_ms: int) -> None:
        body = {"batch_size": batch_size, "max_runtime": max_runtime_ms}
        try:
            if self._client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    await client.post(self.url, json=body)
            else:
                await self._client.post(self.url, json=body, timeout=self.timeout)
        except httpx.ReadTimeout:
            logger.debug("Continuation request sent; not waiting for worker response")
        except httpx.HTTPError as exc:
            logger.error(f"Failed to trigger worker continuation at {self.url}: {exc}")


class InlineContinuation(ContinuationTrigger):
    """Runs the next worker in this process, for hosts without an execution ceiling."""

    def __init__(self, **worker_kwargs: Any):
        self.worker_kwargs = worker_kwargs
        self.tasks: set[asyncio.Task] = set()

    def trigger(self, batch_size: int, max_runtime_ms: int) -> bool:
        from citewatch.worker.controller import start_worker

        task = spawn(
            start_worker(batch_size, max_runtime_ms, trigger=self, **self.worker_kwargs)
        )
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return True

    async def wait(self) -> None:
        """Block until the chain of inline continuations has drained."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks))


def make_trigger(mode: str | None = None, **worker_kwargs: Any) -> ContinuationTrigger:
    """Trigger for `continuation_mode`; `worker_kwargs` reach inline workers only."""
    mode = (mode or settings.continuation_mode).lower().strip()
    if mode == "http":
        return HttpContinuation()
    if mode == "inline":
        return InlineContinuation(**worker_kwargs)
    if mode == "none":
        return NoContinuation()
    raise ValueError(f"Unknown continuation mode: {mode}")
