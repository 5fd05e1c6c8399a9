from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from citewatch.config import settings
from citewatch.errors import CrawlError, DispatchError, QueueStoreError
from citewatch.models.records import (
    CrawlMethod,
    CrawlResult,
    ItemStatus,
    Platform,
    QueryPayload,
    RunStatus,
)
from citewatch.queue.sqlite_store import SQLiteQueueStore
from citewatch.queue.work_queue import WorkQueue
from citewatch.services.dispatch import DispatchResult
from citewatch.services.query_executor import QueryExecutor
from citewatch.services.run_aggregator import RunAggregator
from citewatch.services.scoring import ContentScorer
from citewatch.tools.fetcher import PageFetch
from citewatch.worker import trigger as trigger_module
from citewatch.worker.controller import Worker, start_worker
from citewatch.worker.trigger import ContinuationTrigger, HttpContinuation, NoContinuation


class RecordingTrigger(ContinuationTrigger):
    def __init__(self):
        self.calls: list[tuple[int, int]] = []

    def trigger(self, batch_size: int, max_runtime_ms: int) -> bool:
        self.calls.append((batch_size, max_runtime_ms))
        return True


class FakeFetcher:
    def __init__(self, failing: set[str] | None = None, broken: set[str] | None = None):
        self.failing = failing or set()
        self.broken = broken or set()
        self.urls: list[str] = []

    async def fetch(self, url: str, *, bypass_cache: bool = False) -> PageFetch:
        self.urls.append(url)
        if url in self.broken:
            raise RuntimeError("connection pool closed")
        if url in self.failing:
            attempt = CrawlResult(status_code=404, method=CrawlMethod.BASIC, error="http error 404")
            raise CrawlError("Page not found (404)", url=url, status_code=404, attempts=[attempt])
        result = CrawlResult(
            status_code=200, method=CrawlMethod.BASIC, html_length=100, word_count=80, success=True
        )
        return PageFetch(
            url=url, html="<p>x</p>", text="page text", title="Page", result=result, attempts=[result]
        )


def _response(query_text: str) -> DispatchResult:
    content = f"For {query_text} see [Acme](https://acme.io/crm) and [Beta review](https://beta.io/review)."
    return DispatchResult(
        content=content,
        raw_response={"choices": [{"message": {"role": "assistant", "content": content}}]},
    )


@pytest.fixture(autouse=True)
def worker_settings(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "")
    monkeypatch.setattr(settings, "worker_liveness_threshold_seconds", 300)
    monkeypatch.setattr(settings, "worker_safety_margin_ms", 5000)


@pytest_asyncio.fixture
async def store(tmp_path):
    store = SQLiteQueueStore(path=str(tmp_path / "queue.sqlite"))
    await store.initialize()
    return store


def _executor_factory(dispatch_fn, fetcher=None, scorer=None):
    def build(queue, semaphore):
        return QueryExecutor(
            queue,
            fetcher=fetcher or FakeFetcher(),
            scorer=scorer or ContentScorer(),
            dispatch_fn=dispatch_fn,
            citation_semaphore=semaphore,
        )

    return build


async def _create_run(store, queries: list[str], max_attempts: int = 3):
    client_payloads = [QueryPayload(query_text=q, platform=Platform.CHATGPT) for q in queries]
    run, _ = await RunAggregator(store).create_run(
        client_payloads, platform="chatgpt", max_attempts=max_attempts
    )
    return run


@pytest.mark.asyncio
async def test_end_to_end_run_of_five_queries_completes(store):
    run = await _create_run(store, [f"best crm {n}" for n in range(5)])

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    summary = await start_worker(
        2,
        60000,
        store=store,
        trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch),
        item_delay_ms=0,
    )

    finished = await store.get_run(run.id)
    assert summary.processed == 5
    assert summary.batches == 3
    assert summary.stopped_reason == "queue_empty"
    assert finished.queries_completed == 5
    assert finished.status == RunStatus.COMPLETED
    counts = await store.item_counts(run.id)
    assert counts[ItemStatus.COMPLETED.value] == 5

    results = await store.get_results(run.id)
    assert len(results) == 5
    assert results[0]["citation_count"] == 2
    assert [p["citation_url"] for p in results[0]["associated_pages"]] == [
        "https://acme.io/crm",
        "https://beta.io/review",
    ]


@pytest.mark.asyncio
async def test_one_failing_item_does_not_abort_the_batch(store):
    run = await _create_run(store, ["good one", "bad one", "good two"], max_attempts=1)

    async def fake_dispatch(platform, query_text, options=None):
        if query_text == "bad one":
            raise DispatchError("platform 503", platform="chatgpt", retryable=True)
        return _response(query_text)

    summary = await start_worker(
        3, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch), item_delay_ms=0,
    )

    finished = await store.get_run(run.id)
    assert summary.processed == 2
    assert summary.failed == 1
    assert finished.queries_completed == 3
    assert finished.queries_failed == 1
    assert finished.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_transient_failure_is_retried_on_a_later_claim(store):
    run = await _create_run(store, ["flaky"], max_attempts=3)
    calls = 0

    async def fake_dispatch(platform, query_text, options=None):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise DispatchError("timeout", platform="chatgpt", retryable=True)
        return _response(query_text)

    summary = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch), item_delay_ms=0,
    )

    assert calls == 2
    assert summary.retried == 1
    assert summary.processed == 1
    assert (await store.get_run(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_non_retryable_dispatch_error_fails_immediately(store):
    run, (item_id,) = await RunAggregator(store).create_run(
        [QueryPayload(query_text="auth problem", platform=Platform.CHATGPT)], max_attempts=3
    )
    dispatch_fn = AsyncMock(side_effect=DispatchError("401", platform="chatgpt", retryable=False))

    summary = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(dispatch_fn), item_delay_ms=0,
    )

    assert dispatch_fn.await_count == 1
    assert summary.failed == 1
    item = await store.get_item(item_id)
    assert item.status == ItemStatus.FAILED
    assert item.attempts == 1
    assert (await store.get_run(run.id)).status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_crawl_failure_degrades_only_that_page(store):
    run = await _create_run(store, ["with broken link"])
    fetcher = FakeFetcher(failing={"https://beta.io/review"})

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch, fetcher), item_delay_ms=0,
    )

    (result,) = await store.get_results(run.id)
    pages = {p["citation_url"]: p for p in result["associated_pages"]}
    assert pages["https://acme.io/crm"]["crawl_error"] is None
    broken = pages["https://beta.io/review"]
    assert broken["crawl_error"].startswith("Page not found")
    assert broken["crawl_result"]["method"] == "failed"
    assert broken["content_quality"]["is_fallback"] is True
    assert broken["on_page_seo"]["is_fallback"] is True
    assert pages["https://acme.io/crm"]["on_page_seo"]["is_fallback"] is False
    assert pages["https://acme.io/crm"]["on_page_seo"]["folder_depth"] == 1
    assert (await store.get_run(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_fetch_error_degrades_only_that_page(store):
    run = await _create_run(store, ["flaky network"])
    fetcher = FakeFetcher(broken={"https://beta.io/review"})

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    summary = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch, fetcher), item_delay_ms=0,
    )

    assert summary.processed == 1
    (result,) = await store.get_results(run.id)
    pages = {p["citation_url"]: p for p in result["associated_pages"]}
    assert pages["https://acme.io/crm"]["crawl_error"] is None
    broken = pages["https://beta.io/review"]
    assert broken["crawl_error"] == "RuntimeError: connection pool closed"
    assert broken["crawl_result"]["method"] == "failed"
    assert broken["on_page_seo"]["is_fallback"] is True
    assert (await store.get_run(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_scorer_reply_without_choices_still_completes_item(store):
    run = await _create_run(store, ["empty model reply"])
    client = SimpleNamespace(
        chat=SimpleNamespace(
            completions=SimpleNamespace(
                create=AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
            )
        )
    )

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    summary = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch, scorer=ContentScorer(client=client)),
        item_delay_ms=0,
    )

    assert summary.processed == 1
    assert summary.failed == 0
    assert summary.retried == 0
    (result,) = await store.get_results(run.id)
    assert all(p["content_quality"]["is_fallback"] for p in result["associated_pages"])
    assert (await store.get_run(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_progress_write_failure_rolls_back_completion(store, monkeypatch):
    run = await _create_run(store, ["a"])
    record_terminal = store._record_terminal
    calls = 0

    def flaky_record_terminal(conn, run_id, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise sqlite3.OperationalError("disk I/O error")
        return record_terminal(conn, run_id, **kwargs)

    monkeypatch.setattr(store, "_record_terminal", flaky_record_terminal)

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    first = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch), item_delay_ms=0,
    )

    assert first.stopped_reason == "store_error"
    assert first.processed == 0
    counts = await store.item_counts(run.id)
    assert counts[ItemStatus.PROCESSING.value] == 1
    assert counts[ItemStatus.COMPLETED.value] == 0
    stalled = await store.get_run(run.id)
    assert stalled.queries_completed == 0
    assert stalled.status == RunStatus.RUNNING

    monkeypatch.setattr(settings, "worker_liveness_threshold_seconds", 0)
    second = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch), item_delay_ms=0,
    )

    assert second.reclaimed == 1
    assert second.processed == 1
    finished = await store.get_run(run.id)
    assert finished.queries_completed == 1
    assert finished.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_item_reclaimed_mid_flight_is_counted_once(store):
    run = await _create_run(store, ["slow query"])
    calls = 0

    async def slow_dispatch(platform, query_text, options=None):
        nonlocal calls
        calls += 1
        if calls == 1:
            # another worker's liveness sweep takes the item back while we work
            await store.reclaim_stuck(timedelta(0))
        return _response(query_text)

    summary = await start_worker(
        1, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(slow_dispatch), item_delay_ms=0,
    )

    assert calls == 2
    assert summary.processed == 1
    assert summary.batches == 2
    finished = await store.get_run(run.id)
    assert finished.queries_completed == 1
    assert finished.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_crashed_items_are_reclaimed_and_finished(store, monkeypatch):
    run = await _create_run(store, ["a", "b"])
    await WorkQueue(store).claim_batch(2, "worker-that-died")
    monkeypatch.setattr(settings, "worker_liveness_threshold_seconds", 0)

    async def fake_dispatch(platform, query_text, options=None):
        return _response(query_text)

    summary = await start_worker(
        2, 60000, store=store, trigger=NoContinuation(),
        executor_factory=_executor_factory(fake_dispatch), item_delay_ms=0,
    )

    assert summary.reclaimed == 2
    assert (await store.get_run(run.id)).queries_completed == 2


@pytest.mark.asyncio
async def test_exhausted_budget_triggers_continuation(store):
    await _create_run(store, ["a", "b", "c"])
    trigger = RecordingTrigger()
    queue = WorkQueue(store)
    dispatch_fn = AsyncMock(side_effect=lambda platform, query_text, options=None: _response(query_text))
    ticks = iter([0.0, 0.0] + [30.0] * 10)

    worker = Worker(
        queue,
        RunAggregator(store),
        _executor_factory(dispatch_fn)(queue, asyncio.Semaphore(2)),
        trigger=trigger,
        batch_size=1,
        max_runtime_ms=25000,
        safety_margin_ms=5000,
        item_delay_ms=0,
        clock=lambda: next(ticks),
    )
    summary = await worker.run()

    assert summary.stopped_reason == "time_budget"
    assert summary.batches == 1
    assert summary.continued is True
    assert trigger.calls == [(1, 25000)]
    assert await queue.pending_count() == 2


@pytest.mark.asyncio
async def test_empty_queue_does_not_continue(store):
    trigger = RecordingTrigger()

    summary = await start_worker(
        3, 25000, store=store, trigger=trigger,
        executor_factory=_executor_factory(AsyncMock()), item_delay_ms=0,
    )

    assert summary.stopped_reason == "queue_empty"
    assert summary.continued is False
    assert trigger.calls == []


@pytest.mark.asyncio
async def test_store_failure_aborts_loop_and_reports_error(store):
    await _create_run(store, ["a"])
    trigger = RecordingTrigger()
    store.claim_batch = AsyncMock(side_effect=QueueStoreError("database is locked"))

    summary = await start_worker(
        3, 25000, store=store, trigger=trigger,
        executor_factory=_executor_factory(AsyncMock()), item_delay_ms=0,
    )

    assert summary.stopped_reason == "store_error"
    assert summary.error == "database is locked"
    assert trigger.calls == []


@pytest.mark.asyncio
async def test_http_continuation_posts_in_background():
    requests: list[httpx.Request] = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"processed": 0})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    continuation = HttpContinuation("http://worker.local/api/worker", http_client=client)

    assert continuation.trigger(3, 25000) is True
    assert requests == []
    await asyncio.gather(*list(trigger_module._background_tasks))

    assert len(requests) == 1
    assert requests[0].url == "http://worker.local/api/worker"
    assert json.loads(requests[0].content) == {"batch_size": 3, "max_runtime": 25000}
