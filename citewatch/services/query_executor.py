from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable

from loguru import logger

from citewatch.config import settings
from citewatch.errors import CrawlError, SkippedURLError
from citewatch.models.records import (
    Citation,
    ContentQualityRecord,
    CrawlMethod,
    CrawlResult,
    OnPageSeoRecord,
    PageAnalysis,
    QueryClassification,
    QueryPayload,
    QueryResult,
    WorkItem,
)
from citewatch.queue.work_queue import WorkQueue
from citewatch.services.dispatch import DispatchResult, dispatch
from citewatch.services.scoring import ContentScorer
from citewatch.tools.citation_extractor import extract_citations
from citewatch.tools.fetcher import Fetcher
from citewatch.tools.page_seo import extract_on_page_seo
from citewatch.tools.web_utils import domains_match

DispatchFn = Callable[..., Awaitable[DispatchResult]]


class QueryExecutor:
    """Runs one work item: dispatch, extract citations, crawl and score each page, persist.

    Dispatch errors propagate and fail the item. Crawl or scoring problems on
    a single citation only degrade that page analysis.
    """

    def __init__(
        self,
        queue: WorkQueue,
        *,
        fetcher: Fetcher | None = None,
        scorer: ContentScorer | None = None,
        dispatch_fn: DispatchFn | None = None,
        citation_semaphore: asyncio.Semaphore | None = None,
    ):
        self.queue = queue
        self.fetcher = fetcher or Fetcher()
        self.scorer = scorer or ContentScorer()
        self.dispatch_fn = dispatch_fn or dispatch
        self.citation_semaphore = citation_semaphore or asyncio.Semaphore(
            max(settings.worker_max_parallel_citations, 1)
        )

    async def execute(self, item: WorkItem) -> QueryResult:
        payload = item.payload
        response = await self.dispatch_fn(payload.platform, payload.query_text)

        citations = extract_citations(response.raw_response)
        if not citations and response.raw_citations:
            citations = extract_citations({"citations": response.raw_citations})
        logger.info(f"Item {item.id}: {len(citations)} citations from {payload.platform.value}")

        analyses = await asyncio.gather(*(self._analyze(c, payload) for c in citations))
        try:
            classification = await self.scorer.classify(response.content, payload)
        except Exception:
            logger.exception(f"Item {item.id}: classification failed, using default record")
            classification = QueryClassification.default()

        result = QueryResult(
            item_id=item.id,
            run_id=item.run_id,
            platform=payload.platform,
            query_text=payload.query_text,
            response_text=response.content,
            citations=citations,
            classification=classification,
            page_analyses=list(analyses),
        )
        await self.queue.save_result(result)
        return result

    async def _analyze(self, citation: Citation, payload: QueryPayload) -> PageAnalysis:
        flags = self._domain_flags(citation, payload)
        async with self.citation_semaphore:
            try:
                page = await self.fetcher.fetch(citation.url)
            except CrawlError as exc:
                if not isinstance(exc, SkippedURLError):
                    logger.warning(f"Crawl failed for {citation.url}: {exc}")
                return self._degraded(
                    citation, flags, str(exc), status_code=exc.status_code or 0, attempts=exc.attempts
                )
            except Exception as exc:
                logger.exception(f"Unexpected fetch failure for {citation.url}")
                return self._degraded(citation, flags, f"{type(exc).__name__}: {exc}")

            try:
                quality = await self.scorer.score(page.text, payload.query_text)
            except Exception:
                logger.exception(f"Scoring failed for {citation.url}, using default record")
                quality = ContentQualityRecord.default()

        if not citation.title and page.title:
            citation = replace(citation, title=page.title)
        return PageAnalysis(
            citation=citation,
            crawl=page.result,
            crawl_attempts=page.attempts,
            quality=quality,
            seo=extract_on_page_seo(page.html, page.url or citation.url),
            from_cache=page.from_cache,
            **flags,
        )

    @staticmethod
    def _degraded(
        citation: Citation,
        flags: dict[str, Any],
        error: str,
        *,
        status_code: int = 0,
        attempts: list[CrawlResult] | None = None,
    ) -> PageAnalysis:
        return PageAnalysis(
            citation=citation,
            crawl=CrawlResult(status_code=status_code, method=CrawlMethod.FAILED, error=error),
            crawl_attempts=list(attempts or []),
            quality=ContentQualityRecord.default(),
            seo=OnPageSeoRecord.default(),
            crawl_error=error,
            **flags,
        )

    @staticmethod
    def _domain_flags(citation: Citation, payload: QueryPayload) -> dict[str, Any]:
        client = payload.client
        return {
            "is_client_domain": domains_match(citation.domain, client.domain),
            "is_competitor_domain": any(
                domains_match(citation.domain, c.domain) for c in client.competitors
            ),
        }
