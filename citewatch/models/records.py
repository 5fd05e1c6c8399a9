from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, field_validator


class ItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(StrEnum):
    CHATGPT = "chatgpt"
    PERPLEXITY = "perplexity"


class CrawlMethod(StrEnum):
    BASIC = "basic"
    JS_RENDERING = "js_rendering"
    PREMIUM = "premium"
    FAILED = "failed"


@dataclass(slots=True)
class Competitor:
    name: str
    domain: str = ""


@dataclass(slots=True)
class ClientContext:
    name: str = ""
    domain: str = ""
    competitors: list[Competitor] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QueryPayload:
    """What a work item asks for. Never changes after enqueue."""

    query_text: str
    platform: Platform
    keyword: str = ""
    intent: str = ""
    client: ClientContext = field(default_factory=ClientContext)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["platform"] = self.platform.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueryPayload:
        client_data = data.get("client") or {}
        competitors = [
            Competitor(name=str(c.get("name", "")), domain=str(c.get("domain", "")))
            for c in client_data.get("competitors") or []
            if isinstance(c, dict)
        ]
        return cls(
            query_text=str(data.get("query_text", "")),
            platform=Platform(data.get("platform", Platform.CHATGPT.value)),
            keyword=str(data.get("keyword") or ""),
            intent=str(data.get("intent") or ""),
            client=ClientContext(
                name=str(client_data.get("name") or ""),
                domain=str(client_data.get("domain") or ""),
                competitors=competitors,
            ),
        )


@dataclass(slots=True)
class WorkItem:
    id: str
    run_id: str
    payload: QueryPayload
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    processor_id: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class AnalysisRun:
    id: str
    queries_total: int
    queries_completed: int = 0
    queries_failed: int = 0
    status: RunStatus = RunStatus.PENDING
    platform: str = ""
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def progress(self) -> float:
        if self.queries_total <= 0:
            return 1.0
        return round(self.queries_completed / self.queries_total, 4)


@dataclass(slots=True)
class Citation:
    url: str
    domain: str
    position: int
    source: str
    title: str = ""


@dataclass(slots=True)
class CrawlResult:
    status_code: int
    method: CrawlMethod
    html_length: int = 0
    word_count: int = 0
    duration_ms: int = 0
    success: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["method"] = self.method.value
        return data


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: dict[str, Any]
    stored_at: datetime
    stale: bool = False
    from_cache: bool = False


def _clamp_score(value: Any, default: int) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    if score < 1 or score > 10:
        return default
    return score


DEFAULT_QUALITY_SCORE = 6


class ContentQualityRecord(BaseModel):
    """Scores for one crawled page, 1-10 scale."""

    content_depth_score: int = DEFAULT_QUALITY_SCORE
    content_uniqueness: int = DEFAULT_QUALITY_SCORE
    eeat_score: int = DEFAULT_QUALITY_SCORE
    citation_match_quality: int = DEFAULT_QUALITY_SCORE
    analysis_score: int = DEFAULT_QUALITY_SCORE
    content_type: str = "Article"
    topical_cluster: str = "General"
    is_fallback: bool = False

    @field_validator(
        "content_depth_score",
        "content_uniqueness",
        "eeat_score",
        "citation_match_quality",
        "analysis_score",
        mode="before",
    )
    @classmethod
    def _score_in_range(cls, value: Any) -> int:
        return _clamp_score(value, DEFAULT_QUALITY_SCORE)

    @classmethod
    def default(cls) -> ContentQualityRecord:
        return cls(is_fallback=True)


class QueryClassification(BaseModel):
    """Metadata describing an AI response to a query."""

    query_category: str = "general"
    query_type: str = "informational"
    funnel_stage: str = "awareness"
    brand_mentioned: bool = False
    brand_mention_count: int = 0
    competitor_mentioned_names: list[str] = []
    is_fallback: bool = False

    @classmethod
    def default(cls) -> QueryClassification:
        return cls(is_fallback=True)


class OnPageSeoRecord(BaseModel):
    """Structural facts about a crawled page, read from its HTML."""

    page_title: str = ""
    meta_description: str = ""
    word_count: int = 0
    heading_count: int = 0
    heading_counts: dict[str, int] = {}
    image_count: int = 0
    video_present: bool = False
    table_count: int = 0
    unordered_list_count: int = 0
    ordered_list_count: int = 0
    internal_link_count: int = 0
    folder_depth: int = 0
    schema_markup_present: bool = False
    aria_labels_present: bool = False
    is_fallback: bool = False

    @classmethod
    def default(cls) -> OnPageSeoRecord:
        return cls(is_fallback=True)


@dataclass(slots=True)
class PageAnalysis:
    citation: Citation
    crawl: CrawlResult
    crawl_attempts: list[CrawlResult] = field(default_factory=list)
    quality: ContentQualityRecord = field(default_factory=ContentQualityRecord.default)
    seo: OnPageSeoRecord = field(default_factory=OnPageSeoRecord.default)
    is_client_domain: bool = False
    is_competitor_domain: bool = False
    from_cache: bool = False
    crawl_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "citation_url": self.citation.url,
            "domain": self.citation.domain,
            "citation_position": self.citation.position,
            "citation_source": self.citation.source,
            "title": self.citation.title,
            "crawl_result": self.crawl.to_dict(),
            "crawl_attempts": [a.to_dict() for a in self.crawl_attempts],
            "content_quality": self.quality.model_dump(),
            "on_page_seo": self.seo.model_dump(),
            "is_client_domain": self.is_client_domain,
            "is_competitor_domain": self.is_competitor_domain,
            "from_cache": self.from_cache,
            "crawl_error": self.crawl_error,
        }


@dataclass(slots=True)
class QueryResult:
    item_id: str
    run_id: str
    platform: Platform
    query_text: str
    response_text: str
    citations: list[Citation] = field(default_factory=list)
    classification: QueryClassification = field(default_factory=QueryClassification.default)
    page_analyses: list[PageAnalysis] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "run_id": self.run_id,
            "platform": self.platform.value,
            "query_text": self.query_text,
            "model_response": self.response_text,
            "citation_count": len(self.citations),
            "citations": [asdict(c) for c in self.citations],
            "classification": self.classification.model_dump(),
            "associated_pages": [p.to_dict() for p in self.page_analyses],
            "associated_pages_count": len(self.page_analyses),
        }
