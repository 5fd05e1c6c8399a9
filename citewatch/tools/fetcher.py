from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from citewatch.config import settings
from citewatch.errors import CrawlError, SkippedURLError
from citewatch.models.records import CrawlMethod, CrawlResult
from citewatch.services.logger import log_crawl_attempt
from citewatch.tools.cache import PageCache
from citewatch.tools.web_utils import is_valid_url

SKIP_DOMAINS = ("localhost", "127.0.0.1", "example.com", "test.com")
SKIP_PATHS = ("/404", "/not-found", "/error")
SEARCH_ENGINE_PATTERNS = (
    re.compile(r"(^|\.)google\.[a-z.]+$"),
    re.compile(r"(^|\.)bing\.com$"),
    re.compile(r"(^|\.)yahoo\.com$"),
    re.compile(r"(^|\.)duckduckgo\.com$"),
    re.compile(r"(^|\.)baidu\.com$"),
    re.compile(r"(^|\.)yandex\.com$"),
)
SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg",
    ".mp4", ".mp3", ".wav", ".zip",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
)

JS_FRAMEWORK_SIGNALS = (
    "vue.js", "react.js", "angular.js", "new Vue(", "ReactDOM.render",
    '<div id="app"', '<div id="root"', "ng-app", "v-if", "v-for",
    "window.onload", "document.addEventListener", "fetch(", ".appendChild",
)
EMPTY_MOUNT_PATTERN = re.compile(r'<div id="(app|root)">\s*</div>')
SPA_URL_MARKERS = ("vue", "react", "angular", "spa")
CAPTCHA_MARKERS = ("captcha", "CAPTCHA", "cf-challenge")

TRANSIENT_STATUS_CODES = {401, 403, 429}


def should_skip_url(url: str) -> str | None:
    """Return the reason a URL must not be crawled, or None when it is fine."""
    if not url or not is_valid_url(url):
        return "Invalid URL"

    parsed = urlsplit(url)
    host = (parsed.hostname or "").lower()
    path = parsed.path.lower()

    for domain in SKIP_DOMAINS:
        if host == domain or host.endswith("." + domain):
            return f"Skip domain: {domain}"

    for skip_path in SKIP_PATHS:
        if path == skip_path or path.startswith(skip_path + "/") or path.startswith(skip_path + "."):
            return f"Skip path: {skip_path}"

    for pattern in SEARCH_ENGINE_PATTERNS:
        if pattern.search(host):
            if "google." in host and not path.startswith("/search"):
                continue
            return "Search engine results page"

    for ext in SKIP_EXTENSIONS:
        if path.endswith(ext):
            return f"Non-HTML file: {ext}"

    return None


def detect_js_framework(html: str, url: str = "") -> bool:
    if not html:
        return False
    hits = sum(1 for signal in JS_FRAMEWORK_SIGNALS if signal in html)
    if hits >= 3:
        return True
    if EMPTY_MOUNT_PATTERN.search(html):
        return True
    lowered_url = url.lower()
    return any(marker in lowered_url for marker in SPA_URL_MARKERS)


def extract_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = soup.get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def extract_title(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return ""


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def _looks_blocked(html: str, word_count: int) -> bool:
    if word_count >= settings.crawl_js_min_words:
        return False
    return any(marker in html for marker in CAPTCHA_MARKERS)


@dataclass(slots=True)
class PageFetch:
    """Outcome of a tiered crawl: the page plus every tier attempt made."""

    url: str
    html: str
    text: str
    title: str
    result: CrawlResult
    attempts: list[CrawlResult] = field(default_factory=list)
    from_cache: bool = False
    stale: bool = False

    def to_cache_value(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "html": self.html,
            "text": self.text,
            "title": self.title,
            "result": self.result.to_dict(),
            "attempts": [a.to_dict() for a in self.attempts],
        }

    @classmethod
    def from_cache_value(cls, value: dict[str, Any], *, stale: bool = False) -> PageFetch:
        return cls(
            url=str(value.get("url", "")),
            html=str(value.get("html", "")),
            text=str(value.get("text", "")),
            title=str(value.get("title", "")),
            result=_crawl_result_from_dict(value.get("result") or {}),
            attempts=[_crawl_result_from_dict(a) for a in value.get("attempts") or []],
            from_cache=True,
            stale=stale,
        )


def _crawl_result_from_dict(data: dict[str, Any]) -> CrawlResult:
    return CrawlResult(
        status_code=int(data.get("status_code", 0)),
        method=CrawlMethod(data.get("method", CrawlMethod.FAILED.value)),
        html_length=int(data.get("html_length", 0)),
        word_count=int(data.get("word_count", 0)),
        duration_ms=int(data.get("duration_ms", 0)),
        success=bool(data.get("success", False)),
        error=data.get("error"),
    )


@dataclass(slots=True)
class _TierOutcome:
    result: CrawlResult
    html: str = ""
    text: str = ""


class Fetcher:
    """Cost-aware crawl: basic first, JS rendering or premium proxy only when needed.

    Tier 2 (JS rendering) runs only after a successful basic fetch that looks
    like an unrendered single-page app. Tier 3 (premium) runs only after a
    basic failure that is not a 404. The HTTP client is injectable so tests
    can count requests per tier.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        cache: PageCache | None = None,
        provider: str | None = None,
        api_key: str | None = None,
    ):
        self._client = http_client
        self.cache = cache if cache is not None else PageCache()
        self.provider = (provider or settings.crawl_provider).lower().strip()
        self.api_key = api_key if api_key is not None else settings.scrapingbee_api_key

    async def fetch(self, url: str, *, bypass_cache: bool = False) -> PageFetch:
        reason = should_skip_url(url)
        if reason:
            logger.info(f"Skipping crawl for {url}: {reason}")
            raise SkippedURLError(url, reason)

        async def _fetch_value() -> dict[str, Any]:
            page = await self.crawl(url)
            return page.to_cache_value()

        entry = await self.cache.get_or_fetch(
            PageCache.key_for(url), _fetch_value, bypass=bypass_cache
        )
        if entry.from_cache:
            return PageFetch.from_cache_value(entry.value, stale=entry.stale)
        page = PageFetch.from_cache_value(entry.value)
        page.from_cache = False
        return page

    async def crawl(self, url: str) -> PageFetch:
        """Run the tier chain without touching the cache."""
        if self._client is None:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                return await self._crawl_with(client, url)
        return await self._crawl_with(self._client, url)

    async def _crawl_with(self, client: httpx.AsyncClient, url: str) -> PageFetch:
        attempts: list[CrawlResult] = []

        basic = await self._attempt(client, url, CrawlMethod.BASIC)
        attempts.append(basic.result)

        if basic.result.success:
            if (
                detect_js_framework(basic.html, url)
                and basic.result.word_count < settings.crawl_js_min_words
            ):
                logger.info(
                    f"JS framework detected on {url} with {basic.result.word_count} words, "
                    "retrying with rendering"
                )
                rendered = await self._attempt(client, url, CrawlMethod.JS_RENDERING)
                attempts.append(rendered.result)
                if rendered.result.success:
                    return self._page(url, rendered, attempts)
                logger.warning(f"JS rendering failed for {url}, keeping basic result")
            return self._page(url, basic, attempts)

        if basic.result.status_code == 404:
            raise CrawlError(
                f"Page not found (404) for {url}; premium attempt skipped",
                url=url,
                status_code=404,
                attempts=attempts,
            )

        premium = await self._attempt(client, url, CrawlMethod.PREMIUM)
        attempts.append(premium.result)
        if premium.result.success:
            return self._page(url, premium, attempts)

        causes = ", ".join(f"{a.method.value}: {a.error}" for a in attempts)
        raise CrawlError(
            f"All crawl tiers failed for {url} ({causes})",
            url=url,
            status_code=premium.result.status_code or basic.result.status_code or None,
            attempts=attempts,
        )

    @staticmethod
    def _page(url: str, outcome: _TierOutcome, attempts: list[CrawlResult]) -> PageFetch:
        return PageFetch(
            url=url,
            html=outcome.html,
            text=outcome.text,
            title=extract_title(outcome.html),
            result=outcome.result,
            attempts=list(attempts),
        )

    def _request_params(self, url: str, method: CrawlMethod) -> tuple[str, dict[str, str], float]:
        if self.provider == "direct":
            timeout_ms = (
                settings.crawl_basic_timeout_ms
                if method == CrawlMethod.BASIC
                else settings.crawl_render_timeout_ms
            )
            return url, {}, timeout_ms / 1000

        params = {
            "api_key": self.api_key,
            "url": url,
            "country_code": settings.crawl_country_code,
            "block_resources": "true",
        }
        if method == CrawlMethod.BASIC:
            params.update(render_js="false", premium_proxy="false")
            timeout_ms = settings.crawl_basic_timeout_ms
        elif method == CrawlMethod.JS_RENDERING:
            params.update(render_js="true", premium_proxy="false", wait_browser="networkidle2")
            timeout_ms = settings.crawl_render_timeout_ms
        else:
            params.update(render_js="true", premium_proxy="true", wait_browser="networkidle2")
            timeout_ms = settings.crawl_render_timeout_ms
        params["timeout"] = str(timeout_ms)
        # provider-side timeout plus headroom for the round trip
        return settings.scrapingbee_base_url, params, timeout_ms / 1000 + 5

    async def _attempt(
        self, client: httpx.AsyncClient, url: str, method: CrawlMethod
    ) -> _TierOutcome:
        endpoint, params, timeout = self._request_params(url, method)
        started = time.monotonic()
        try:
            response = await client.get(endpoint, params=params or None, timeout=timeout)
        except httpx.HTTPError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            error = f"{type(exc).__name__}: {exc}"
            log_crawl_attempt(url, method.value, 0, duration_ms, False, error)
            return _TierOutcome(
                CrawlResult(status_code=0, method=method, duration_ms=duration_ms, error=error)
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        status_code = response.status_code
        html = response.text if response.is_success else ""

        if not response.is_success:
            kind = "blocked" if status_code in TRANSIENT_STATUS_CODES else "http error"
            if status_code >= 500:
                kind = "server error"
            error = f"{kind} {status_code}"
            log_crawl_attempt(url, method.value, status_code, duration_ms, False, error)
            return _TierOutcome(
                CrawlResult(
                    status_code=status_code, method=method, duration_ms=duration_ms, error=error
                )
            )

        text = extract_text(html)
        word_count = count_words(text)
        if _looks_blocked(html, word_count):
            error = "captcha challenge"
            log_crawl_attempt(url, method.value, status_code, duration_ms, False, error)
            return _TierOutcome(
                CrawlResult(
                    status_code=status_code,
                    method=method,
                    html_length=len(html),
                    word_count=word_count,
                    duration_ms=duration_ms,
                    error=error,
                )
            )

        log_crawl_attempt(url, method.value, status_code, duration_ms, True)
        return _TierOutcome(
            CrawlResult(
                status_code=status_code,
                method=method,
                html_length=len(html),
                word_count=word_count,
                duration_ms=duration_ms,
                success=True,
            ),
            html=html,
            text=text[: settings.crawl_max_content_chars],
        )
