from __future__ import annotations

import httpx
import pytest

from citewatch.config import settings
from citewatch.errors import CrawlError, SkippedURLError
from citewatch.models.records import CrawlMethod
from citewatch.tools.cache import PageCache
from citewatch.tools.fetcher import Fetcher, detect_js_framework, should_skip_url

ARTICLE_HTML = (
    "<html><head><title>Acme Guide</title></head><body><article>"
    + " ".join(["word"] * 120)
    + "</article></body></html>"
)
SPA_SHELL_HTML = (
    '<html><body><div id="app"></div>'
    '<script src="/static/bundle.js"></script></body></html>'
)


def _tier(request: httpx.Request) -> str:
    params = request.url.params
    if params.get("premium_proxy") == "true":
        return "premium"
    if params.get("render_js") == "true":
        return "js_rendering"
    return "basic"


def _fetcher(handler, tmp_path, *, cache_enabled: bool = False) -> Fetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = PageCache(cache_dir=str(tmp_path), enabled=cache_enabled)
    return Fetcher(http_client=client, cache=cache, provider="scrapingbee", api_key="test-key")


@pytest.fixture(autouse=True)
def crawl_settings(monkeypatch):
    monkeypatch.setattr(settings, "crawl_js_min_words", 50)
    monkeypatch.setattr(settings, "scrapingbee_base_url", "https://app.scrapingbee.com/api/v1/")


@pytest.mark.asyncio
async def test_basic_tier_success_needs_no_escalation(tmp_path):
    calls: list[str] = []

    def handler(request):
        calls.append(_tier(request))
        return httpx.Response(200, text=ARTICLE_HTML)

    page = await _fetcher(handler, tmp_path).fetch("https://docs.acme.io/guide")

    assert calls == ["basic"]
    assert page.result.method == CrawlMethod.BASIC
    assert page.result.success is True
    assert page.result.word_count >= 120
    assert page.title == "Acme Guide"


@pytest.mark.asyncio
async def test_basic_request_parameters(tmp_path):
    seen: list[httpx.Request] = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text=ARTICLE_HTML)

    await _fetcher(handler, tmp_path).fetch("https://docs.acme.io/guide")

    params = seen[0].url.params
    assert params["api_key"] == "test-key"
    assert params["url"] == "https://docs.acme.io/guide"
    assert params["render_js"] == "false"
    assert params["premium_proxy"] == "false"
    assert params["block_resources"] == "true"
    assert params["timeout"] == "15000"


@pytest.mark.asyncio
async def test_404_never_escalates_to_premium(tmp_path):
    calls: list[str] = []

    def handler(request):
        calls.append(_tier(request))
        return httpx.Response(404, text="not found")

    with pytest.raises(CrawlError) as exc_info:
        await _fetcher(handler, tmp_path).fetch("https://docs.acme.io/missing-page")

    assert calls == ["basic"]
    assert "premium" not in calls
    assert exc_info.value.status_code == 404
    assert len(exc_info.value.attempts) == 1


@pytest.mark.asyncio
async def test_blocked_basic_escalates_to_premium(tmp_path):
    calls: list[str] = []

    def handler(request):
        tier = _tier(request)
        calls.append(tier)
        if tier == "basic":
            return httpx.Response(403, text="forbidden")
        return httpx.Response(200, text=ARTICLE_HTML)

    page = await _fetcher(handler, tmp_path).fetch("https://news.acme.io/story")

    assert calls == ["basic", "premium"]
    assert page.result.method == CrawlMethod.PREMIUM
    assert [a.method for a in page.attempts] == [CrawlMethod.BASIC, CrawlMethod.PREMIUM]
    assert page.attempts[0].status_code == 403
    assert page.attempts[0].success is False


@pytest.mark.asyncio
async def test_captcha_page_escalates_to_premium(tmp_path):
    calls: list[str] = []

    def handler(request):
        tier = _tier(request)
        calls.append(tier)
        if tier == "basic":
            return httpx.Response(200, text="<html><body>Please solve the CAPTCHA</body></html>")
        return httpx.Response(200, text=ARTICLE_HTML)

    page = await _fetcher(handler, tmp_path).fetch("https://news.acme.io/story")

    assert calls == ["basic", "premium"]
    assert page.result.method == CrawlMethod.PREMIUM


@pytest.mark.asyncio
async def test_transport_error_escalates_to_premium(tmp_path):
    calls: list[str] = []

    def handler(request):
        tier = _tier(request)
        calls.append(tier)
        if tier == "basic":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, text=ARTICLE_HTML)

    page = await _fetcher(handler, tmp_path).fetch("https://news.acme.io/story")

    assert calls == ["basic", "premium"]
    assert page.attempts[0].status_code == 0
    assert "ConnectTimeout" in page.attempts[0].error


@pytest.mark.asyncio
async def test_js_shell_escalates_to_rendering(tmp_path):
    calls: list[str] = []

    def handler(request):
        tier = _tier(request)
        calls.append(tier)
        if tier == "basic":
            return httpx.Response(200, text=SPA_SHELL_HTML)
        return httpx.Response(200, text=ARTICLE_HTML)

    page = await _fetcher(handler, tmp_path).fetch("https://app.acme.io/pricing")

    assert calls == ["basic", "js_rendering"]
    assert page.result.method == CrawlMethod.JS_RENDERING
    assert page.attempts[0].method == CrawlMethod.BASIC
    assert page.attempts[0].success is True


@pytest.mark.asyncio
async def test_rendering_failure_keeps_basic_result(tmp_path):
    calls: list[str] = []

    def handler(request):
        tier = _tier(request)
        calls.append(tier)
        if tier == "basic":
            return httpx.Response(200, text=SPA_SHELL_HTML)
        return httpx.Response(500, text="render error")

    page = await _fetcher(handler, tmp_path).fetch("https://app.acme.io/pricing")

    assert calls == ["basic", "js_rendering"]
    assert page.result.method == CrawlMethod.BASIC
    assert len(page.attempts) == 2
    assert page.attempts[1].success is False


@pytest.mark.asyncio
async def test_all_tiers_failing_reports_each_cause(tmp_path):
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(CrawlError) as exc_info:
        await _fetcher(handler, tmp_path).fetch("https://news.acme.io/story")

    message = str(exc_info.value)
    assert "basic: server error 503" in message
    assert "premium: server error 503" in message
    assert [a.method for a in exc_info.value.attempts] == [CrawlMethod.BASIC, CrawlMethod.PREMIUM]


@pytest.mark.asyncio
async def test_successful_fetch_is_cached(tmp_path):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(200, text=ARTICLE_HTML)

    fetcher = _fetcher(handler, tmp_path, cache_enabled=True)
    first = await fetcher.fetch("https://docs.acme.io/guide?utm_source=ai")
    second = await fetcher.fetch("https://docs.acme.io/guide")

    assert calls == 1
    assert first.from_cache is False
    assert second.from_cache is True
    assert second.result.method == CrawlMethod.BASIC


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    [
        "http://localhost:8000/page",
        "https://example.com/article",
        "https://acme.io/404",
        "https://acme.io/not-found",
        "https://www.google.com/search?q=crm",
        "https://www.bing.com/search?q=crm",
        "https://acme.io/whitepaper.pdf",
        "https://acme.io/hero.PNG",
        "not a url",
    ],
)
async def test_skipped_urls_make_no_request(tmp_path, url):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(200, text=ARTICLE_HTML)

    with pytest.raises(SkippedURLError):
        await _fetcher(handler, tmp_path).fetch(url)
    assert calls == 0


def test_should_skip_url_allows_regular_pages():
    assert should_skip_url("https://blog.acme.io/post") is None
    assert should_skip_url("https://maps.google.com/place") is None
    assert should_skip_url("https://acme.io/errors-explained") is None


def test_detect_js_framework_signals():
    assert detect_js_framework(SPA_SHELL_HTML) is True
    many_signals = "<script>new Vue({});window.onload=1;document.addEventListener('x')</script>"
    assert detect_js_framework(many_signals) is True
    assert detect_js_framework(ARTICLE_HTML, "https://docs.acme.io/guide") is False
    assert detect_js_framework("<p>hi</p>", "https://acme.io/react-docs") is True
