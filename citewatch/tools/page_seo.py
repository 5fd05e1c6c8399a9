"""On-page SEO signals read from a crawled page's HTML."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from citewatch.models.records import OnPageSeoRecord
from citewatch.tools.web_utils import domains_match, extract_domain

HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")
VIDEO_IFRAME_RE = re.compile(r"youtube|vimeo", re.IGNORECASE)


def folder_depth(url: str) -> int:
    path = urlsplit(url).path
    return len([segment for segment in path.split("/") if segment])


def _count_internal_links(soup: BeautifulSoup, url: str) -> int:
    page_domain = extract_domain(url)
    count = 0
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        target = urljoin(url, href)
        if domains_match(extract_domain(target), page_domain):
            count += 1
    return count


def extract_on_page_seo(html: str, url: str) -> OnPageSeoRecord:
    """Structural SEO facts for one page. Empty HTML gives the default record."""
    if not html or not html.strip():
        return OnPageSeoRecord.default()

    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    meta = soup.find("meta", attrs={"name": re.compile(r"^description$", re.IGNORECASE)})
    meta_description = (meta.get("content") or "").strip() if meta else ""

    heading_counts = {tag: len(soup.find_all(tag)) for tag in HEADING_TAGS}
    video_present = bool(soup.find("video")) or any(
        VIDEO_IFRAME_RE.search(frame.get("src") or "") for frame in soup.find_all("iframe")
    )
    schema_present = bool(
        soup.find("script", attrs={"type": re.compile(r"application/ld\+json", re.IGNORECASE)})
    )
    aria_present = bool(
        soup.find(attrs={"aria-label": True}) or soup.find(attrs={"aria-labelledby": True})
    )

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    word_count = len(soup.get_text(" ").split())

    return OnPageSeoRecord(
        page_title=title,
        meta_description=meta_description,
        word_count=word_count,
        heading_count=sum(heading_counts.values()),
        heading_counts=heading_counts,
        image_count=len(soup.find_all("img")),
        video_present=video_present,
        table_count=len(soup.find_all("table")),
        unordered_list_count=len(soup.find_all("ul")),
        ordered_list_count=len(soup.find_all("ol")),
        internal_link_count=_count_internal_links(soup, url),
        folder_depth=folder_depth(url),
        schema_markup_present=schema_present,
        aria_labels_present=aria_present,
    )
