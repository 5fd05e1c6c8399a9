"""Pull cited URLs out of AI platform responses.

Responses arrive in several shapes (Responses API output arrays, chat
completions, Perplexity payloads, plain text). Strategies run in a fixed
order and the first one that yields anything wins.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable

from loguru import logger

from citewatch.models.records import Citation
from citewatch.tools.web_utils import extract_domain, is_valid_url, normalize_domain, normalize_url

MARKDOWN_LINK_RE = re.compile(r'\[([^\]]+)\]\(([^)]+?)(?:\s+"([^"]*)")?\)')
BARE_URL_RE = re.compile(r"https?://[^\s\]<>\)]+")
NUMBERED_REF_RE = re.compile(r"\[(\d+)\](?:.*?)((?:https?://|www\.)[^\s\]<>\)]+)")
REFERENCE_URL_RE = re.compile(r"(?:https?://|www\.)[^\s\]<>\)]+")
REFERENCES_SECTION_RE = re.compile(
    r"(?:References|Sources|Citations|Bibliography):?\s*([\s\S]*?)(?:\n\n|\n\s*\n|$)"
)
TRAILING_PUNCTUATION = ".,)\"';:!?"

Candidate = tuple[str, str]


def clean_url(url: str) -> str:
    url = url.strip().rstrip(TRAILING_PUNCTUATION)
    if url.startswith("www."):
        url = "https://" + url
    return normalize_url(url)


def _build(candidates: Iterable[Candidate], source: str) -> list[Citation]:
    citations: list[Citation] = []
    seen: set[str] = set()
    for raw_url, title in candidates:
        if not isinstance(raw_url, str) or not raw_url.strip():
            continue
        url = clean_url(raw_url)
        if not is_valid_url(url) or url in seen:
            continue
        seen.add(url)
        citations.append(
            Citation(
                url=url,
                domain=normalize_domain(extract_domain(url)),
                position=len(citations) + 1,
                source=source,
                title=title or "",
            )
        )
    return citations


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _messages(response: dict) -> list[dict]:
    messages = [
        choice.get("message")
        for choice in _as_list(response.get("choices"))
        if isinstance(choice, dict) and isinstance(choice.get("message"), dict)
    ]
    if isinstance(response.get("message"), dict):
        messages.append(response["message"])
    return messages


def _output_items(response: Any) -> list[dict]:
    if isinstance(response, list):
        return [item for item in response if isinstance(item, dict)]
    if isinstance(response, dict):
        return [item for item in _as_list(response.get("output")) if isinstance(item, dict)]
    return []


def _annotation_candidate(annotation: Any) -> Candidate | None:
    if not isinstance(annotation, dict):
        return None
    # chat completions nest the payload under the annotation type
    nested = annotation.get("url_citation")
    source = nested if isinstance(nested, dict) else annotation
    if annotation.get("type", "url_citation") != "url_citation":
        return None
    url = source.get("url")
    if not isinstance(url, str):
        return None
    return url, str(source.get("title") or "")


def _from_annotations(response: Any) -> list[Candidate]:
    found: list[Candidate] = []

    for item in _output_items(response):
        if item.get("type") != "message":
            continue
        for content in _as_list(item.get("content")):
            if not isinstance(content, dict) or content.get("type") != "output_text":
                continue
            for annotation in _as_list(content.get("annotations")):
                candidate = _annotation_candidate(annotation)
                if candidate:
                    found.append(candidate)

    if not isinstance(response, dict):
        return found

    for message in _messages(response):
        for annotation in _as_list(message.get("annotations")):
            candidate = _annotation_candidate(annotation)
            if candidate:
                found.append(candidate)
    for annotation in _as_list(response.get("annotations")):
        candidate = _annotation_candidate(annotation)
        if candidate:
            found.append(candidate)

    for key in ("citations", "search_results"):
        for entry in _as_list(response.get(key)):
            if isinstance(entry, str):
                found.append((entry, ""))
            elif isinstance(entry, dict) and isinstance(entry.get("url"), str):
                found.append((entry["url"], str(entry.get("title") or "")))

    return found


def _from_tool_calls(response: Any) -> list[Candidate]:
    if not isinstance(response, dict):
        return []
    found: list[Candidate] = []
    for message in _messages(response):
        for call in _as_list(message.get("tool_calls")):
            if not isinstance(call, dict):
                continue
            function = call.get("function") if isinstance(call.get("function"), dict) else None
            if call.get("type") != "web_search" and not (
                function and function.get("name") == "search_web"
            ):
                continue
            info: Any = {}
            if function:
                try:
                    info = json.loads(function.get("arguments") or "{}")
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Unparseable search_web tool call arguments")
                    continue
            elif isinstance(call.get("web_search"), dict):
                info = call["web_search"]
            if not isinstance(info, dict):
                continue
            for position, url in enumerate(_as_list(info.get("urls")), start=1):
                if isinstance(url, str):
                    found.append((url, f"Search Result {position}"))
    return found


def _from_markdown(text: str) -> list[Candidate]:
    found: list[Candidate] = []
    for match in MARKDOWN_LINK_RE.finditer(text):
        link_text, url, title = match.group(1), match.group(2).strip(), match.group(3)
        if url.startswith("#") or url.startswith("mailto:"):
            continue
        found.append((url, title or link_text))
    return found


def _from_bare_urls(text: str) -> list[Candidate]:
    return [(match.group(0), "") for match in BARE_URL_RE.finditer(text)]


def _from_references(text: str) -> list[Candidate]:
    found: list[Candidate] = [(m.group(2), f"Reference {m.group(1)}") for m in NUMBERED_REF_RE.finditer(text)]
    for section in REFERENCES_SECTION_RE.finditer(text):
        found.extend((m.group(0), "") for m in REFERENCE_URL_RE.finditer(section.group(1)))
    return found


def response_text(response: Any) -> str:
    """Best-effort text body of a platform response."""
    if isinstance(response, str):
        return response
    parts: list[str] = []
    for item in _output_items(response):
        if item.get("type") != "message":
            continue
        for content in _as_list(item.get("content")):
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                parts.append(content["text"])
    if isinstance(response, dict):
        if isinstance(response.get("output_text"), str):
            parts.append(response["output_text"])
        for message in _messages(response):
            if isinstance(message.get("content"), str):
                parts.append(message["content"])
        if not parts and isinstance(response.get("content"), str):
            parts.append(response["content"])
    return "\n\n".join(parts)


STRUCTURED_STRATEGIES: tuple[tuple[str, Callable[[Any], list[Candidate]]], ...] = (
    ("annotation", _from_annotations),
    ("tool_call", _from_tool_calls),
)
TEXT_STRATEGIES: tuple[tuple[str, Callable[[str], list[Candidate]]], ...] = (
    ("markdown", _from_markdown),
    ("url", _from_bare_urls),
    ("reference", _from_references),
)


def _extract(response: Any, depth: int) -> list[Citation]:
    if isinstance(response, str):
        stripped = response.strip()
        if depth < 2 and stripped[:1] in ("{", "["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, (dict, list)):
                return _extract(parsed, depth + 1)
    elif isinstance(response, (dict, list)):
        for source, strategy in STRUCTURED_STRATEGIES:
            citations = _build(strategy(response), source)
            if citations:
                return citations
    else:
        return []

    text = response_text(response)
    if not text:
        return []
    for source, strategy in TEXT_STRATEGIES:
        citations = _build(strategy(text), source)
        if citations:
            return citations
    return []


def extract_citations(response: Any) -> list[Citation]:
    """Return deduplicated citations in first-seen order. Never raises."""
    try:
        return _extract(response, 0)
    except (TypeError, ValueError, AttributeError, KeyError) as exc:
        logger.warning(f"Citation extraction failed on malformed response: {exc}")
        return []
