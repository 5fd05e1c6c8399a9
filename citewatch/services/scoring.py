from __future__ import annotations

import json
import re
import time
from typing import Any

import openai
from loguru import logger
from pydantic import ValidationError

from citewatch import llm_client
from citewatch.config import settings
from citewatch.models.records import ContentQualityRecord, QueryClassification, QueryPayload
from citewatch.services.logger import log_llm_call

SCORE_SYSTEM_PROMPT = (
    "You rate web pages cited by AI assistants. Reply with one JSON object with integer "
    "fields content_depth_score, content_uniqueness, eeat_score, citation_match_quality, "
    "analysis_score (each 1-10) and string fields content_type, topical_cluster."
)
CLASSIFY_SYSTEM_PROMPT = (
    "You classify AI assistant answers to search-style queries. Reply with one JSON object "
    "with string fields query_category, query_type (informational, navigational, "
    "transactional, commercial), funnel_stage (awareness, consideration, decision)."
)

MAX_SCORED_CHARS = 6000


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def count_mentions(text: str, name: str) -> int:
    if not text or not name.strip():
        return 0
    return len(re.findall(rf"\b{re.escape(name.strip())}\b", text, flags=re.IGNORECASE))


class ContentScorer:
    """Opaque scoring and classification calls.

    Any failure (no API key, provider error, unparseable or invalid output)
    yields the default record instead of an exception.
    """

    def __init__(self, *, client: Any | None = None, model: str | None = None):
        self._client = client
        self.model = model or settings.scoring_model

    @property
    def available(self) -> bool:
        return self._client is not None or bool(settings.openai_api_key)

    async def _complete_json(self, caller: str, system: str, user: str) -> dict[str, Any] | None:
        client = self._client or llm_client.scoring_client()
        started = time.monotonic()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format={"type": "json_object"},
                max_tokens=500,
                temperature=0,
            )
        except openai.OpenAIError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            log_llm_call(self.model, caller, duration_ms=duration_ms, status="error", error=str(exc))
            return None

        usage = getattr(response, "usage", None)
        log_llm_call(
            self.model,
            caller,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError):
            logger.warning(f"{caller} returned a response without a message")
            return None
        if not isinstance(text, str):
            logger.warning(f"{caller} returned non-text message content")
            return None
        try:
            return extract_json_object(text)
        except json.JSONDecodeError:
            logger.warning(f"{caller} returned non-JSON output")
            return None

    async def score(self, page_content: str, query_context: str) -> ContentQualityRecord:
        if not self.available or not page_content.strip():
            return ContentQualityRecord.default()

        user = f"Query: {query_context}\n\nPage content:\n{page_content[:MAX_SCORED_CHARS]}"
        data = await self._complete_json("scoring.score", SCORE_SYSTEM_PROMPT, user)
        if data is None:
            return ContentQualityRecord.default()
        try:
            return ContentQualityRecord.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"Invalid quality record from scorer: {exc}")
            return ContentQualityRecord.default()

    async def classify(self, response_text: str, payload: QueryPayload) -> QueryClassification:
        brand = payload.client.name
        mentions = count_mentions(response_text, brand)
        competitors = [
            c.name for c in payload.client.competitors if count_mentions(response_text, c.name) > 0
        ]
        local = {
            "brand_mentioned": mentions > 0,
            "brand_mention_count": mentions,
            "competitor_mentioned_names": competitors,
        }

        data = None
        if self.available and response_text.strip():
            user = f"Query: {payload.query_text}\n\nAnswer:\n{response_text[:MAX_SCORED_CHARS]}"
            data = await self._complete_json("scoring.classify", CLASSIFY_SYSTEM_PROMPT, user)

        if data is None:
            return QueryClassification.default().model_copy(update=local)
        try:
            return QueryClassification.model_validate({**data, **local})
        except ValidationError as exc:
            logger.warning(f"Invalid classification from scorer: {exc}")
            return QueryClassification.default().model_copy(update=local)
