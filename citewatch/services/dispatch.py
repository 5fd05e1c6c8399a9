from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import openai

from citewatch import llm_client
from citewatch.config import settings
from citewatch.errors import DispatchError
from citewatch.models.records import Platform
from citewatch.services.logger import log_llm_call

RETRY_BASE_DELAY_SECONDS = 1.0

_RETRYABLE = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)
_TERMINAL = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)


@dataclass(slots=True)
class DispatchResult:
    content: str
    raw_response: dict[str, Any]
    raw_citations: list[Any] = field(default_factory=list)
    model: str = ""


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, _TERMINAL):
        return False
    if isinstance(exc, _RETRYABLE):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return False


def _request_kwargs(platform: Platform, query_text: str, options: dict[str, Any]) -> dict[str, Any]:
    model = options.get("model") or llm_client.get_model(platform)
    messages: list[dict[str, str]] = []
    if options.get("system_prompt"):
        messages.append({"role": "system", "content": options["system_prompt"]})
    messages.append({"role": "user", "content": query_text})

    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": int(options.get("max_tokens") or settings.dispatch_max_tokens),
    }
    if platform == Platform.CHATGPT and "search" in model:
        kwargs["web_search_options"] = {}
    return kwargs


def _raw_citations(raw: dict[str, Any]) -> list[Any]:
    citations: list[Any] = []
    for key in ("citations", "search_results"):
        value = raw.get(key)
        if isinstance(value, list):
            citations.extend(value)
    for choice in raw.get("choices") or []:
        message = choice.get("message") if isinstance(choice, dict) else None
        if isinstance(message, dict):
            citations.extend(message.get("annotations") or [])
    return citations


async def dispatch(
    platform: Platform | str,
    query_text: str,
    options: dict[str, Any] | None = None,
    *,
    client: Any | None = None,
) -> DispatchResult:
    """Send one query to an AI platform.

    Transient failures are retried with exponential backoff up to
    `dispatch_retry_max` times before surfacing as a retryable DispatchError.
    Auth and request errors surface immediately as non-retryable.
    """
    platform = Platform(platform)
    options = options or {}
    api = client or llm_client.client_for(platform)
    kwargs = _request_kwargs(platform, query_text, options)
    caller = f"dispatch.{platform.value}"

    max_retries = max(settings.dispatch_retry_max, 0)
    for attempt in range(max_retries + 1):
        started = time.monotonic()
        try:
            response = await api.chat.completions.create(**kwargs)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            log_llm_call(kwargs["model"], caller, duration_ms=duration_ms, status="error", error=str(exc))
            retryable = _is_retryable(exc)
            if not retryable:
                raise DispatchError(
                    f"{platform.value} request rejected: {exc}", platform=platform.value, retryable=False
                ) from exc
            if attempt >= max_retries:
                raise DispatchError(
                    f"{platform.value} unavailable after {attempt + 1} attempts: {exc}",
                    platform=platform.value,
                    retryable=True,
                ) from exc
            await asyncio.sleep(RETRY_BASE_DELAY_SECONDS * (2**attempt))
            continue

        duration_ms = int((time.monotonic() - started) * 1000)
        usage = getattr(response, "usage", None)
        log_llm_call(
            kwargs["model"],
            caller,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=duration_ms,
        )

        raw = response.model_dump() if hasattr(response, "model_dump") else dict(response)
        content = ""
        choices = raw.get("choices") or []
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""
        return DispatchResult(
            content=content,
            raw_response=raw,
            raw_citations=_raw_citations(raw),
            model=kwargs["model"],
        )

    raise DispatchError(f"{platform.value} dispatch exhausted", platform=platform.value)
