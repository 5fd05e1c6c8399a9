"""AsyncOpenAI client factories for the AI platforms and the scoring model."""
from __future__ import annotations

from typing import Any

from citewatch.config import settings
from citewatch.models.records import Platform

_clients: dict[str, Any] = {}


def _build_client(api_key: str, base_url: str) -> Any:
    from openai import AsyncOpenAI

    return AsyncOpenAI(
        api_key=api_key,
        base_url=base_url,
        timeout=settings.dispatch_timeout_seconds,
        # retries are handled by the dispatcher so attempts are logged
        max_retries=0,
    )


def get_model(platform: Platform | str) -> str:
    if Platform(platform) == Platform.PERPLEXITY:
        return settings.perplexity_model
    return settings.openai_model


def client_for(platform: Platform | str) -> Any:
    """Get or create the client for one platform (Perplexity is OpenAI-compatible)."""
    platform = Platform(platform)
    if platform.value not in _clients:
        if platform == Platform.PERPLEXITY:
            _clients[platform.value] = _build_client(
                settings.perplexity_api_key, settings.perplexity_base_url
            )
        else:
            _clients[platform.value] = _build_client(
                settings.openai_api_key, settings.openai_base_url
            )
    return _clients[platform.value]


def scoring_client() -> Any:
    return client_for(Platform.CHATGPT)
