"""Centralized logging service using loguru."""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from citewatch.config import settings

# Configure loguru
LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Add file handler
logger.add(
    LOG_DIR / "citewatch_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",  # New file at midnight
    retention="7 days",
    compression="zip",
)

# Reduce noise from framework/network libraries
import logging

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncpg",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log an AI platform or scoring call."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_queue_operation(
    operation: str,
    status: str,
    item_id: Optional[str] = None,
    run_id: Optional[str] = None,
    details: Optional[dict] = None,
    error: Optional[str] = None,
) -> None:
    """Log a work queue state transition."""
    op_data = {
        "timestamp": _now(),
        "operation": operation,
        "status": status,
        "item_id": item_id,
        "run_id": run_id,
        "details": details,
        "error": error,
    }
    if error:
        logger.warning(f"QUEUE_OPERATION_FAILED: {op_data}")
    else:
        logger.info(f"QUEUE_OPERATION: {op_data}")


def log_crawl_attempt(
    url: str,
    method: str,
    status_code: int,
    duration_ms: int,
    success: bool,
    error: Optional[str] = None,
) -> None:
    """Log a single crawl tier attempt."""
    crawl_data = {
        "timestamp": _now(),
        "url": url,
        "method": method,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "success": success,
        "error": error,
    }
    if success:
        logger.info(f"CRAWL_ATTEMPT: {crawl_data}")
    else:
        logger.warning(f"CRAWL_ATTEMPT_FAILED: {crawl_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
