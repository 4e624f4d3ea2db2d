"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from perplexity_search.config import settings

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Optional file handler
if settings.log_dir:
    LOG_DIR = Path(settings.log_dir).expanduser()
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.add(
        LOG_DIR / "perplexity_search_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )

# Reduce noise from network libraries
for logger_name in ("httpx", "httpcore", "hpack", "asyncio"):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_search_call(
    query_chars: int,
    status: str,
    duration_ms: int = 0,
    event_count: int = 0,
    source_count: int = 0,
    error_code: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log one search request/response cycle. Never includes the query text."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "query_chars": query_chars,
        "status": status,
        "duration_ms": duration_ms,
        "event_count": event_count,
        "source_count": source_count,
        "error_code": error_code,
        "error": error,
    }
    if error_code:
        logger.error(f"SEARCH_CALL_FAILED: {call_data}")
    else:
        logger.info(f"SEARCH_CALL: {call_data}")


def log_auth_step(
    step: str,
    status: str,
    details: Optional[str] = None,
) -> None:
    """Log a credential step. Callers must not pass token material."""
    step_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "step": step,
        "status": status,
        "details": details,
    }
    if status == "failed":
        logger.warning(f"AUTH_STEP_FAILED: {step_data}")
    else:
        logger.info(f"AUTH_STEP: {step_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
