"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from deepcite.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "deepcite_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "anthropic._base_client",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_llm_call(
    provider: str,
    model: str,
    caller: str,
    duration_ms: int = 0,
    finish_reason: str = "stop",
    attempt: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log a language-model call."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "provider": provider,
        "model": model,
        "caller": caller,
        "duration_ms": duration_ms,
        "finish_reason": finish_reason,
        "attempt": attempt,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_job_step(
    job_id: str,
    action: str,
    state: str,
    success: bool = True,
    detail: Optional[str] = None,
) -> None:
    """Log a job step."""
    step_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "job_id": job_id,
        "action": action,
        "state": state,
        "success": success,
        "detail": detail,
    }
    if success:
        logger.info(f"JOB_STEP: {step_data}")
    else:
        logger.warning(f"JOB_STEP_FAILED: {step_data}")


def log_fetch(
    url: str,
    domain: str,
    status: str,
    http_status: int = 0,
    duration_ms: int = 0,
    error: Optional[str] = None,
) -> None:
    """Log an outbound fetch."""
    fetch_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "url": url,
        "domain": domain,
        "status": status,
        "http_status": http_status,
        "duration_ms": duration_ms,
        "error": error,
    }
    if error:
        logger.warning(f"FETCH_FAILED: {fetch_data}")
    else:
        logger.debug(f"FETCH: {fetch_data}")


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
