"""
Structured Logging for the Protocol Advisor

JSON log records tagged with the correlation id, the field session and the
validation stage currently running, so one query can be followed from
expansion through retrieval, the four validation stages and any outbound
protocol API call.

LOG_LEVEL picks the level; LOG_FORMAT picks json (default) or text.

Usage:
    from pcm_advisor.structured_logging import configure_logging, log_context

    configure_logging()
    with log_context(session_id="medic-12", stage="post-response"):
        logger.warning("Dose outside PCM range", extra={"medication": "epinephrine"})
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from .config import get_settings

SERVICE_NAME = "pcm-advisor"

# Inbound headers checked in order for an existing trace id
TRACE_HEADERS = ("X-B3-TraceId", "X-Correlation-ID", "X-Request-ID")

# ═══════════════════════════════════════════════════════════════════════════════
# CONTEXT
# ═══════════════════════════════════════════════════════════════════════════════

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

_CONTEXT_FIELDS = (
    ("correlation_id", correlation_id_var),
    ("session_id", session_id_var),
    ("stage", stage_var),
)


class log_context:
    """
    Scope correlation/session/stage values to a block.

    Only the values passed are changed; everything is restored on exit,
    so nested blocks can switch the stage without losing the session.
    """

    def __init__(self, correlation_id: Optional[str] = None, session_id: Optional[str] = None,
                 stage: Optional[str] = None):
        self._pending = {"correlation_id": correlation_id, "session_id": session_id, "stage": stage}
        self._tokens = []

    def __enter__(self):
        for name, var in _CONTEXT_FIELDS:
            value = self._pending[name]
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False

# ═══════════════════════════════════════════════════════════════════════════════
# FORMATTER
# ═══════════════════════════════════════════════════════════════════════════════

class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """Adds UTC timestamp, level, logger, service and the active context to each record."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        for redundant in ("asctime", "levelname", "name"):
            log_record.pop(redundant, None)

        log_record["timestamp"] = (
            datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z")
        )
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = SERVICE_NAME

        for name, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_record[name] = value


_configured = False


def configure_logging(level: Optional[str] = None, json_output: bool = True) -> None:
    """
    Install a single stdout handler on the root logger. Safe to call repeatedly.

    Args:
        level: overrides LOG_LEVEL
        json_output: False forces the text format regardless of LOG_FORMAT
    """
    global _configured
    if _configured:
        return

    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if json_output and settings.log_format.lower() == "json":
        handler.setFormatter(StructuredJsonFormatter(fmt="%(timestamp)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True

# ═══════════════════════════════════════════════════════════════════════════════
# PROPAGATION
# ═══════════════════════════════════════════════════════════════════════════════

def create_correlation_middleware():
    """
    FastAPI middleware: adopt or mint a correlation id per request and echo it back.

    Usage:
        app.middleware("http")(create_correlation_middleware())
    """
    from fastapi import Request

    logger = logging.getLogger("pcm_advisor.http")

    async def correlation_middleware(request: Request, call_next):
        incoming = next((request.headers[h] for h in TRACE_HEADERS if request.headers.get(h)), None)
        correlation_id = incoming or str(uuid.uuid4())
        route = f"{request.method} {request.url.path}"
        started = time.time()

        with log_context(correlation_id=correlation_id, session_id=request.headers.get("X-Session-Id")):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"{route} failed with {type(e).__name__}",
                    extra={"route": route, "error_type": type(e).__name__,
                           "duration_ms": round((time.time() - started) * 1000, 2)},
                    exc_info=True,
                )
                raise

            logger.info(
                f"{route} -> {response.status_code}",
                extra={"route": route, "http_status": response.status_code,
                       "duration_ms": round((time.time() - started) * 1000, 2)},
            )
            response.headers["X-Correlation-ID"] = correlation_id
            return response

    return correlation_middleware


def get_correlation_headers() -> Dict[str, str]:
    """Headers carrying the current correlation and session ids to the protocol API."""
    headers = {}
    correlation_id = correlation_id_var.get()
    if correlation_id:
        headers["X-Correlation-ID"] = correlation_id
        headers["X-B3-TraceId"] = correlation_id
    session_id = session_id_var.get()
    if session_id:
        headers["X-Session-Id"] = session_id
    return headers
