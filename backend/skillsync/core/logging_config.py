"""
Logging for SkillSync.

Sync passes and webhook deliveries log through a BoundLogger carrying the
ids of what they work on (connection, provider, delivery, mode). Production
emits one JSON object per line with those ids as top-level keys; development
prints a colored line with the ids appended.
"""

import json
import logging
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

from skillsync.core.config import settings

# Ids promoted to top-level JSON keys; anything else passed via extra= lands under "extra"
CONTEXT_KEYS = ("connection_id", "provider", "delivery_id", "mode", "request_id")

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

NOISY_LOGGERS = ("uvicorn", "uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


def _fields(record: logging.LogRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split non-standard record attributes into (context ids, other extras)."""
    context: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_ATTRS:
            continue
        (context if key in CONTEXT_KEYS else extra)[key] = value
    return context, extra


class JSONFormatter(logging.Formatter):
    """One JSON object per line for the log pipeline."""

    def __init__(self, service_name: str = "skillsync"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        context, extra = _fields(record)
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "env": settings.ENVIRONMENT,
            "msg": record.getMessage(),
            **context,
        }
        if extra:
            entry["extra"] = extra
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": str(record.exc_info[1]),
                "trace": "".join(traceback.format_exception(*record.exc_info)),
            }
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Development console output: level-colored line, bound ids appended as key=value."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        context, _ = _fields(record)
        clock = time.strftime("%H:%M:%S", time.localtime(record.created))
        line = f"{clock} {record.levelname:<7} {record.name}: {record.getMessage()}"
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + traceback.format_exception_only(record.exc_info[0], record.exc_info[1])[-1].rstrip()
        return f"{color}{line}{self.RESET}" if color else line


class BoundLogger(logging.LoggerAdapter):
    """
    Logger adapter whose bound ids ride along on every record.

    Binding never mutates: ``bind`` returns a new adapter, so a sync pass
    and a concurrent webhook delivery never see each other's ids.
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(context or {}))

    def bind(self, **context: Any) -> "BoundLogger":
        return BoundLogger(self.logger, {**self.extra, **context})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def setup_logging(
    service_name: str = "skillsync",
    log_level: Optional[str] = None,
    json_logs: Optional[bool] = None,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        service_name: Value of the "service" key in JSON logs
        log_level: Overrides DEBUG/INFO picked from settings.DEBUG
        json_logs: Overrides the production default of JSON output
    """
    level = getattr(logging, (log_level or ("DEBUG" if settings.DEBUG else "INFO")).upper())
    use_json = settings.IS_PRODUCTION if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("skillsync.logging").info(
        f"Logging ready ({logging.getLevelName(level)}, {'json' if use_json else 'console'})"
    )


def get_logger(name: str) -> BoundLogger:
    """``get_logger(__name__).bind(connection_id=..., provider=...)``"""
    return BoundLogger(logging.getLogger(name))


class RequestLoggingMiddleware:
    """
    ASGI middleware: one log line per HTTP request with status and timing.

    Each request gets a short id, exposed to handlers as
    ``request.state.request_id`` and echoed in the X-Request-ID header.
    """

    SKIP_PATHS = ("/health",)

    def __init__(self, app):
        self.app = app
        self.logger = logging.getLogger("skillsync.http")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = uuid.uuid4().hex[:12]
        scope.setdefault("state", {})["request_id"] = request_id
        started = time.perf_counter()
        status = 500

        async def send_with_id(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
                message["headers"] = [*message.get("headers", []), (b"x-request-id", request_id.encode())]
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        finally:
            path = scope.get("path", "/")
            if path not in self.SKIP_PATHS:
                elapsed_ms = (time.perf_counter() - started) * 1000
                self.logger.log(
                    logging.WARNING if status >= 400 else logging.INFO,
                    f"{scope.get('method', '?')} {path} -> {status} in {elapsed_ms:.0f}ms",
                    extra={"request_id": request_id, "status": status, "duration_ms": round(elapsed_ms, 1)},
                )
