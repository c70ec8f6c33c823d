"""Logging setup and request logging middleware.

Logs are JSON lines in production-style deployments and plain text when
LOG_FORMAT=text. Structured fields passed via ``extra=`` are copied into the
JSON document when present.
"""

import json
import logging
import time
from datetime import datetime, timezone

from fastapi import Request

STRUCTURED_FIELDS = (
    "user_id",
    "email",
    "ip",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "salary_day",
    "category",
    "expense_id",
)

request_logger = logging.getLogger("backend.requests")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            value = record.__dict__.get(key)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install a single stream handler on the root logger."""
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_expense_tracker_handler", False):
            root.removeHandler(existing)
    handler._expense_tracker_handler = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    ip = client_ip(request)
    request_logger.info(
        f"{request.method} {request.url.path}",
        extra={"method": request.method, "path": request.url.path, "ip": ip},
    )
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    request_logger.log(
        level,
        f"{request.method} {request.url.path} {response.status_code}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "ip": ip,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response
