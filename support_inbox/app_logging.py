"""Application and access logging setup.

Centralizes logging configuration for the inbox service:

- A JSON formatter (opt-in via LOG_JSON) or a human-readable formatter.
- Timed rotation of ``app.log`` (everything under the ``support_inbox``
  logger, including agent attempts and delivery failures) and ``access.log``.
- An HTTP middleware recording one structured line per request with basic
  PII scrubbing. WhatsApp payloads carry customer phone numbers, so those are
  masked to their last four digits instead of being dropped entirely.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "support_inbox"


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "api_key",
    "x-hub-signature-256",
    "helicone-auth",
}

PHONE_FIELDS = {"phone", "wa_id", "from", "to"}


def mask_phone(value: str) -> str:
    """Keep only the last four digits of a phone-like value."""

    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        scrubbed: dict[Any, Any] = {}
        for k, v in data.items():
            key = k.lower() if isinstance(k, str) else k
            if key in SENSITIVE_FIELDS:
                scrubbed[k] = "***"
            elif key in PHONE_FIELDS and isinstance(v, str):
                scrubbed[k] = mask_phone(v)
            else:
                scrubbed[k] = _scrub(v)
        return scrubbed
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


@dataclass(frozen=True)
class LoggingConfig:
    log_dir: str = "logs"
    level: int = logging.INFO
    json_format: bool = False
    retention_days: int = 7
    rotate_utc: bool = False
    request_bodies: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
            json_format=_env_flag("LOG_JSON"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
        )


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


def _file_handler(config: LoggingConfig, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(config.log_dir, filename),
        when="midnight",
        backupCount=config.retention_days,
        utc=config.rotate_utc,
    )
    handler.setFormatter(_get_formatter(config.json_format))
    return handler


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else None


def _install_access_logging(app: FastAPI, config: LoggingConfig | None = None) -> None:
    """Log one JSON line per request to ``uvicorn.access``.

    Health checks are skipped. The ``X-Request-Id`` (generated when absent)
    is echoed back so webhook retries from Meta can be correlated. Webhook
    requests also record whether they carried a signature.
    """

    config = config or LoggingConfig.from_env()
    access_logger = logging.getLogger("uvicorn.access")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path == "/api/health":
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()

        body_content = None
        if config.request_bodies:
            body_bytes = await request.body()

            async def receive() -> dict:  # pragma: no cover - internal
                return {"type": "http.request", "body": body_bytes, "more_body": False}

            request._receive = receive  # type: ignore[attr-defined]

            if body_bytes:
                try:
                    body_content = _scrub(json.loads(body_bytes))
                except ValueError:
                    body_content = body_bytes.decode("utf-8", errors="replace")

        response = await call_next(request)

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        if request.url.path.startswith("/api/webhooks/"):
            entry["signed"] = "x-hub-signature-256" in request.headers
        if body_content is not None:
            entry["body"] = body_content

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Attach rotating file handlers and, given an app, the access middleware.

    The ``support_inbox`` logger keeps any handler it already has so repeated
    app construction does not duplicate lines; ``uvicorn.access`` handlers are
    always replaced.
    """

    config = LoggingConfig.from_env()
    os.makedirs(config.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_file_handler(config, "app.log"))
    app_logger.setLevel(config.level)

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers.clear()
    access_logger.addHandler(_file_handler(config, "access.log"))
    access_logger.setLevel(config.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app, config)
