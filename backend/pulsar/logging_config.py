"""Logging for the Pulsar API.

Every record is one JSON line on stdout. While a request is being served its
request id is stamped on each record; the same id is the ``requestId`` a
payer sees in a 402 body and the ``X-Request-ID`` response header, so one
value traces a submission through verify, settle and job creation.

Payment credentials and worker secrets must never be logged. Extras passed
under a sensitive key are written as ``"[redacted]"``::

    logger.info("Job claimed", extra={"job_id": job.id})
"""

import json
import logging
import re
import secrets
import time
from contextvars import ContextVar
from typing import Any, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-ID"
REDACTED = "[redacted]"

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Ids forwarded by a proxy are kept only if they are short and printable.
_FORWARDED_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

_SENSITIVE_KEYS = frozenset(
    {"authorization", "x_payment", "payment_header", "signature", "secret", "worker_secret"}
)

_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "request_id"}


def new_request_id() -> str:
    """8 hex chars, short enough for a payer to quote back to support."""
    return secrets.token_hex(4)


def get_request_id() -> str:
    return _request_id_var.get()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in _SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    return value


class RequestContextFilter(logging.Filter):
    """Stamp ``request_id`` on records that don't already carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        extras = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and not k.startswith("_")
        }
        payload.update(_redact(extras))
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Send every logger through one JSON handler on stdout.

    Args:
        level: Root level name, e.g. ``"INFO"`` or ``"DEBUG"``.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Facilitator and Telegram calls would otherwise log every request line
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each request.

    A well-formed ``X-Request-ID`` from a proxy is reused, anything else is
    replaced by :func:`new_request_id`. The id is echoed on the response and
    an access line records whether the request carried a payment.
    """

    def __init__(self, app: ASGIApp, payment_header: str = "X-PAYMENT") -> None:
        super().__init__(app)
        self._payment_header = payment_header

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        forwarded = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = forwarded if _FORWARDED_ID_RE.match(forwarded) else new_request_id()
        token = _request_id_var.set(request_id)
        start = time.monotonic()

        try:
            response = await call_next(request)
        finally:
            _request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id

        logging.getLogger("pulsar.access").info(
            "%s %s %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "status_code": response.status_code,
                "paid": self._payment_header in request.headers,
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
        )
        return response
