from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Iterable, Optional, Tuple

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from flowform.config import env_bool, env_int

logger = logging.getLogger("api.http")


_SENSITIVE_KEYS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "apikey",
    "token",
    "password",
}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: ("***" if str(k).lower() in _SENSITIVE_KEYS else _redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def _header(headers: Iterable[Tuple[bytes, bytes]], name: bytes) -> str:
    for k, v in headers:
        if k.lower() == name:
            return v.decode("latin-1", errors="replace")
    return ""


def _parse_body(content_type: str, body: bytes) -> Any:
    if not body:
        return ""
    if "application/json" in (content_type or "").lower():
        try:
            return _redact(json.loads(body.decode("utf-8", errors="replace")))
        except ValueError:
            return body.decode("utf-8", errors="replace")
    return f"<{len(body)} bytes>"


class HttpLoggingMiddleware:
    """Log one JSON line per HTTP request: method, path, status, duration and a capped body capture."""

    def __init__(self, app: ASGIApp, *, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max(0, max_body_bytes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        started_at = time.perf_counter()
        headers = list(scope.get("headers") or [])
        request_id = _header(headers, b"x-request-id") or uuid.uuid4().hex[:12]
        req_ct = _header(headers, b"content-type")
        req_body = bytearray()
        status: Optional[int] = None

        async def receive_wrapped() -> Message:
            message = await receive()
            if message.get("type") == "http.request" and self.max_body_bytes:
                remaining = self.max_body_bytes - len(req_body)
                if remaining > 0:
                    req_body.extend((message.get("body") or b"")[:remaining])
            return message

        async def send_wrapped(message: Message) -> None:
            nonlocal status
            if message.get("type") == "http.response.start":
                status = int(message.get("status") or 0)
            await send(message)

        err: Optional[BaseException] = None
        try:
            await self.app(scope, receive_wrapped, send_wrapped)
        except BaseException as e:  # noqa: BLE001 - logged then re-raised
            err = e
            raise
        finally:
            record: Dict[str, Any] = {
                "id": request_id,
                "method": str(scope.get("method") or "").upper(),
                "path": str(scope.get("path") or ""),
                "status": status,
                "dur_ms": int((time.perf_counter() - started_at) * 1000),
            }
            if self.max_body_bytes:
                record["request"] = _parse_body(req_ct, bytes(req_body))
            if err is not None:
                record["error"] = {"type": type(err).__name__, "message": str(err)}
            logger.info(json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str))


def install_http_logging(app: Any) -> None:
    """
    Enable request logging via env vars.

    - `FLOWFORM_HTTP_LOG=1` enables middleware
    - `FLOWFORM_HTTP_LOG_BODY_MAX_BYTES=2048` caps request body bytes captured (0 disables capture)
    """
    if not env_bool("FLOWFORM_HTTP_LOG", default=False):
        return
    app.add_middleware(HttpLoggingMiddleware, max_body_bytes=env_int("FLOWFORM_HTTP_LOG_BODY_MAX_BYTES", 2048))
