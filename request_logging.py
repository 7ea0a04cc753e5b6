import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from audit_log import (
    AuditLogSink,
    RequestLogEvent,
    limit_request_size,
    response_message,
    sanitize_headers,
    sanitize_request_data,
)
from security import client_ip, extract_bearer_token

logger = logging.getLogger("newsapi.audit")

# Only this much of a response body is kept for message extraction
RESPONSE_CAPTURE_BYTES = 64 * 1024


# ======================================================
# Request Data
# ======================================================

def _query_data(request: Request) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        data[key] = values if len(values) > 1 else values[0]
    return data


def _body_data(content_type: str, body: bytes) -> Dict[str, Any]:
    if not body:
        return {}

    if "application/json" in content_type:
        try:
            parsed = json.loads(body)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("latin-1"), keep_blank_values=True))

    return {}


def request_data(request: Request, body: bytes) -> Dict[str, Any]:
    """
    Query parameters merged with the parsed body; body keys win.
    """
    data = _query_data(request)
    data.update(_body_data(request.headers.get("content-type", ""), body))
    return data


def _grouped_headers(request: Request) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for name, value in request.headers.items():
        grouped.setdefault(name, []).append(value)
    return grouped


# ======================================================
# Middleware
# ======================================================

class RequestLogMiddleware:
    """
    Records every HTTP request exactly once, after its response was sent.

    The request body is buffered up front and replayed downstream so it can
    be logged even when the handler never reads it. Log persistence runs in
    the threadpool and its failures never reach the caller.
    """

    def __init__(
        self,
        app: ASGIApp,
        sink: AuditLogSink,
        max_request_bytes: int = 10000,
        trust_forwarded_for: bool = False,
    ):
        self.app = app
        self.sink = sink
        self.max_request_bytes = max_request_bytes
        self.trust_forwarded_for = trust_forwarded_for

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        request = Request(scope)
        has_bearer_token = extract_bearer_token(request.headers.get("authorization")) is not None

        body = await self._read_body(receive)
        body_sent = False

        async def replay_receive() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        status_code: Optional[int] = None
        content_type: Optional[str] = None
        captured = bytearray()

        async def capture_send(message: Message) -> None:
            nonlocal status_code, content_type
            if message["type"] == "http.response.start":
                status_code = message["status"]
                for name, value in message.get("headers", []):
                    if name.lower() == b"content-type":
                        content_type = value.decode("latin-1")
            elif message["type"] == "http.response.body":
                room = RESPONSE_CAPTURE_BYTES - len(captured)
                if room > 0:
                    captured.extend(message.get("body", b"")[:room])
            await send(message)

        try:
            await self.app(scope, replay_receive, capture_send)
        except Exception:
            await self._record(
                request, body, status_code or 500, None, b"", has_bearer_token, start_time
            )
            raise

        await self._record(
            request,
            body,
            status_code or 500,
            content_type,
            bytes(captured),
            has_bearer_token,
            start_time,
        )

    async def _read_body(self, receive: Receive) -> bytes:
        chunks = []
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunks.append(message.get("body", b""))
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    async def _record(
        self,
        request: Request,
        body: bytes,
        status_code: int,
        content_type: Optional[str],
        response_body: bytes,
        has_bearer_token: bool,
        start_time: float,
    ) -> None:
        try:
            event = RequestLogEvent(
                ip_address=client_ip(request, self.trust_forwarded_for),
                method=request.method,
                url=str(request.url),
                user_agent=request.headers.get("user-agent"),
                headers=sanitize_headers(_grouped_headers(request)),
                request_data=limit_request_size(
                    sanitize_request_data(request_data(request, body)),
                    self.max_request_bytes,
                ),
                response_status=status_code,
                response_message=response_message(status_code, content_type, response_body),
                has_bearer_token=has_bearer_token,
                execution_time=round((time.perf_counter() - start_time) * 1000, 3),
            )
        except Exception:
            logger.exception("Could not build request log event")
            return

        await run_in_threadpool(self.sink.record, event)
