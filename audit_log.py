import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from clock import Clock, utcnow, window_start
from models import RequestLog

logger = logging.getLogger("newsapi.audit")

REDACTED = "***FILTERED***"

SUCCESSFUL_STATUSES = (200, 299)
FAILED_STATUSES = (400, 599)

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "cookie",
    "x-api-key",
    "x-auth-token",
    "x-csrf-token",
    "x-xsrf-token",
})

SENSITIVE_FIELDS = frozenset({
    "password",
    "password_confirmation",
    "token",
    "api_key",
    "secret",
    "client_secret",
    "access_token",
    "refresh_token",
})

STATUS_MESSAGES = {
    200: "OK",
    201: "Created",
    204: "No Content",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    422: "Validation Error",
    500: "Internal Server Error",
}

PARTIAL_DATA_KEYS = 10


# ======================================================
# Sanitization
# ======================================================

def sanitize_headers(headers: Mapping[str, List[str]]) -> Dict[str, List[str]]:
    return {
        name: [REDACTED] if name.lower() in SENSITIVE_HEADERS else list(values)
        for name, values in headers.items()
    }


def sanitize_request_data(data: Any) -> Any:
    """
    Redact sensitive keys at any nesting depth.
    """
    if isinstance(data, Mapping):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in SENSITIVE_FIELDS
            else sanitize_request_data(value)
            for key, value in data.items()
        }

    if isinstance(data, list):
        return [sanitize_request_data(item) for item in data]

    return data


def limit_request_size(data: Dict[str, Any], max_bytes: int) -> Dict[str, Any]:
    """
    Replace oversized request data with a truncation marker.
    """
    serialized = json.dumps(data, ensure_ascii=False, default=str)
    size = len(serialized.encode())

    if size <= max_bytes:
        return data

    return {
        "_truncated": True,
        "_original_size": size,
        "_note": "Request data too large, truncated for logging",
        "partial_data": dict(list(data.items())[:PARTIAL_DATA_KEYS]),
    }


# ======================================================
# Response Message
# ======================================================

def status_message(status_code: int) -> str:
    return STATUS_MESSAGES.get(status_code, f"HTTP {status_code}")


def response_message(status_code: int, content_type: Optional[str], body: bytes) -> str:
    """
    Short outcome string: JSON `message`, then `error`, then `success`,
    then the status code table.
    """
    if content_type and "application/json" in content_type and body:
        try:
            data = json.loads(body)
        except ValueError:
            data = None

        if isinstance(data, dict):
            if data.get("message") is not None:
                return str(data["message"])

            if data.get("error") is not None:
                error = data["error"]
                return error if isinstance(error, str) else "API Error"

            if data.get("success") is True:
                return "Request successful"

    return status_message(status_code)


# ======================================================
# Log Event
# ======================================================

class RequestLogEvent(BaseModel):
    ip_address: str
    method: str
    url: str
    user_agent: Optional[str] = None
    headers: Dict[str, List[str]] = {}
    request_data: Dict[str, Any] = {}
    response_status: int
    response_message: str
    has_bearer_token: bool = False
    execution_time: Optional[float] = None


# ======================================================
# Sink
# ======================================================

class AuditLogSink:
    """
    Persists one RequestLog row per request and answers windowed queries.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def record(self, event: RequestLogEvent) -> bool:
        """
        Store `event`. Never raises: persistence failures are logged and
        reported as False.
        """
        logger.info(event.model_dump_json())

        try:
            with self._session_factory.begin() as session:
                session.add(
                    RequestLog(
                        ip_address=event.ip_address[:45],
                        method=event.method.upper()[:10],
                        url=event.url,
                        user_agent=event.user_agent,
                        headers=event.headers,
                        request_data=event.request_data,
                        response_status=event.response_status,
                        response_message=event.response_message,
                        has_bearer_token=event.has_bearer_token,
                        execution_time=event.execution_time,
                        created_at=self._clock(),
                    )
                )
        except Exception:
            logger.exception(
                "Request log write failed for %s %s", event.method, event.url
            )
            return False

        return True

    def count_for_ip(
        self,
        ip: str,
        minutes: int = 10,
        without_bearer_token: bool = False,
        status_range: Optional[Tuple[int, int]] = None,
        method: Optional[str] = None,
    ) -> int:
        """
        Requests from `ip` in the last `minutes`, optionally narrowed to
        token-less requests, an inclusive status range or one HTTP method.
        """
        criteria = [
            RequestLog.ip_address == ip,
            RequestLog.created_at >= window_start(minutes, self._clock()),
        ]
        if without_bearer_token:
            criteria.append(RequestLog.has_bearer_token.is_(False))
        if status_range is not None:
            low, high = status_range
            criteria.append(RequestLog.response_status.between(low, high))
        if method:
            criteria.append(RequestLog.method == method.upper())

        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(RequestLog).where(*criteria)
            ).scalar_one()

    def recent_for_ip(self, ip: str, limit: int = 50) -> List[RequestLog]:
        with self._session_factory() as session:
            rows = session.execute(
                select(RequestLog)
                .where(RequestLog.ip_address == ip)
                .order_by(RequestLog.created_at.desc(), RequestLog.id.desc())
                .limit(limit)
            ).scalars().all()
            session.expunge_all()
            return list(rows)
