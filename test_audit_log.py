import json
from unittest.mock import MagicMock

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from audit_log import (
    FAILED_STATUSES,
    REDACTED,
    SUCCESSFUL_STATUSES,
    AuditLogSink,
    RequestLogEvent,
    limit_request_size,
    response_message,
    sanitize_headers,
    sanitize_request_data,
)
from db import SessionLocal
from models import RequestLog

JSON = "application/json"


# =========================
# Sanitization
# =========================

def test_sanitize_headers_is_case_insensitive():
    headers = {
        "Authorization": ["Bearer abc"],
        "cookie": ["session=1"],
        "X-CSRF-Token": ["t"],
        "x-xsrf-token": ["t"],
        "X-Api-Key": ["k"],
        "x-auth-token": ["k"],
        "accept": ["application/json"],
    }

    clean = sanitize_headers(headers)

    assert clean["Authorization"] == [REDACTED]
    assert clean["cookie"] == [REDACTED]
    assert clean["X-CSRF-Token"] == [REDACTED]
    assert clean["x-xsrf-token"] == [REDACTED]
    assert clean["X-Api-Key"] == [REDACTED]
    assert clean["x-auth-token"] == [REDACTED]
    assert clean["accept"] == ["application/json"]


def test_sanitize_request_data_nested():
    data = {
        "password": "x",
        "nested": {"token": "y", "deeper": {"Client_Secret": "z", "title": "keep"}},
        "items": [{"access_token": "a", "id": 1}],
        "title": "Haber",
    }

    clean = sanitize_request_data(data)

    assert clean == {
        "password": REDACTED,
        "nested": {"token": REDACTED, "deeper": {"Client_Secret": REDACTED, "title": "keep"}},
        "items": [{"access_token": REDACTED, "id": 1}],
        "title": "Haber",
    }
    # Input is left untouched
    assert data["password"] == "x"
    assert sanitize_request_data(clean) == clean


def test_sensitive_key_with_mapping_value_is_redacted():
    assert sanitize_request_data({"secret": {"a": 1}}) == {"secret": REDACTED}


def test_limit_request_size():
    small = {"title": "x"}
    assert limit_request_size(small, 100) is small

    big = {f"k{i}": "v" * 50 for i in range(20)}
    limited = limit_request_size(big, 200)

    assert limited["_truncated"] is True
    assert limited["_original_size"] == len(json.dumps(big).encode())
    assert list(limited["partial_data"]) == [f"k{i}" for i in range(10)]


# =========================
# Response message
# =========================

def test_response_message_prefers_message_field():
    body = json.dumps({"message": "Haber oluşturuldu", "error": "ignored"}).encode()
    assert response_message(201, JSON, body) == "Haber oluşturuldu"


def test_response_message_error_field():
    assert response_message(400, JSON, b'{"error": "bad input"}') == "bad input"
    assert response_message(400, JSON, b'{"error": {"code": 1}}') == "API Error"


def test_response_message_success_flag():
    assert response_message(200, JSON, b'{"success": true, "data": []}') == "Request successful"


def test_response_message_status_fallback():
    assert response_message(404, JSON, b'{"detail": "Not Found"}') == "Not Found"
    assert response_message(422, "text/plain", b'{"message": "x"}') == "Validation Error"
    assert response_message(204, None, b"") == "No Content"
    assert response_message(500, JSON, b"not json") == "Internal Server Error"
    assert response_message(418, JSON, b"") == "HTTP 418"


# =========================
# Sink
# =========================

def _event(**overrides):
    fields = dict(
        ip_address="10.0.0.5",
        method="get",
        url="http://testserver/api/token/verify",
        response_status=401,
        response_message="Unauthorized",
    )
    fields.update(overrides)
    return RequestLogEvent(**fields)


def test_record_persists_event(clock):
    sink = AuditLogSink(SessionLocal, clock)

    assert sink.record(_event(headers={"authorization": [REDACTED]}, execution_time=1.234))

    with SessionLocal() as session:
        row = session.execute(select(RequestLog)).scalar_one()
    assert row.method == "GET"
    assert row.headers == {"authorization": [REDACTED]}
    assert row.execution_time == 1.234
    assert row.created_at == clock.now
    assert not row.has_bearer_token


def test_record_swallows_storage_errors(clock):
    factory = MagicMock()
    factory.begin.side_effect = OperationalError("INSERT", {}, Exception("db down"))
    sink = AuditLogSink(factory, clock)

    assert sink.record(_event()) is False


def test_count_for_ip_uses_time_window(clock):
    sink = AuditLogSink(SessionLocal, clock)
    sink.record(_event(has_bearer_token=True))
    sink.record(_event())
    clock.advance(minutes=8)
    sink.record(_event())
    sink.record(_event(ip_address="10.0.0.6"))

    assert sink.count_for_ip("10.0.0.5") == 3
    assert sink.count_for_ip("10.0.0.5", without_bearer_token=True) == 2

    clock.advance(minutes=5)
    assert sink.count_for_ip("10.0.0.5") == 1
    assert sink.count_for_ip("10.0.0.5", minutes=30) == 3


def test_count_for_ip_by_status_range_and_method(clock):
    sink = AuditLogSink(SessionLocal, clock)
    sink.record(_event(response_status=200))
    sink.record(_event(method="post", response_status=201))
    sink.record(_event(response_status=302))
    sink.record(_event(response_status=403))
    sink.record(_event(method="delete", response_status=500))

    assert sink.count_for_ip("10.0.0.5", status_range=SUCCESSFUL_STATUSES) == 2
    assert sink.count_for_ip("10.0.0.5", status_range=FAILED_STATUSES) == 2
    assert sink.count_for_ip("10.0.0.5", method="GET") == 3
    assert sink.count_for_ip("10.0.0.5", method="post") == 1
    assert sink.count_for_ip(
        "10.0.0.5", method="delete", status_range=FAILED_STATUSES
    ) == 1


def test_recent_for_ip_newest_first(clock):
    sink = AuditLogSink(SessionLocal, clock)
    sink.record(_event(url="http://testserver/first"))
    clock.advance(seconds=1)
    sink.record(_event(url="http://testserver/second"))

    rows = sink.recent_for_ip("10.0.0.5", limit=1)

    assert [r.url for r in rows] == ["http://testserver/second"]
