from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from audit_log import FAILED_STATUSES, SUCCESSFUL_STATUSES
from auth_gate import require_bearer_token
from clock import format_timestamp, remaining_time
from lockout import LockoutSnapshot
from schemas import (
    CleanupResponse,
    LockoutEntryResponse,
    LockoutStatsResponse,
    MessageResponse,
    RequestLogSummary,
)

# Every route below sits behind the bearer token gate.
# Downstream routers (e.g. news CRUD) are mounted on this router too.
router = APIRouter(prefix="/api", dependencies=[Depends(require_bearer_token)])


def _entry_response(request: Request, entry: LockoutSnapshot) -> LockoutEntryResponse:
    now = request.app.state.clock()
    return LockoutEntryResponse(
        ip_address=entry.ip_address,
        attempt_count=entry.attempt_count,
        is_active=entry.is_active,
        blocked_at=format_timestamp(entry.blocked_at),
        expires_at=format_timestamp(entry.expires_at),
        reason=entry.reason,
        remaining_time=remaining_time(entry.expires_at, now) if entry.is_active else None,
    )


# ======================================================
# Token
# ======================================================

@router.get("/token/verify", response_model=MessageResponse)
def verify_token():
    return MessageResponse(message="Token doğrulandı")


# ======================================================
# Lockouts
# ======================================================

@router.get("/lockouts/stats", response_model=LockoutStatsResponse)
def lockout_stats(request: Request):
    stats = request.app.state.lockout_store.stats()
    return LockoutStatsResponse(**asdict(stats))


@router.post("/lockouts/cleanup", response_model=CleanupResponse)
def cleanup_lockouts(request: Request):
    return CleanupResponse(cleared=request.app.state.lockout_store.cleanup_expired())


@router.get("/lockouts/{ip}", response_model=LockoutEntryResponse)
def get_lockout(ip: str, request: Request):
    entry = request.app.state.lockout_store.get(ip)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No lockout history for this IP",
        )
    return _entry_response(request, entry)


@router.delete("/lockouts/{ip}", response_model=MessageResponse)
def clear_lockout(ip: str, request: Request):
    if not request.app.state.lockout_store.clear_history(ip):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No lockout history for this IP",
        )
    return MessageResponse(message=f"{ip} için deneme geçmişi temizlendi")


# ======================================================
# Request logs
# ======================================================

@router.get("/request-logs/{ip}/summary", response_model=RequestLogSummary)
def request_log_summary(
    ip: str,
    request: Request,
    minutes: int = Query(default=10, ge=1, le=1440),
    method: Optional[str] = Query(default=None, max_length=10),
):
    sink = request.app.state.audit_sink
    method = method.upper() if method else None

    def count(**filters) -> int:
        return sink.count_for_ip(ip, minutes, method=method, **filters)

    return RequestLogSummary(
        ip_address=ip,
        minutes=minutes,
        method=method,
        total_requests=count(),
        requests_without_token=count(without_bearer_token=True),
        successful_requests=count(status_range=SUCCESSFUL_STATUSES),
        failed_requests=count(status_range=FAILED_STATUSES),
    )
