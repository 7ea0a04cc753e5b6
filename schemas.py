from enum import Enum
from pydantic import BaseModel
from typing import Optional


class ErrorCode(str, Enum):
    IP_BLACKLISTED = "IP_BLACKLISTED"
    IP_NEWLY_BLACKLISTED = "IP_NEWLY_BLACKLISTED"
    INVALID_TOKEN = "INVALID_TOKEN"
    MISSING_TOKEN = "MISSING_TOKEN"
    AUTH_GATE_UNAVAILABLE = "AUTH_GATE_UNAVAILABLE"


# =========================
# Denials
# =========================

class BlockDetails(BaseModel):
    blocked_at: Optional[str]
    expires_at: Optional[str]
    reason: Optional[str]
    remaining_time: Optional[str]


class BlacklistedResponse(BaseModel):
    success: bool = False
    message: str
    error_code: ErrorCode = ErrorCode.IP_BLACKLISTED
    details: BlockDetails


class NewBlockDetails(BaseModel):
    attempt_count: int
    max_attempts: int
    blocked_until: Optional[str]
    block_duration: str


class NewlyBlacklistedResponse(BaseModel):
    success: bool = False
    message: str
    error_code: ErrorCode = ErrorCode.IP_NEWLY_BLACKLISTED
    details: NewBlockDetails


class AttemptWarning(BaseModel):
    attempt_count: int
    remaining_attempts: int
    message: str


class UnauthorizedResponse(BaseModel):
    success: bool = False
    message: str
    error_code: ErrorCode
    warning: AttemptWarning


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error_code: ErrorCode


# =========================
# Admin / reporting
# =========================

class HealthResponse(BaseModel):
    status: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class LockoutEntryResponse(BaseModel):
    ip_address: str
    attempt_count: int
    is_active: bool
    blocked_at: Optional[str]
    expires_at: Optional[str]
    reason: Optional[str]
    remaining_time: Optional[str]


class LockoutStatsResponse(BaseModel):
    total_records: int
    active_blocks: int
    expired_blocks: int
    high_attempt_ips: int


class CleanupResponse(BaseModel):
    cleared: int


class RequestLogSummary(BaseModel):
    ip_address: str
    minutes: int
    method: Optional[str] = None
    total_requests: int
    requests_without_token: int
    successful_requests: int
    failed_requests: int
