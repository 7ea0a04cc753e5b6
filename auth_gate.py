import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Request
from redis import RedisError
from sqlalchemy.exc import SQLAlchemyError

from clock import Clock, format_timestamp, remaining_time, utcnow
from lockout import LockoutSnapshot, LockoutStore
from schemas import (
    AttemptWarning,
    BlacklistedResponse,
    BlockDetails,
    ErrorCode,
    NewBlockDetails,
    NewlyBlacklistedResponse,
    UnauthorizedResponse,
)
from security import client_ip, extract_bearer_token, token_matches

logger = logging.getLogger("newsapi.auth")

BLOCKED_MESSAGE = "IP adresiniz güvenlik nedeniyle geçici süreyle engellenmiştir."
NEWLY_BLOCKED_MESSAGE = (
    "IP adresiniz çok fazla başarısız deneme nedeniyle {minutes} dakika süreyle engellenmiştir."
)
UNAUTHORIZED_MESSAGE = "Yetkisiz erişim. Geçerli bir bearer token gerekmektedir."
ATTEMPT_WARNING_MESSAGE = (
    "Çok fazla başarısız deneme IP adresinizi geçici olarak bloklatabilir."
)


# ======================================================
# Errors
# ======================================================

class AuthDenied(Exception):
    """
    Request rejected by the gate; rendered as `payload` with `status_code`.
    """

    def __init__(self, status_code: int, payload: Dict[str, Any]):
        super().__init__(payload.get("error_code"))
        self.status_code = status_code
        self.payload = payload


class AuthGateUnavailable(Exception):
    """
    Lockout bookkeeping failed before a decision could be made.
    """


# ======================================================
# Decision
# ======================================================

class Decision(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass(frozen=True)
class GateDecision:
    decision: Decision
    status_code: int = 200
    payload: Optional[Dict[str, Any]] = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


class AuthGate:
    """
    Per-request bearer token gate with IP lockout.

    Evaluation order:
    1. an IP under an unexpired block is denied, even with a valid token
    2. a missing or wrong token is recorded as a failed attempt
    3. a valid token clears any failure history for the IP
    """

    def __init__(self, store: LockoutStore, token: str, clock: Clock = utcnow):
        self._store = store
        self._token = token
        self._clock = clock

    def evaluate(self, ip: str, authorization: Optional[str]) -> GateDecision:
        status = self._store.check_status(ip)
        if status.blocked:
            logger.info("Rejected request from blocked IP %s", ip)
            return GateDecision(
                Decision.DENY, 403, self._blacklisted(status.entry)
            )

        token = extract_bearer_token(authorization)
        if token_matches(token, self._token):
            self._store.record_success(ip)
            return GateDecision(Decision.ALLOW)

        outcome = self._store.record_failure(ip)
        policy = self._store.policy

        if outcome.newly_blocked:
            body = NewlyBlacklistedResponse(
                message=NEWLY_BLOCKED_MESSAGE.format(minutes=policy.block_minutes),
                details=NewBlockDetails(
                    attempt_count=outcome.attempt_count,
                    max_attempts=policy.max_attempts,
                    blocked_until=format_timestamp(outcome.blocked_until),
                    block_duration=f"{policy.block_minutes} dakika",
                ),
            )
            return GateDecision(Decision.DENY, 403, body.model_dump(mode="json"))

        logger.info(
            "Failed bearer token attempt %d/%d from %s",
            outcome.attempt_count,
            policy.max_attempts,
            ip,
        )
        body = UnauthorizedResponse(
            message=UNAUTHORIZED_MESSAGE,
            error_code=ErrorCode.INVALID_TOKEN if token else ErrorCode.MISSING_TOKEN,
            warning=AttemptWarning(
                attempt_count=outcome.attempt_count,
                remaining_attempts=max(policy.max_attempts - outcome.attempt_count, 0),
                message=ATTEMPT_WARNING_MESSAGE,
            ),
        )
        return GateDecision(Decision.DENY, 401, body.model_dump(mode="json"))

    def _blacklisted(self, entry: LockoutSnapshot) -> Dict[str, Any]:
        body = BlacklistedResponse(
            message=BLOCKED_MESSAGE,
            details=BlockDetails(
                blocked_at=format_timestamp(entry.blocked_at),
                expires_at=format_timestamp(entry.expires_at),
                reason=entry.reason,
                remaining_time=remaining_time(entry.expires_at, self._clock()),
            ),
        )
        return body.model_dump(mode="json")


# ======================================================
# FastAPI Dependency
# ======================================================

def require_bearer_token(request: Request) -> None:
    """
    Route dependency enforcing the gate.
    Raises AuthDenied for rejected requests.
    """
    gate: AuthGate = request.app.state.auth_gate
    ip = client_ip(request, request.app.state.settings.TRUST_X_FORWARDED_FOR)

    try:
        decision = gate.evaluate(ip, request.headers.get("authorization"))
    except (SQLAlchemyError, RedisError) as e:
        logger.exception("Auth gate bookkeeping failed for %s", ip)
        raise AuthGateUnavailable(str(e)) from e

    if not decision.allowed:
        raise AuthDenied(decision.status_code, decision.payload)

    request.state.has_valid_token = True
