import logging
from datetime import datetime
from typing import Dict, Optional

import redis

from clock import Clock, block_until, utcnow
from lockout import (
    HIGH_ATTEMPT_THRESHOLD,
    FailureOutcome,
    LockoutPolicy,
    LockoutSnapshot,
    LockoutState,
    LockoutStats,
    LockoutStatus,
    block_reason,
    classify,
)

logger = logging.getLogger("newsapi.lockout")

KEY_PREFIX = "lockout:"


# =========================
# Helpers
# =========================

def lockout_key(ip: str) -> str:
    return f"{KEY_PREFIX}{ip}"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _snapshot(ip: str, fields: Dict[str, str]) -> LockoutSnapshot:
    # A hash is blocked exactly when it carries an expiry
    expires_at = _parse_time(fields.get("expires_at"))
    return LockoutSnapshot(
        ip_address=ip,
        attempt_count=int(fields.get("attempt_count", 0)),
        is_active=expires_at is not None,
        blocked_at=_parse_time(fields.get("blocked_at")),
        expires_at=expires_at,
        reason=fields.get("reason"),
    )


# =========================
# Redis Store
# =========================

class RedisLockoutStore:
    """
    Lockout entries kept as `lockout:{ip}` hashes.

    The cleared state is represented by the absence of the key. Every
    read-check-write runs as a WATCH/MULTI transaction on the IP's key, so
    concurrent writers retry instead of overwriting each other and exactly one
    failure wins the transition into a block. Blocked keys also get a native
    TTL equal to the block duration.
    """

    def __init__(
        self,
        client: redis.Redis,
        policy: LockoutPolicy,
        clock: Clock = utcnow,
    ):
        self._client = client
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    def get(self, ip: str) -> Optional[LockoutSnapshot]:
        return self._read(self._client, ip)

    def _read(self, conn, ip: str) -> Optional[LockoutSnapshot]:
        # `conn` is the client or a pipeline in WATCH (immediate) mode
        fields = conn.hgetall(lockout_key(ip))
        if not fields:
            return None
        return _snapshot(ip, fields)

    def check_status(self, ip: str) -> LockoutStatus:
        """
        Current block status for `ip`; reclaims an expired block as a side effect.
        """
        entry = self.get(ip)
        state = classify(entry, self._clock())

        if state == LockoutState.BLOCKED:
            return LockoutStatus(blocked=True, entry=entry)

        if state == LockoutState.EXPIRED:
            self.reclaim(ip)
            return LockoutStatus(blocked=False, entry=LockoutSnapshot.cleared(ip))

        return LockoutStatus(blocked=False, entry=entry)

    def reclaim(self, ip: str) -> bool:
        key = lockout_key(ip)
        now = self._clock()

        def _txn(pipe) -> bool:
            if classify(self._read(pipe, ip), now) != LockoutState.EXPIRED:
                return False
            pipe.multi()
            pipe.delete(key)
            return True

        reclaimed = self._client.transaction(_txn, key, value_from_callable=True)
        if reclaimed:
            logger.info("Lockout for %s expired, history cleared", ip)
        return reclaimed

    def record_failure(self, ip: str) -> FailureOutcome:
        """
        Reset-if-expired, increment and threshold check under WATCH on the
        IP's key; a concurrent write to the key makes the transaction retry.
        """
        key = lockout_key(ip)
        now = self._clock()
        until = block_until(now, self._policy.block_minutes)

        def _txn(pipe) -> FailureOutcome:
            entry = self._read(pipe, ip)
            state = classify(entry, now)

            if state in (LockoutState.ABSENT, LockoutState.EXPIRED):
                attempt_count = 1
            else:
                attempt_count = entry.attempt_count + 1
            newly_blocked = (
                state != LockoutState.BLOCKED
                and attempt_count >= self._policy.max_attempts
            )

            pipe.multi()
            if state == LockoutState.EXPIRED:
                pipe.delete(key)
            pipe.hset(key, "attempt_count", attempt_count)
            if newly_blocked:
                pipe.hset(
                    key,
                    mapping={
                        "expires_at": until.isoformat(),
                        "blocked_at": now.isoformat(),
                        "reason": block_reason(attempt_count),
                    },
                )
                pipe.expire(key, int(self._policy.block_duration.total_seconds()))

            return FailureOutcome(
                attempt_count=attempt_count,
                newly_blocked=newly_blocked,
                blocked_until=until if newly_blocked else None,
            )

        outcome = self._client.transaction(_txn, key, value_from_callable=True)

        if outcome.newly_blocked:
            logger.warning(
                "IP %s blocked until %s after %d failed attempts",
                ip,
                until.isoformat(),
                outcome.attempt_count,
            )
        return outcome

    def record_success(self, ip: str) -> None:
        key = lockout_key(ip)

        def _txn(pipe) -> None:
            attempt_count = pipe.hget(key, "attempt_count")
            if attempt_count and int(attempt_count) > 0:
                pipe.multi()
                pipe.delete(key)

        self._client.transaction(_txn, key)

    def cleanup_expired(self) -> int:
        cleared = 0

        for key in self._client.scan_iter(match=f"{KEY_PREFIX}*"):
            if self.reclaim(key[len(KEY_PREFIX):]):
                cleared += 1

        if cleared:
            logger.info("Cleared %d expired lockouts", cleared)
        return cleared

    def clear_history(self, ip: str) -> bool:
        return self._client.delete(lockout_key(ip)) > 0

    def stats(self) -> LockoutStats:
        now = self._clock()
        total = active = expired = high = 0

        for key in self._client.scan_iter(match=f"{KEY_PREFIX}*"):
            entry = self.get(key[len(KEY_PREFIX):])
            if entry is None:
                continue

            total += 1
            if entry.is_active:
                active += 1
            if classify(entry, now) == LockoutState.EXPIRED:
                expired += 1
            if entry.attempt_count >= HIGH_ATTEMPT_THRESHOLD:
                high += 1

        return LockoutStats(
            total_records=total,
            active_blocks=active,
            expired_blocks=expired,
            high_attempt_ips=high,
        )
