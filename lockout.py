import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import and_, case, func, null, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from clock import Clock, block_until, is_expired, utcnow
from models import LockoutEntry

logger = logging.getLogger("newsapi.lockout")

HIGH_ATTEMPT_THRESHOLD = 5

SUPPORTED_DIALECTS = ("postgresql", "sqlite")


class UnsupportedDialect(RuntimeError):
    def __init__(self, dialect: str):
        super().__init__(
            f"Lockout store needs one of {SUPPORTED_DIALECTS}, got {dialect!r}"
        )


# ======================================================
# Value Types
# ======================================================

class LockoutState(str, Enum):
    ABSENT = "ABSENT"
    CLEAR = "CLEAR"
    BLOCKED = "BLOCKED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 10
    block_minutes: int = 10

    @property
    def block_duration(self) -> timedelta:
        return timedelta(minutes=self.block_minutes)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.MAX_FAILED_ATTEMPTS,
            block_minutes=settings.BLOCK_DURATION_MINUTES,
        )


@dataclass(frozen=True)
class LockoutSnapshot:
    ip_address: str
    attempt_count: int = 0
    is_active: bool = False
    blocked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None

    @classmethod
    def cleared(cls, ip_address: str) -> "LockoutSnapshot":
        return cls(ip_address=ip_address)


@dataclass(frozen=True)
class LockoutStatus:
    blocked: bool
    entry: Optional[LockoutSnapshot] = None


@dataclass(frozen=True)
class FailureOutcome:
    attempt_count: int
    newly_blocked: bool
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class LockoutStats:
    total_records: int
    active_blocks: int
    expired_blocks: int
    high_attempt_ips: int


class LockoutStore(Protocol):
    @property
    def policy(self) -> LockoutPolicy: ...

    def check_status(self, ip: str) -> LockoutStatus: ...

    def reclaim(self, ip: str) -> bool: ...

    def record_failure(self, ip: str) -> FailureOutcome: ...

    def record_success(self, ip: str) -> None: ...

    def cleanup_expired(self) -> int: ...

    def clear_history(self, ip: str) -> bool: ...

    def get(self, ip: str) -> Optional[LockoutSnapshot]: ...

    def stats(self) -> LockoutStats: ...


# ======================================================
# Pure Rules
# ======================================================

def classify(entry: Optional[LockoutSnapshot], now: datetime) -> LockoutState:
    """
    Lockout state of an entry at `now`, without touching storage.
    """
    if entry is None:
        return LockoutState.ABSENT

    if not entry.is_active:
        return LockoutState.CLEAR

    if is_expired(entry.expires_at, now):
        return LockoutState.EXPIRED

    return LockoutState.BLOCKED


def block_reason(attempt_count: int) -> str:
    return f"Çok fazla başarısız bearer token denemesi ({attempt_count} deneme)"


CLEARED_VALUES = {
    "attempt_count": 0,
    "is_active": False,
    "blocked_at": None,
    "expires_at": None,
    "reason": None,
}


def _snapshot(entry: LockoutEntry) -> LockoutSnapshot:
    return LockoutSnapshot(
        ip_address=entry.ip_address,
        attempt_count=entry.attempt_count or 0,
        is_active=bool(entry.is_active),
        blocked_at=entry.blocked_at,
        expires_at=entry.expires_at,
        reason=entry.reason,
    )


def _expired_clause(now: datetime):
    return and_(
        LockoutEntry.is_active.is_(True),
        LockoutEntry.expires_at.is_not(None),
        LockoutEntry.expires_at < now,
    )


# ======================================================
# Relational Store
# ======================================================

class SqlLockoutStore:
    """
    Lockout entries kept in the `ip_lockouts` table.

    Every mutation is a single conditional UPDATE inside one transaction, so
    concurrent requests from the same IP never need an in-process lock.

    Needs INSERT ... ON CONFLICT and UPDATE ... RETURNING, so only PostgreSQL
    and SQLite are supported.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: LockoutPolicy,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    # --------------------------------------------------
    # Request path
    # --------------------------------------------------

    def check_status(self, ip: str) -> LockoutStatus:
        """
        Current block status for `ip`.

        Side effect: an active entry whose block has expired is reclaimed
        (reset to the cleared state) before returning not-blocked.
        """
        now = self._clock()
        entry = self.get(ip)
        state = classify(entry, now)

        if state == LockoutState.BLOCKED:
            return LockoutStatus(blocked=True, entry=entry)

        if state == LockoutState.EXPIRED:
            self.reclaim(ip)
            return LockoutStatus(blocked=False, entry=LockoutSnapshot.cleared(ip))

        return LockoutStatus(blocked=False, entry=entry)

    def reclaim(self, ip: str) -> bool:
        """
        Clear `ip` if its block has expired. Returns True if a row changed.
        """
        now = self._clock()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(LockoutEntry)
                .where(LockoutEntry.ip_address == ip, _expired_clause(now))
                .values(**CLEARED_VALUES)
                .execution_options(synchronize_session=False)
            )
            reclaimed = result.rowcount > 0

        if reclaimed:
            logger.info("Lockout for %s expired, history cleared", ip)
        return reclaimed

    def record_failure(self, ip: str) -> FailureOutcome:
        now = self._clock()
        expired = _expired_clause(now)

        with self._session_factory.begin() as session:
            self._ensure_entry(session, ip)

            # Reset-if-expired and increment in one statement
            attempt_count, is_active = session.execute(
                update(LockoutEntry)
                .where(LockoutEntry.ip_address == ip)
                .values(
                    attempt_count=case(
                        (expired, 1),
                        else_=LockoutEntry.attempt_count + 1,
                    ),
                    is_active=case((expired, False), else_=LockoutEntry.is_active),
                    blocked_at=case((expired, null()), else_=LockoutEntry.blocked_at),
                    expires_at=case((expired, null()), else_=LockoutEntry.expires_at),
                    reason=case((expired, null()), else_=LockoutEntry.reason),
                )
                .returning(LockoutEntry.attempt_count, LockoutEntry.is_active)
                .execution_options(synchronize_session=False)
            ).one()

            if is_active or attempt_count < self._policy.max_attempts:
                return FailureOutcome(attempt_count=attempt_count, newly_blocked=False)

            # Only one concurrent failure can flip is_active from false to true
            until = block_until(now, self._policy.block_minutes)
            flipped = session.execute(
                update(LockoutEntry)
                .where(
                    LockoutEntry.ip_address == ip,
                    LockoutEntry.is_active.is_(False),
                    LockoutEntry.attempt_count >= self._policy.max_attempts,
                )
                .values(
                    is_active=True,
                    blocked_at=now,
                    expires_at=until,
                    reason=block_reason(attempt_count),
                )
                .returning(LockoutEntry.attempt_count)
                .execution_options(synchronize_session=False)
            ).first()

        if flipped is None:
            return FailureOutcome(attempt_count=attempt_count, newly_blocked=False)

        logger.warning(
            "IP %s blocked until %s after %d failed attempts",
            ip,
            until.isoformat(),
            attempt_count,
        )
        return FailureOutcome(
            attempt_count=flipped[0],
            newly_blocked=True,
            blocked_until=until,
        )

    def record_success(self, ip: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(LockoutEntry)
                .where(LockoutEntry.ip_address == ip, LockoutEntry.attempt_count > 0)
                .values(**CLEARED_VALUES)
                .execution_options(synchronize_session=False)
            )

    # --------------------------------------------------
    # Administrative
    # --------------------------------------------------

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(LockoutEntry)
                .where(_expired_clause(now))
                .values(**CLEARED_VALUES)
                .execution_options(synchronize_session=False)
            )
            cleared = result.rowcount

        if cleared:
            logger.info("Cleared %d expired lockouts", cleared)
        return cleared

    def clear_history(self, ip: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(LockoutEntry)
                .where(LockoutEntry.ip_address == ip)
                .values(**CLEARED_VALUES)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def get(self, ip: str) -> Optional[LockoutSnapshot]:
        with self._session_factory() as session:
            entry = session.execute(
                select(LockoutEntry).where(LockoutEntry.ip_address == ip)
            ).scalar_one_or_none()
            return _snapshot(entry) if entry is not None else None

    def stats(self) -> LockoutStats:
        now = self._clock()

        def count(session: Session, *criteria) -> int:
            stmt = select(func.count()).select_from(LockoutEntry)
            if criteria:
                stmt = stmt.where(*criteria)
            return session.execute(stmt).scalar_one()

        with self._session_factory() as session:
            return LockoutStats(
                total_records=count(session),
                active_blocks=count(session, LockoutEntry.is_active.is_(True)),
                expired_blocks=count(session, _expired_clause(now)),
                high_attempt_ips=count(
                    session, LockoutEntry.attempt_count >= HIGH_ATTEMPT_THRESHOLD
                ),
            )

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------

    def _ensure_entry(self, session: Session, ip: str) -> None:
        """
        Insert a cleared row for `ip` unless one already exists.
        """
        values = {"ip_address": ip, "attempt_count": 0, "is_active": False}
        dialect = session.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = pg_insert(LockoutEntry).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite_insert(LockoutEntry).values(**values)
        else:
            raise UnsupportedDialect(dialect)

        session.execute(stmt.on_conflict_do_nothing(index_elements=["ip_address"]))
