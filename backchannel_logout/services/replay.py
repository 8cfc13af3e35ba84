"""Logout token replay detection.

A replay cache remembers ``(issuer, jti)`` pairs until the token would have
expired anyway. Once a pair is recorded, presenting the same token again is
rejected.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backchannel_logout.models import LogoutTokenJti
from backchannel_logout.services.errors import ReplayCacheError

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class InMemoryReplayCache:
    """Process-local seen-set of token identifiers with expiry."""

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def _retain_until(self, now: float, expires_at: float | None) -> float:
        if expires_at is None or expires_at <= now:
            return now + self._ttl
        return expires_at

    async def check_and_remember(self, issuer: str, jti: str, expires_at: float | None) -> bool:
        now = self._clock()
        key = (issuer, jti)
        with self._lock:
            retained = self._seen.get(key)
            if retained is not None and retained > now:
                return False
            self._seen[key] = self._retain_until(now, expires_at)
            return True

    async def cleanup_expired(self) -> int:
        """Forget identifiers whose retention has passed. Returns the count removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, retained in self._seen.items() if retained <= now]
            for key in expired:
                del self._seen[key]
        return len(expired)


class DatabaseReplayCache:
    """Replay cache shared by every process using the same database.

    The ``(issuer, jti)`` primary key makes recording atomic: a concurrent or
    repeated insert fails with an integrity error, which means replay.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        ttl_seconds: float = 600,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._ttl = ttl_seconds
        self._clock = clock

    async def check_and_remember(self, issuer: str, jti: str, expires_at: float | None) -> bool:
        now = self._clock()
        if expires_at is None or expires_at <= now:
            expires_at = now + self._ttl
        expiry = datetime.fromtimestamp(expires_at, tz=UTC)

        try:
            async with self._session_factory() as db:
                existing = await db.get(LogoutTokenJti, (issuer, jti))
                if existing is not None:
                    if _as_utc(existing.expires_at) > datetime.fromtimestamp(now, tz=UTC):
                        return False
                    # Retention passed but not yet cleaned up
                    existing.expires_at = expiry
                else:
                    db.add(LogoutTokenJti(issuer=issuer, jti=jti, expires_at=expiry))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise ReplayCacheError(f"Failed to record jti: {e}") from e

    async def cleanup_expired(self) -> int:
        """Delete expired identifiers. Returns the count removed."""
        try:
            async with self._session_factory() as db:
                now = datetime.fromtimestamp(self._clock(), tz=UTC)
                result = await db.execute(
                    delete(LogoutTokenJti).where(LogoutTokenJti.expires_at <= now)
                )
                await db.commit()
                removed = result.rowcount or 0
        except SQLAlchemyError as e:
            raise ReplayCacheError(f"Failed to clean up expired jti records: {e}") from e

        if removed:
            logger.debug(f"Removed {removed} expired logout token identifiers")
        return removed

    async def count(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.count()).select_from(LogoutTokenJti))
            return result.scalar_one()
