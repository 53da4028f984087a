"""Per-user regeneration rate limiting primitives."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.logger import get_logger
from src.staging.errors import ConflictError
from src.storage.models import RateLimitWindow
from src.storage.redis_client import get_client, regen_counter_key


logger = get_logger("snapstage.rate_limit")

_MAX_CAS_ATTEMPTS = 3


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: int


class RegenRateLimiter(Protocol):
    def consume(self, session: Session, *, user_id: str, now: Optional[datetime] = None) -> RateLimitDecision:
        """Count one regeneration for this user, or deny without counting."""


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _insert_window(session: Session, *, user_id: str, window_start: datetime) -> bool:
    """Open the user's first window; False when a concurrent caller already did."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        statement = postgresql.insert(RateLimitWindow)
    elif dialect == "sqlite":
        statement = sqlite.insert(RateLimitWindow)
    else:
        raise ValueError(f"Unsupported database dialect for rate limiting: {dialect}")

    result = session.execute(
        statement.values(user_id=user_id, window_start=window_start, regen_count=1).on_conflict_do_nothing(
            index_elements=["user_id"]
        )
    )
    return result.rowcount == 1


class DatabaseRegenRateLimiter:
    """Fixed windows stored in ``preview_rate_limits``, one row per user.

    A window opens on the first regeneration after the previous window is
    older than ``window_seconds``. Opening, reopening and bumping the
    counter are all conditional writes, so two concurrent regenerations
    cannot both take the last slot or both start a fresh window. Writes
    join the caller's transaction.
    """

    def __init__(self, *, max_per_window: int, window_seconds: int) -> None:
        if max_per_window <= 0:
            raise ValueError("max_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._limit = max_per_window
        self._window = window_seconds

    def _allowed(self, count: int) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            retry_after_ms=0,
        )

    def _denied(self) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            limit=self._limit,
            remaining=0,
            retry_after_ms=self._window * 1000,
        )

    def consume(self, session: Session, *, user_id: str, now: Optional[datetime] = None) -> RateLimitDecision:
        reference = _as_utc(now or datetime.now(timezone.utc))
        window_floor = reference - timedelta(seconds=self._window)

        for _ in range(_MAX_CAS_ATTEMPTS):
            current = session.execute(
                select(RateLimitWindow.id, RateLimitWindow.window_start, RateLimitWindow.regen_count).where(
                    RateLimitWindow.user_id == user_id
                )
            ).first()

            if current is None:
                if _insert_window(session, user_id=user_id, window_start=reference):
                    return self._allowed(1)
                continue

            window_id, window_start, count = current[0], _as_utc(current[1]), int(current[2])
            if window_start <= window_floor:
                # Expired window: reopen it in place, first writer wins.
                result = session.execute(
                    update(RateLimitWindow)
                    .where(RateLimitWindow.id == window_id, RateLimitWindow.window_start <= window_floor)
                    .values(window_start=reference, regen_count=1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return self._allowed(1)
                continue

            if count >= self._limit:
                return self._denied()

            result = session.execute(
                update(RateLimitWindow)
                .where(RateLimitWindow.id == window_id, RateLimitWindow.regen_count == count)
                .values(regen_count=count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return self._allowed(count + 1)

        raise ConflictError("Regeneration counter changed concurrently")


class RedisRegenRateLimiter:
    def __init__(self, *, max_per_window: int, window_seconds: int, client: Any = None) -> None:
        if max_per_window <= 0:
            raise ValueError("max_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._limit = max_per_window
        self._window = window_seconds
        self._redis = client if client is not None else get_client()

    def consume(self, session: Session, *, user_id: str, now: Optional[datetime] = None) -> RateLimitDecision:
        del session, now
        key = regen_counter_key(user_id)

        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.expire(key, self._window)
            if count > self._limit:
                # Denials must not consume a slot.
                self._redis.decr(key)
        except Exception as exc:
            logger.warning("regen_rate_limit_redis_unavailable", error=str(exc))
            return RateLimitDecision(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                retry_after_ms=0,
            )

        if count > self._limit:
            return RateLimitDecision(
                allowed=False,
                limit=self._limit,
                remaining=0,
                retry_after_ms=self._window * 1000,
            )
        return RateLimitDecision(
            allowed=True,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            retry_after_ms=0,
        )


@lru_cache(maxsize=1)
def get_regen_rate_limiter() -> RegenRateLimiter:
    settings = get_settings()
    if settings.regen_rate_limit_backend.strip().lower() == "redis":
        return RedisRegenRateLimiter(
            max_per_window=settings.regen_max_per_window,
            window_seconds=settings.regen_window_seconds,
        )
    return DatabaseRegenRateLimiter(
        max_per_window=settings.regen_max_per_window,
        window_seconds=settings.regen_window_seconds,
    )


def reset_regen_rate_limiter_cache() -> None:
    get_regen_rate_limiter.cache_clear()
