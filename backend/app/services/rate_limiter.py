"""
Shared request budget for the TMDB API.

@description A single fixed window (default 40 requests / 10 seconds, 80% of
TMDB's published 50/10s) stored in the tmdb_rate_limits table so every worker
process and thread sees the same count. Each reservation is a conditional
UPDATE on that row: the database applies the check and the increment as one
statement, so concurrent callers can never push the window past capacity.

The limiter never waits. A denied caller gets the number of seconds until the
window resets and decides for itself how to back off.

@example
    limiter = RateLimiter(SessionLocal)
    reservation = limiter.reserve()
    if not reservation.granted:
        time.sleep(reservation.retry_after)
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.models.rate_window import TMDBRateWindow, RATE_WINDOW_ID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    granted: bool
    retry_after: float = 0.0


class RateLimitDeferred(Exception):
    """Raised when a TMDB call cannot be made until the window resets."""

    def __init__(self, retry_after: float):
        super().__init__(f"TMDB rate limit reached, retry in {retry_after:.1f}s")
        self.retry_after = retry_after


class RateLimiter:
    """
    Database-backed fixed-window limiter.

    @param session_factory Callable returning a new SQLAlchemy session. The
        limiter commits its own short transactions and never touches the
        caller's session.
    @param capacity Requests allowed per window
    @param window_seconds Window length
    @param clock Returns the current naive UTC datetime
    """

    def __init__(
        self,
        session_factory: Callable,
        capacity: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.capacity = capacity if capacity is not None else settings.TMDB_RATE_LIMIT
        if window_seconds is None:
            window_seconds = settings.TMDB_RATE_WINDOW_SECONDS
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock

    def reserve(self) -> Reservation:
        """
        Try to take one request slot from the current window.

        @returns Reservation(granted=True) or Reservation(granted=False, retry_after=seconds)
        """
        now = self.clock()
        cutoff = now - self.window
        db = self.session_factory()
        try:
            self._ensure_window(db, now)
            # A concurrent reset can slip in between the two statements,
            # in which case the increment is worth one more try.
            for _ in range(2):
                granted = db.execute(
                    update(TMDBRateWindow)
                    .where(
                        TMDBRateWindow.id == RATE_WINDOW_ID,
                        TMDBRateWindow.time_window_start > cutoff,
                        TMDBRateWindow.requests_count < self.capacity,
                    )
                    .values(requests_count=TMDBRateWindow.requests_count + 1, last_request_at=now)
                ).rowcount
                if not granted:
                    granted = db.execute(
                        update(TMDBRateWindow)
                        .where(
                            TMDBRateWindow.id == RATE_WINDOW_ID,
                            TMDBRateWindow.time_window_start <= cutoff,
                        )
                        .values(time_window_start=now, requests_count=1, last_request_at=now)
                    ).rowcount
                db.commit()
                if granted:
                    return Reservation(granted=True)

            window_start = db.execute(
                select(TMDBRateWindow.time_window_start).where(TMDBRateWindow.id == RATE_WINDOW_ID)
            ).scalar_one()
            retry_after = max((window_start + self.window - now).total_seconds(), 0.0)
            logger.debug(f"TMDB rate limit reached, retry in {retry_after:.2f}s")
            return Reservation(granted=False, retry_after=retry_after)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _ensure_window(self, db, now: datetime) -> None:
        """Create the window row on first use. Losing the insert race is fine."""
        exists = db.execute(
            select(TMDBRateWindow.id).where(TMDBRateWindow.id == RATE_WINDOW_ID)
        ).scalar_one_or_none()
        if exists is not None:
            return
        db.add(TMDBRateWindow(id=RATE_WINDOW_ID, time_window_start=now, requests_count=0))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()

    def get_stats(self) -> Dict[str, Any]:
        """
        Current window usage.

        @returns Dict with window_start, requests_count, capacity, remaining, last_request_at
        """
        now = self.clock()
        db = self.session_factory()
        try:
            window = db.get(TMDBRateWindow, RATE_WINDOW_ID)
            if window is None or window.time_window_start <= now - self.window:
                count = 0
            else:
                count = window.requests_count
            return {
                "window_start": window.time_window_start if window else None,
                "window_seconds": int(self.window.total_seconds()),
                "requests_count": count,
                "capacity": self.capacity,
                "remaining": max(self.capacity - count, 0),
                "last_request_at": window.last_request_at if window else None,
            }
        finally:
            db.close()
