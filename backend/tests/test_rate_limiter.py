"""
Tests for services/rate_limiter.py - the shared TMDB request window.

Tests cover:
1. Grants up to capacity, then denies with the time left in the window
2. Window reset once it has elapsed (in place, single row)
3. Concurrent reservations never exceed capacity
4. Stats reporting
"""

import threading

import pytest

from app.models.rate_window import TMDBRateWindow
from app.services.rate_limiter import RateLimiter


class TestReserve:
    """Single-caller behaviour of reserve()."""

    def test_first_reservation_opens_window(self, limiter, db, clock):
        reservation = limiter.reserve()

        assert reservation.granted is True
        window = db.query(TMDBRateWindow).one()
        assert window.requests_count == 1
        assert window.time_window_start == clock.now

    def test_denies_at_capacity_with_retry_after(self, session_factory, clock):
        limiter = RateLimiter(session_factory, capacity=3, window_seconds=10, clock=clock)

        assert all(limiter.reserve().granted for _ in range(3))
        clock.advance(4)
        denied = limiter.reserve()

        assert denied.granted is False
        assert denied.retry_after == pytest.approx(6.0)

    def test_denial_does_not_consume_budget(self, session_factory, db, clock):
        limiter = RateLimiter(session_factory, capacity=2, window_seconds=10, clock=clock)
        limiter.reserve()
        limiter.reserve()

        for _ in range(5):
            assert limiter.reserve().granted is False

        assert db.query(TMDBRateWindow).one().requests_count == 2

    def test_elapsed_window_resets_in_place(self, session_factory, db, clock):
        limiter = RateLimiter(session_factory, capacity=2, window_seconds=10, clock=clock)
        limiter.reserve()
        limiter.reserve()
        assert limiter.reserve().granted is False

        clock.advance(10)
        reservation = limiter.reserve()

        assert reservation.granted is True
        rows = db.query(TMDBRateWindow).all()
        assert len(rows) == 1
        assert rows[0].requests_count == 1
        assert rows[0].time_window_start == clock.now

    def test_defaults_come_from_settings(self, session_factory):
        limiter = RateLimiter(session_factory)

        assert limiter.capacity == 40
        assert limiter.window.total_seconds() == 10

    def test_explicit_zero_capacity_is_kept(self, session_factory, clock):
        limiter = RateLimiter(session_factory, capacity=0, window_seconds=10, clock=clock)

        denied = limiter.reserve()

        assert limiter.capacity == 0
        assert denied.granted is False
        assert denied.retry_after == pytest.approx(10.0)


class TestConcurrency:
    """Parallel callers share one budget."""

    def test_parallel_reservations_grant_exactly_capacity(self, session_factory, db, clock):
        capacity = 40
        callers = 64
        limiter = RateLimiter(session_factory, capacity=capacity, window_seconds=10, clock=clock)
        results = []
        lock = threading.Lock()
        start = threading.Barrier(callers)

        def worker():
            start.wait()
            reservation = limiter.reserve()
            with lock:
                results.append(reservation)

        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        granted = [r for r in results if r.granted]
        denied = [r for r in results if not r.granted]
        assert len(results) == callers
        assert len(granted) == capacity
        assert len(denied) == callers - capacity
        assert all(r.retry_after > 0 for r in denied)
        assert db.query(TMDBRateWindow).one().requests_count == capacity


class TestStats:

    def test_stats_before_any_request(self, limiter):
        stats = limiter.get_stats()

        assert stats["requests_count"] == 0
        assert stats["remaining"] == 40
        assert stats["window_start"] is None

    def test_stats_track_usage_and_expiry(self, limiter, clock):
        for _ in range(5):
            limiter.reserve()

        stats = limiter.get_stats()
        assert stats["requests_count"] == 5
        assert stats["remaining"] == 35
        assert stats["last_request_at"] == clock.now

        clock.advance(11)
        assert limiter.get_stats()["requests_count"] == 0
