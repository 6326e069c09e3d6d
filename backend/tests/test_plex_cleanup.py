"""
Tests for services/plex_cleanup.py - periodic maintenance.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from app.models.plex_library_item import PlexLibraryItem
from app.models.sync_job import SyncJob, SyncJobType, SyncJobStatus
from app.models.user_plex_access import UserPlexAccess
from app.services import plex_cleanup
from app.services.plex_cleanup import (
    cleanup_old_sync_jobs, expire_unverified_access, get_cleanup_stats,
    refresh_library_item_counts, run_full_cleanup,
)
from conftest import add_item, add_library, add_user

NOW = datetime(2024, 6, 1, 12, 0, 0)


def add_job(db, status, age_days, kind=SyncJobType.FULL_SYNC):
    job = SyncJob(type=kind, status=status, created_at=NOW - timedelta(days=age_days))
    db.add(job)
    db.commit()
    return job


class TestJobRetention:

    def test_deletes_only_old_finished_jobs(self, db):
        add_job(db, SyncJobStatus.COMPLETED, 10)
        add_job(db, SyncJobStatus.FAILED, 8)
        recent = add_job(db, SyncJobStatus.COMPLETED, 2)
        stuck = add_job(db, SyncJobStatus.RUNNING, 30)

        deleted = cleanup_old_sync_jobs(db, days_old=7, now=NOW)

        assert deleted == 2
        assert sorted(j.id for j in db.query(SyncJob).all()) == sorted([recent.id, stuck.id])


class TestAccessExpiry:

    def test_expires_unverified_rows(self, db):
        user = add_user(db, "alice")
        fresh = add_library(db, section_key="1")
        stale = add_library(db, section_key="2", title="Docs")
        db.add(UserPlexAccess(user_id=user.id, library_id=fresh.id, last_verified_at=NOW - timedelta(days=1)))
        db.add(UserPlexAccess(user_id=user.id, library_id=stale.id, last_verified_at=NOW - timedelta(days=45)))
        db.commit()

        expired = expire_unverified_access(db, days_inactive=30, now=NOW)

        assert expired == 1
        rows = {r.library_id: r.is_active for r in db.query(UserPlexAccess).all()}
        assert rows == {fresh.id: True, stale.id: False}


class TestItemCounts:

    def test_only_drifted_counts_written(self, db):
        movies = add_library(db, section_key="1")
        docs = add_library(db, section_key="2", title="Docs")
        add_item(db, movies, 1, "Heat", 1995)
        add_item(db, movies, 2, "Ronin", 1998)
        add_item(db, movies, 3, "Gone", 2001, is_active=False)
        docs.item_count = 0
        db.commit()

        assert refresh_library_item_counts(db) == 1
        db.refresh(movies)
        assert movies.item_count == 2
        assert refresh_library_item_counts(db) == 0

    def test_items_are_never_removed(self, db):
        movies = add_library(db)
        add_item(db, movies, 1, "Gone", 2001, is_active=False)

        run_full_cleanup(db)

        assert db.query(PlexLibraryItem).count() == 1


class TestStats:

    def test_cleanup_stats(self, db):
        movies = add_library(db)
        add_item(db, movies, 1, "Heat", 1995, tmdb_id=949)
        add_item(db, movies, 2, "Ronin", 1998, attempts=1)
        add_item(db, movies, 3, "Nothing Like It", 1987, attempts=3)
        add_job(db, SyncJobStatus.PENDING, 0)

        stats = get_cleanup_stats(db)

        assert stats == {
            "total_active_items": 3,
            "unmatched_items": 2,
            "exhausted_items": 1,
            "active_user_access": 0,
            "pending_sync_jobs": 1,
        }


class TestFullCleanup:

    def test_failing_step_does_not_stop_others(self, db):
        add_job(db, SyncJobStatus.COMPLETED, 400)

        with patch.object(plex_cleanup, "expire_unverified_access", side_effect=RuntimeError("boom")):
            results = plex_cleanup.run_full_cleanup(db)

        assert results["expired_access"] == -1
        assert results["deleted_jobs"] == 1
        assert results["refreshed_counts"] == 0
