"""
Periodic maintenance of the Plex sync tables.

Removes old finished sync jobs, expires access rows nobody has verified for a
while and recomputes cached library item counts. Library items are never
deleted or deactivated here; only a crawl decides whether an item exists.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.sync_job import SyncJob, ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES
from app.models.user_plex_access import UserPlexAccess

logger = logging.getLogger(__name__)


def cleanup_old_sync_jobs(db: Session, days_old: Optional[int] = None,
                          now: Optional[datetime] = None) -> int:
    """Delete finished jobs created more than days_old days ago."""
    days_old = days_old if days_old is not None else settings.CLEANUP_JOB_RETENTION_DAYS
    cutoff = (now or datetime.utcnow()) - timedelta(days=days_old)
    deleted = (
        db.query(SyncJob)
        .filter(SyncJob.status.in_(TERMINAL_JOB_STATUSES), SyncJob.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Cleaned up {deleted} old sync jobs")
    return deleted


def expire_unverified_access(db: Session, days_inactive: Optional[int] = None,
                             now: Optional[datetime] = None) -> int:
    """Flag inactive the access rows not re-verified by any sync for days_inactive days."""
    days_inactive = days_inactive if days_inactive is not None else settings.CLEANUP_ACCESS_STALE_DAYS
    cutoff = (now or datetime.utcnow()) - timedelta(days=days_inactive)
    expired = (
        db.query(UserPlexAccess)
        .filter(UserPlexAccess.is_active == True, UserPlexAccess.last_verified_at < cutoff)
        .update({UserPlexAccess.is_active: False}, synchronize_session=False)
    )
    db.commit()
    logger.info(f"Expired {expired} unverified library access rows")
    return expired


def refresh_library_item_counts(db: Session) -> int:
    """Recompute item_count from active items, writing only the ones that drifted."""
    counts = dict(
        db.query(PlexLibraryItem.library_id, func.count(PlexLibraryItem.id))
        .filter(PlexLibraryItem.is_active == True)
        .group_by(PlexLibraryItem.library_id)
        .all()
    )
    updated = 0
    for library in db.query(PlexLibrary).all():
        count = counts.get(library.id, 0)
        if library.item_count != count:
            library.item_count = count
            updated += 1
    db.commit()
    logger.info(f"Refreshed item counts of {updated} libraries")
    return updated


def get_cleanup_stats(db: Session) -> Dict[str, Any]:
    active_items = db.query(PlexLibraryItem).filter(PlexLibraryItem.is_active == True)
    return {
        "total_active_items": active_items.count(),
        "unmatched_items": active_items.filter(PlexLibraryItem.tmdb_id.is_(None)).count(),
        "exhausted_items": active_items.filter(
            PlexLibraryItem.tmdb_id.is_(None),
            PlexLibraryItem.matching_attempts >= settings.MATCH_MAX_ATTEMPTS,
        ).count(),
        "active_user_access": db.query(UserPlexAccess).filter(UserPlexAccess.is_active == True).count(),
        "pending_sync_jobs": db.query(SyncJob).filter(SyncJob.status.in_(ACTIVE_JOB_STATUSES)).count(),
    }


def run_full_cleanup(db: Session) -> Dict[str, int]:
    """
    Run every maintenance step.

    @description Steps run independently; one failing step is logged and
    does not stop the others.
    @returns Dict of step name to affected rows (-1 when the step failed)
    """
    results = {}
    steps = [
        ("expired_access", expire_unverified_access),
        ("deleted_jobs", cleanup_old_sync_jobs),
        ("refreshed_counts", refresh_library_item_counts),
    ]
    for name, step in steps:
        try:
            results[name] = step(db)
        except Exception:
            logger.exception(f"Plex cleanup step {name} failed")
            db.rollback()
            results[name] = -1
    return results
