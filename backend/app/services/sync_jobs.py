"""
Sync job lifecycle: trigger, cancel, status and state transitions.

@description Jobs move pending -> running -> completed | failed | cancelled.
Terminal states are final and running is entered exactly once. At most one
pending or running job may exist per scope: a job without a library
(full sync, matching across every library) overlaps every other job, two
library-scoped jobs overlap when they target the same library.

The work itself is done by app.tasks.plex_sync.SyncJobRunner in a Celery
worker; this module only owns the rows.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from sqlalchemy import or_, true, update
from sqlalchemy.orm import Session

from app.models.plex_library import PlexLibrary
from app.models.sync_job import (
    SyncJob, SyncJobType, SyncJobStatus, ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES,
)

logger = logging.getLogger(__name__)

_trigger_lock = threading.Lock()


class SyncAlreadyRunningError(Exception):
    """A pending or running job already covers the requested scope."""

    def __init__(self, job: SyncJob):
        super().__init__(f"Sync already in progress (job {job.id}, {job.status.value})")
        self.job_id = job.id


class SyncJobNotFoundError(Exception):
    pass


class InvalidJobStateError(Exception):
    pass


def _overlap_filter(library_id: Optional[int]):
    if library_id is None:
        return true()
    return or_(SyncJob.library_id.is_(None), SyncJob.library_id == library_id)


def find_active_conflict(db: Session, library_id: Optional[int],
                         before_id: Optional[int] = None) -> Optional[SyncJob]:
    """
    First pending or running job whose scope overlaps the given one.

    @param library_id Target library, None for an unscoped job
    @param before_id Only consider jobs created before this one
    """
    query = db.query(SyncJob).filter(
        SyncJob.status.in_(ACTIVE_JOB_STATUSES),
        _overlap_filter(library_id),
    )
    if before_id is not None:
        query = query.filter(SyncJob.id < before_id)
    return query.order_by(SyncJob.id).first()


def trigger_sync(
    db: Session,
    kind,
    library_id: Optional[int] = None,
    user_id: Optional[int] = None,
    include_exhausted: bool = False,
    dispatch: Optional[Callable[[int], Any]] = None,
) -> SyncJob:
    """
    Create a pending sync job and hand it to the worker.

    @param kind SyncJobType or its value ("full_sync", "library_sync", "tmdb_matching")
    @param library_id Required for library_sync, optional for tmdb_matching
    @param user_id Triggering user. A full sync with a user only walks that user's account.
    @param include_exhausted Also retry items that reached the matching attempt cap
    @param dispatch Called with the new job id, usually the Celery enqueue helper
    @returns The new SyncJob (status pending, or failed if dispatch raised)
    @raises SyncAlreadyRunningError when an overlapping job is pending or running
    """
    kind = SyncJobType(kind)
    if kind == SyncJobType.FULL_SYNC:
        library_id = None
    elif kind == SyncJobType.LIBRARY_SYNC and library_id is None:
        raise ValueError("library_sync requires a library_id")
    if library_id is not None and db.get(PlexLibrary, library_id) is None:
        raise ValueError(f"Plex library {library_id} not found")

    with _trigger_lock:
        conflict = find_active_conflict(db, library_id)
        if conflict:
            raise SyncAlreadyRunningError(conflict)

        job = SyncJob(
            type=kind,
            user_id=user_id,
            library_id=library_id,
            status=SyncJobStatus.PENDING,
            progress=0,
            current_step="Queued",
            include_exhausted=include_exhausted,
        )
        db.add(job)
        db.commit()

        # Another process may have inserted an overlapping job concurrently;
        # the older one wins.
        conflict = find_active_conflict(db, library_id, before_id=job.id)
        if conflict:
            db.delete(job)
            db.commit()
            raise SyncAlreadyRunningError(conflict)

    logger.info(f"Created {kind.value} job {job.id} (library={library_id}, user={user_id})")

    if dispatch:
        try:
            dispatch(job.id)
        except Exception as e:
            logger.exception(f"Error dispatching sync job {job.id}")
            fail_job(db, job, f"Failed to queue job: {e}")
    return job


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------

def _require_status(job: SyncJob, *allowed: SyncJobStatus):
    if job.status not in allowed:
        raise InvalidJobStateError(f"Job {job.id} is {job.status.value}")


def _transition_from_pending(db: Session, job: SyncJob, **values) -> bool:
    """Conditional UPDATE so a worker start and an API cancel cannot both win."""
    moved = db.execute(
        update(SyncJob)
        .where(SyncJob.id == job.id, SyncJob.status == SyncJobStatus.PENDING)
        .values(**values)
    ).rowcount
    db.commit()
    db.refresh(job)
    return bool(moved)


def start_job(db: Session, job: SyncJob, now: Optional[datetime] = None) -> SyncJob:
    started = _transition_from_pending(
        db, job,
        status=SyncJobStatus.RUNNING,
        started_at=now or datetime.utcnow(),
        current_step="Starting",
    )
    if not started:
        raise InvalidJobStateError(f"Job {job.id} is {job.status.value}")
    return job


def complete_job(db: Session, job: SyncJob, step: str = "Completed",
                 now: Optional[datetime] = None) -> SyncJob:
    _require_status(job, SyncJobStatus.RUNNING)
    job.status = SyncJobStatus.COMPLETED
    job.progress = 100
    job.current_step = step
    job.completed_at = now or datetime.utcnow()
    db.commit()
    return job


def fail_job(db: Session, job: SyncJob, message: str, now: Optional[datetime] = None) -> SyncJob:
    _require_status(job, *ACTIVE_JOB_STATUSES)
    job.status = SyncJobStatus.FAILED
    job.error_message = message or "Unknown error"
    job.current_step = "Failed"
    job.completed_at = now or datetime.utcnow()
    db.commit()
    return job


def mark_cancelled(db: Session, job: SyncJob, now: Optional[datetime] = None) -> SyncJob:
    _require_status(job, *ACTIVE_JOB_STATUSES)
    job.status = SyncJobStatus.CANCELLED
    job.current_step = "Cancelled"
    job.completed_at = now or datetime.utcnow()
    db.commit()
    return job


def cancel_job(db: Session, job_id: int) -> SyncJob:
    """
    Cancel a job.

    @description A pending job is cancelled on the spot. A running job gets
    cancel_requested and stops at its next library or item boundary.
    @raises SyncJobNotFoundError, InvalidJobStateError for finished jobs
    """
    job = db.get(SyncJob, job_id)
    if job is None:
        raise SyncJobNotFoundError(f"Sync job {job_id} not found")
    if job.status in TERMINAL_JOB_STATUSES:
        raise InvalidJobStateError(f"Job {job_id} already {job.status.value}")

    if job.status == SyncJobStatus.PENDING:
        cancelled = _transition_from_pending(
            db, job,
            status=SyncJobStatus.CANCELLED,
            current_step="Cancelled",
            completed_at=datetime.utcnow(),
        )
        if cancelled:
            logger.info(f"Cancelled pending job {job_id}")
            return job
        # A worker picked it up in the meantime
        if job.status in TERMINAL_JOB_STATUSES:
            raise InvalidJobStateError(f"Job {job_id} already {job.status.value}")

    if job.status == SyncJobStatus.RUNNING:
        job.cancel_requested = True
        job.current_step = "Cancelling"
        db.commit()
        logger.info(f"Cancellation requested for running job {job_id}")
    return job


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------

def get_job_status(db: Session, job_id: int) -> Optional[SyncJob]:
    return db.get(SyncJob, job_id)


def get_latest_status(db: Session, library_id: Optional[int] = None,
                      kind: Optional[SyncJobType] = None) -> Optional[SyncJob]:
    """
    Most recent job covering a scope.

    @param library_id Library scope. Jobs without a library cover every library.
        None returns the latest job of any scope.
    @param kind Optional job type filter
    """
    query = db.query(SyncJob)
    if library_id is not None:
        query = query.filter(_overlap_filter(library_id))
    if kind is not None:
        query = query.filter(SyncJob.type == SyncJobType(kind))
    return query.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).first()


def list_user_jobs(db: Session, user_id: int, limit: int = 20) -> List[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(SyncJob.user_id == user_id)
        .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
        .limit(limit)
        .all()
    )


def recover_interrupted_jobs(db: Session, dispatch: Optional[Callable[[int], Any]] = None) -> Dict[str, int]:
    """
    Clean up after a worker restart.

    @description Jobs still running belonged to the dead worker and are
    failed. Pending jobs may never have reached the broker and are
    dispatched again.
    @returns Dict with failed and requeued counts
    """
    now = datetime.utcnow()
    stale = db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.RUNNING).all()
    for job in stale:
        job.status = SyncJobStatus.FAILED
        job.error_message = "Interrupted by worker restart"
        job.current_step = "Failed"
        job.completed_at = now
    if stale:
        db.commit()
        logger.warning(f"Marked {len(stale)} interrupted sync jobs as failed")

    pending = db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.PENDING).order_by(SyncJob.id).all()
    requeued = 0
    if dispatch:
        for job in pending:
            try:
                dispatch(job.id)
                requeued += 1
            except Exception as e:
                logger.exception(f"Error requeueing sync job {job.id}")
                fail_job(db, job, f"Failed to queue job: {e}", now=now)
    return {"failed": len(stale), "requeued": requeued}
