"""
Plex sync endpoints.

Thin wrappers over app.services.sync_jobs: trigger, poll, cancel. Jobs run
in the Celery worker; clients follow them by polling the job status.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from app.db.session import get_db, SessionLocal
from app.models.sync_job import SyncJobType
from app.schemas import (
    PlexSyncTrigger, SyncJobSnapshot, UserLibraryResponse, UserPlexStatsResponse, PlexSyncHealthResponse,
)
from app.services import sync_jobs
from app.services.plex_access import list_user_libraries, get_user_plex_stats
from app.services.plex_cleanup import get_cleanup_stats
from app.services.rate_limiter import RateLimiter
from app.tasks.plex_sync import enqueue_sync_job

router = APIRouter()


def get_dispatcher():
    return enqueue_sync_job


def get_rate_limiter():
    return RateLimiter(SessionLocal)


@router.post("/trigger", response_model=SyncJobSnapshot, status_code=202)
def trigger_plex_sync(
    request: PlexSyncTrigger,
    db: Session = Depends(get_db),
    dispatch=Depends(get_dispatcher),
):
    """Queue a sync job. Returns 409 while an overlapping job is pending or running."""
    try:
        return sync_jobs.trigger_sync(
            db,
            request.type,
            library_id=request.library_id,
            user_id=request.user_id,
            include_exhausted=request.include_exhausted,
            dispatch=dispatch,
        )
    except sync_jobs.SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "job_id": e.job_id})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/jobs/{job_id}", response_model=SyncJobSnapshot)
def get_sync_job(job_id: int, db: Session = Depends(get_db)):
    job = sync_jobs.get_job_status(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobSnapshot)
def cancel_sync_job(job_id: int, db: Session = Depends(get_db)):
    try:
        return sync_jobs.cancel_job(db, job_id)
    except sync_jobs.SyncJobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")
    except sync_jobs.InvalidJobStateError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/latest", response_model=Optional[SyncJobSnapshot])
def get_latest_sync(
    library_id: Optional[int] = None,
    type: Optional[SyncJobType] = None,
    db: Session = Depends(get_db),
):
    """Most recent job covering a library (or any job when no library is given)."""
    return sync_jobs.get_latest_status(db, library_id=library_id, kind=type)


@router.get("/users/{user_id}/jobs", response_model=List[SyncJobSnapshot])
def get_user_sync_jobs(
    user_id: int,
    limit: int = Query(20, le=100),
    db: Session = Depends(get_db),
):
    return sync_jobs.list_user_jobs(db, user_id, limit=limit)


@router.get("/users/{user_id}/libraries", response_model=List[UserLibraryResponse])
def get_user_libraries(user_id: int, db: Session = Depends(get_db)):
    return list_user_libraries(db, user_id)


@router.get("/users/{user_id}/stats", response_model=UserPlexStatsResponse)
def get_user_stats(user_id: int, db: Session = Depends(get_db)):
    return get_user_plex_stats(db, user_id)


@router.get("/health", response_model=PlexSyncHealthResponse)
def get_sync_health(
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    latest = sync_jobs.get_latest_status(db, kind=SyncJobType.FULL_SYNC)
    return {
        "status": "healthy",
        "rate_limit": limiter.get_stats(),
        "stats": get_cleanup_stats(db),
        "latest_job": SyncJobSnapshot.model_validate(latest) if latest else None,
    }
