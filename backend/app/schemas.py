from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime
from app.models.sync_job import SyncJobType, SyncJobStatus

class PlexSyncTrigger(BaseModel):
    type: SyncJobType = SyncJobType.FULL_SYNC
    library_id: Optional[int] = None
    user_id: Optional[int] = None
    include_exhausted: bool = False

class SyncJobSnapshot(BaseModel):
    id: int
    type: SyncJobType
    status: SyncJobStatus
    user_id: Optional[int] = None
    library_id: Optional[int] = None
    progress: int
    current_step: Optional[str] = None
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    error_message: Optional[str] = None
    metadata_json: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class UserLibraryResponse(BaseModel):
    library_id: int
    title: str
    type: str
    item_count: int
    last_synced_at: Optional[datetime] = None
    server_id: int
    server_name: str
    access_level: str
    last_verified_at: Optional[datetime] = None

class UserPlexStatsResponse(BaseModel):
    servers: int
    libraries: int
    items: int
    matched_items: int
    last_sync_at: Optional[datetime] = None

class PlexSyncHealthResponse(BaseModel):
    status: str
    rate_limit: Dict[str, Any]
    stats: Dict[str, Any]
    latest_job: Optional[SyncJobSnapshot] = None
