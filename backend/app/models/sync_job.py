from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from app.db.base_class import Base
import enum


class SyncJobType(str, enum.Enum):
    FULL_SYNC = "full_sync"
    LIBRARY_SYNC = "library_sync"
    TMDB_MATCHING = "tmdb_matching"


class SyncJobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)
TERMINAL_JOB_STATUSES = (SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.CANCELLED)


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(SQLEnum(SyncJobType), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    library_id = Column(Integer, ForeignKey("plex_libraries.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(SQLEnum(SyncJobStatus), nullable=False, default=SyncJobStatus.PENDING, index=True)
    progress = Column(Integer, default=0, nullable=False)
    current_step = Column(String, nullable=True)
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    successful_items = Column(Integer, default=0, nullable=False)
    failed_items = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    include_exhausted = Column(Boolean, default=False, nullable=False)  # retry items past the attempt cap
    cancel_requested = Column(Boolean, default=False, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
