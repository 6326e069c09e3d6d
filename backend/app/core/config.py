from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "Plex Library Sync"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str = "sqlite:////db/plexsync.db"

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    TIMEZONE: str = "UTC"

    # TMDB catalog
    TMDB_API_KEY: Optional[str] = None  # v4 read access token (Bearer)
    TMDB_BASE_URL: str = "https://api.themoviedb.org/3"
    TMDB_TIMEOUT: float = 30.0

    # TMDB allows 50 requests / 10s, stay at 80% of it
    TMDB_RATE_LIMIT: int = 40
    TMDB_RATE_WINDOW_SECONDS: int = 10

    # Matching
    MATCH_MAX_ATTEMPTS: int = 3
    MATCH_FUZZY_MIN_SCORE: float = 85.0
    MATCH_FUZZY_AMBIGUITY_MARGIN: float = 5.0
    MATCH_DEFER_MAX_WAITS: int = 5

    # Sync
    SYNC_LIBRARY_PARALLELISM: int = 4
    SYNC_LIBRARY_TYPES: List[str] = ["movie"]
    FULL_SYNC_INTERVAL_SECONDS: float = 6 * 3600.0

    # Maintenance
    CLEANUP_INTERVAL_SECONDS: float = 24 * 3600.0
    CLEANUP_JOB_RETENTION_DAYS: int = 7
    CLEANUP_ACCESS_STALE_DAYS: int = 30

    class Config:
        env_file = ".env"

settings = Settings()
