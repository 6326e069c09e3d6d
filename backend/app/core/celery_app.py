from celery import Celery
from app.core.config import settings

celery_app = Celery("worker", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

celery_app.conf.update(task_track_started=True)

# Configure Celery Beat schedule
celery_app.conf.beat_schedule = {
    'plex-full-sync': {
        'task': 'app.tasks.plex_sync.scheduled_full_sync_task',
        'schedule': settings.FULL_SYNC_INTERVAL_SECONDS,
    },
    'plex-cleanup-daily': {
        'task': 'app.tasks.plex_sync.plex_cleanup_task',
        'schedule': settings.CLEANUP_INTERVAL_SECONDS,
    },
}
celery_app.conf.timezone = settings.TIMEZONE

# Import tasks to register them
from app.tasks import plex_sync  # noqa
