# Import Base class
from app.db.base_class import Base

# Import all models here so that Base has them registered
# This is needed for Base.metadata.create_all()
from app.models.user import User
from app.models.plex_account import PlexAccount
from app.models.plex_server import PlexServer
from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.user_plex_access import UserPlexAccess
from app.models.sync_job import SyncJob
from app.models.rate_window import TMDBRateWindow
