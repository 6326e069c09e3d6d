"""
Per-user Plex library access.

@description A user's access is whatever their own Plex token can see.
reconcile() grants (insert or reactivate) rows for visible libraries and
flags inactive the rows for that server's libraries that disappeared from
the user's view. Rows are never deleted so re-granted access keeps its
discovery date.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.plex_server import PlexServer
from app.models.sync_job import SyncJob
from app.models.user_plex_access import UserPlexAccess

logger = logging.getLogger(__name__)


@dataclass
class AccessChange:
    granted: List[int] = field(default_factory=list)
    revoked: List[int] = field(default_factory=list)


class AccessTracker:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def reconcile(self, user_id: int, server: PlexServer,
                  visible_libraries: Iterable[PlexLibrary]) -> AccessChange:
        """
        Align a user's access rows for one server with what they can see now.

        @param user_id User whose token produced the listing
        @param server Server the listing came from
        @param visible_libraries Libraries of that server the user can see,
            empty when the server is no longer shared with them
        @returns AccessChange with granted and revoked library ids
        """
        now = self.clock()
        change = AccessChange()
        visible_ids = {lib.id for lib in visible_libraries}

        rows = (
            self.db.query(UserPlexAccess)
            .join(PlexLibrary, PlexLibrary.id == UserPlexAccess.library_id)
            .filter(UserPlexAccess.user_id == user_id, PlexLibrary.server_id == server.id)
            .all()
        )
        by_library = {row.library_id: row for row in rows}

        for library_id in sorted(visible_ids):
            row = by_library.get(library_id)
            if row is None:
                row = UserPlexAccess(
                    user_id=user_id,
                    library_id=library_id,
                    access_level="read",
                    is_active=True,
                    discovered_at=now,
                )
                self.db.add(row)
                change.granted.append(library_id)
            elif not row.is_active:
                row.is_active = True
                change.granted.append(library_id)
            row.last_verified_at = now

        for library_id, row in by_library.items():
            if library_id not in visible_ids and row.is_active:
                row.is_active = False
                change.revoked.append(library_id)

        self.db.flush()
        if change.granted or change.revoked:
            logger.info(
                f"User {user_id} on {server.name}: granted {len(change.granted)}, "
                f"revoked {len(change.revoked)} libraries"
            )
        return change


def list_user_libraries(db: Session, user_id: int) -> List[Dict[str, Any]]:
    """
    Libraries the user currently has access to.

    @returns List of dicts with library, server and item counts
    """
    rows = (
        db.query(PlexLibrary, PlexServer, UserPlexAccess)
        .join(PlexServer, PlexServer.id == PlexLibrary.server_id)
        .join(UserPlexAccess, UserPlexAccess.library_id == PlexLibrary.id)
        .filter(
            UserPlexAccess.user_id == user_id,
            UserPlexAccess.is_active == True,
            PlexLibrary.is_active == True,
        )
        .order_by(PlexServer.name, PlexLibrary.title)
        .all()
    )
    return [
        {
            "library_id": library.id,
            "title": library.title,
            "type": library.type,
            "item_count": library.item_count or 0,
            "last_synced_at": library.last_synced_at,
            "server_id": server.id,
            "server_name": server.name,
            "access_level": access.access_level,
            "last_verified_at": access.last_verified_at,
        }
        for library, server, access in rows
    ]


def get_user_plex_stats(db: Session, user_id: int) -> Dict[str, Any]:
    """
    Counts over the user's accessible libraries.

    @returns Dict with servers, libraries, items, matched_items, last_sync_at
    """
    library_ids = [
        row.library_id for row in db.query(UserPlexAccess.library_id).filter(
            UserPlexAccess.user_id == user_id,
            UserPlexAccess.is_active == True,
        )
    ]
    if not library_ids:
        return {"servers": 0, "libraries": 0, "items": 0, "matched_items": 0, "last_sync_at": None}

    servers = (
        db.query(func.count(func.distinct(PlexLibrary.server_id)))
        .filter(PlexLibrary.id.in_(library_ids))
        .scalar()
    )
    items_query = db.query(PlexLibraryItem).filter(
        PlexLibraryItem.library_id.in_(library_ids),
        PlexLibraryItem.is_active == True,
    )
    last_job: Optional[SyncJob] = (
        db.query(SyncJob)
        .filter(SyncJob.user_id == user_id, SyncJob.completed_at.isnot(None))
        .order_by(SyncJob.completed_at.desc())
        .first()
    )
    return {
        "servers": servers or 0,
        "libraries": len(library_ids),
        "items": items_query.count(),
        "matched_items": items_query.filter(PlexLibraryItem.tmdb_id.isnot(None)).count(),
        "last_sync_at": last_job.completed_at if last_job else None,
    }
