"""
Plex catalog crawler.

@description Mirrors the servers, libraries and items a Plex account can see
into the local cache. Everything is create-or-update by stable key
(machine_id, section_key, rating_key) and nothing is ever deleted:
disappeared libraries and items are flagged inactive and reactivated in
place when they come back.

Item crawls are split in two: fetch_listing only talks to the server and is
safe to run from a worker pool, apply_listing only touches the session and
must run on the thread that owns it.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from app.models.plex_account import PlexAccount
from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.plex_server import PlexServer
from app.services.plex import PlexClient, PlexServerUnreachableError

logger = logging.getLogger(__name__)

ITEM_METADATA_FIELDS = ("guid", "title", "year", "type", "added_at", "metadata_json")
LIBRARY_FIELDS = ("title", "type", "agent", "scanner", "language", "uuid")


@dataclass
class ItemDiff:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.removed)

    def as_dict(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "unchanged": self.unchanged,
        }


@dataclass
class DiscoveredServer:
    """A server row together with the live connection used to discover it."""
    server: PlexServer
    connection: Any
    owned: bool
    libraries: List[PlexLibrary] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        return self.connection is not None


def _assign(obj, values: Dict[str, Any], fields) -> bool:
    """Copy the given fields onto obj, return True if anything changed."""
    changed = False
    for name in fields:
        if name in values and getattr(obj, name) != values[name]:
            setattr(obj, name, values[name])
            changed = True
    return changed


class CatalogCrawler:
    """
    @param db Session used for every write. The crawler commits nothing,
        the job runner commits after each library.
    @param client_factory Callable(auth_token) -> PlexClient
    """

    def __init__(self, db: Session, client_factory: Callable[[str], PlexClient] = PlexClient,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.client_factory = client_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Servers and libraries
    # ------------------------------------------------------------------

    def discover_servers(self, account: PlexAccount) -> List[DiscoveredServer]:
        """
        List the account's servers and connect to each one.

        @description Servers are upserted by machine_id. A server that refuses
        the connection is still returned, with connection=None, so callers
        can tell "offline" from "no longer shared".
        @returns One DiscoveredServer per server listed by the account
        """
        client = self.client_factory(account.auth_token)
        try:
            listing = client.list_servers()
        except Exception as e:
            raise PlexServerUnreachableError(f"Cannot list servers for Plex account {account.username}: {e}") from e

        discovered = []
        for info in listing:
            server = self.db.query(PlexServer).filter(PlexServer.machine_id == info["machine_id"]).first()
            if not server:
                server = PlexServer(machine_id=info["machine_id"])
                self.db.add(server)
                logger.info(f"Discovered new Plex server {info['name']} ({info['machine_id']})")

            server.name = info["name"]
            server.base_url = info["base_url"]
            server.access_token = info.get("access_token")
            server.version = info.get("version")
            server.platform = info.get("platform")
            if info.get("owned"):
                server.owner_user_id = account.user_id
            self.db.flush()

            try:
                connection = client.connect_server(server.base_url, server.access_token)
            except PlexServerUnreachableError as e:
                logger.warning(f"Skipping unreachable Plex server {server.name}: {e}")
                connection = None
            discovered.append(DiscoveredServer(server=server, connection=connection, owned=bool(info.get("owned"))))
        return discovered

    def discover_libraries(self, discovered: DiscoveredServer) -> List[PlexLibrary]:
        """
        Upsert the libraries visible on one server.

        @description Libraries are keyed by (server, section_key). Only an
        owner's listing is complete, so only an owner's listing can flag a
        missing library inactive.
        @returns Active libraries visible through this connection
        """
        server = discovered.server
        client = self.client_factory(server.access_token)
        listing = client.list_libraries(discovered.connection)

        existing = {
            lib.section_key: lib
            for lib in self.db.query(PlexLibrary).filter(PlexLibrary.server_id == server.id).all()
        }
        libraries = []
        for info in listing:
            library = existing.get(info["section_key"])
            if not library:
                library = PlexLibrary(server_id=server.id, section_key=info["section_key"], item_count=0)
                self.db.add(library)
                logger.info(f"Discovered library '{info['title']}' on {server.name}")
            _assign(library, info, LIBRARY_FIELDS)
            if not library.is_active:
                logger.info(f"Library '{library.title}' on {server.name} is back")
            library.is_active = True
            libraries.append(library)

        if discovered.owned:
            seen = {info["section_key"] for info in listing}
            for section_key, library in existing.items():
                if section_key not in seen and library.is_active:
                    logger.info(f"Library '{library.title}' removed from {server.name}, flagging inactive")
                    library.is_active = False

        self.db.flush()
        discovered.libraries = libraries
        return libraries

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def fetch_listing(self, base_url: str, access_token: str, section_key: str,
                      connection=None) -> List[Dict[str, Any]]:
        """
        Read the remote item listing of one library.

        @description Takes plain values rather than rows so it can run on a
        pool thread without touching the session.
        @raises PlexServerUnreachableError
        """
        client = self.client_factory(access_token)
        if connection is None:
            connection = client.connect_server(base_url, access_token)
        return client.list_items(connection, section_key)

    def apply_listing(self, library: PlexLibrary, listing: List[Dict[str, Any]]) -> ItemDiff:
        """
        Diff a remote listing against the cached items of a library.

        @description New items are created active with no attempts. Items with
        a newer remote timestamp get their metadata refreshed; tmdb_id and
        matching state are left alone. Cached active items missing from the
        listing are flagged inactive. Anything else is not written.
        """
        diff = ItemDiff()
        cached = {
            item.rating_key: item
            for item in self.db.query(PlexLibraryItem).filter(PlexLibraryItem.library_id == library.id).all()
        }
        seen = set()

        for remote in listing:
            rating_key = str(remote["rating_key"])
            if rating_key in seen:
                continue
            seen.add(rating_key)
            values = {
                "guid": remote.get("guid"),
                "title": remote.get("title") or "Unknown",
                "year": remote.get("year"),
                "type": remote.get("type") or library.type,
                "added_at": remote.get("added_at"),
                "metadata_json": remote.get("metadata"),
            }
            remote_updated = remote.get("updated_at")
            item = cached.get(rating_key)

            if item is None:
                item = PlexLibraryItem(
                    library_id=library.id,
                    rating_key=rating_key,
                    updated_at_plex=remote_updated,
                    matching_attempts=0,
                    is_active=True,
                    **values,
                )
                self.db.add(item)
                diff.created.append(rating_key)
                continue

            reactivated = not item.is_active
            refreshed = self._is_newer(remote_updated, item.updated_at_plex)
            if refreshed:
                _assign(item, values, ITEM_METADATA_FIELDS)
                item.updated_at_plex = remote_updated
            if reactivated:
                item.is_active = True
            if reactivated or refreshed:
                diff.updated.append(rating_key)
            else:
                diff.unchanged += 1

        for rating_key, item in cached.items():
            if rating_key not in seen and item.is_active:
                item.is_active = False
                diff.removed.append(rating_key)

        active_count = len(seen)
        if library.item_count != active_count:
            library.item_count = active_count
        if diff.has_changes or library.last_synced_at is None:
            library.last_synced_at = self.clock()

        self.db.flush()
        logger.info(f"Library '{library.title}': {diff.as_dict()}")
        return diff

    def crawl_library(self, server: PlexServer, library: PlexLibrary, connection=None) -> ItemDiff:
        listing = self.fetch_listing(server.base_url, server.access_token, library.section_key, connection)
        return self.apply_listing(library, listing)

    @staticmethod
    def _is_newer(remote: Optional[datetime], local: Optional[datetime]) -> bool:
        if remote is None:
            return False
        return local is None or remote > local
