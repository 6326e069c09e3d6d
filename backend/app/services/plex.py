"""
Plex API client for discovering servers, libraries and library items.

Uses the python-plexapi library for simplified API interaction.

@description Lists the servers a Plex.tv account can reach, picks the best
connection for each, and reads library sections and their items. Results are
returned as plain dicts so the crawler never holds plexapi objects.

@example
    client = PlexClient(account.auth_token)
    for info in client.list_servers():
        server = client.connect_server(info["base_url"], info["access_token"])
        libraries = client.list_libraries(server)
"""
from datetime import datetime
from typing import List, Dict, Optional, Any
from tenacity import retry, stop_after_attempt, wait_exponential
import logging
import re

logger = logging.getLogger(__name__)

# Legacy agent GUIDs first, then the new agent's secondary guids
GUID_PATTERNS = [
    ("tmdb", re.compile(r"com\.plexapp\.agents\.themoviedb://(\d+)")),
    ("tmdb", re.compile(r"tmdb://(\d+)")),
    ("imdb", re.compile(r"com\.plexapp\.agents\.imdb://(tt\d+)")),
    ("imdb", re.compile(r"imdb://(tt\d+)")),
    ("tvdb", re.compile(r"com\.plexapp\.agents\.thetvdb://(\d+)")),
    ("tvdb", re.compile(r"tvdb://(\d+)")),
]


class PlexServerUnreachableError(Exception):
    """Raised when a Plex server cannot be contacted or refuses a listing."""


def parse_external_ids(guids: List[str]) -> Dict[str, Optional[str]]:
    """
    Extract TMDB/IMDB/TVDB IDs from Plex GUIDs.

    @param guids Primary guid plus any secondary guids of an item
    @returns Dict with tmdb, imdb, tvdb keys
    """
    result = {"tmdb": None, "imdb": None, "tvdb": None}
    for guid in guids:
        if not guid:
            continue
        for source, pattern in GUID_PATTERNS:
            if result[source]:
                continue
            match = pattern.search(guid)
            if match:
                result[source] = match.group(1)
    return result


def choose_connection(connections):
    """
    Pick the connection to use for a server resource.

    @description Prefers a direct remote connection, then a local one,
    then whatever is left (relay).
    """
    for conn in connections:
        if not conn.local and not getattr(conn, "relay", False):
            return conn
    for conn in connections:
        if conn.local:
            return conn
    return connections[0] if connections else None


def _json_safe(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PlexClient:
    """
    Client for Plex.tv server discovery and library access.

    @description Wraps python-plexapi for easy integration with the app.
    """

    def __init__(self, auth_token: str):
        """
        Initialize PlexClient with an auth token.

        @param auth_token Token obtained from Plex.tv login
        """
        self.auth_token = auth_token
        self._account = None
        self._plex_imported = False

    def _import_plexapi(self):
        """Lazy import plexapi, it is only needed in the worker."""
        if not self._plex_imported:
            from plexapi.myplex import MyPlexAccount
            from plexapi.server import PlexServer
            self._MyPlexAccount = MyPlexAccount
            self._PlexServer = PlexServer
            self._plex_imported = True

    @property
    def account(self):
        """
        Lazy-load MyPlexAccount.

        @returns MyPlexAccount instance
        """
        self._import_plexapi()
        if self._account is None:
            self._account = self._MyPlexAccount(token=self.auth_token)
        return self._account

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10), reraise=True)
    def list_servers(self) -> List[Dict[str, Any]]:
        """
        Get list of Plex servers reachable with this account.

        @returns List of server dicts with machine_id, name, base_url, access_token, etc.
        """
        servers = []
        for resource in self.account.resources():
            if "server" not in (resource.provides or ""):
                continue
            connection = choose_connection(resource.connections)
            if not connection:
                logger.warning(f"No usable connection for Plex server {resource.name}")
                continue
            servers.append({
                "machine_id": resource.clientIdentifier,
                "name": resource.name,
                "base_url": connection.uri,
                "access_token": resource.accessToken,
                "version": resource.productVersion,
                "platform": resource.platform,
                "owned": bool(resource.owned),
            })
        return servers

    def connect_server(self, base_url: str, access_token: str):
        """
        Connect to a specific Plex server.

        @param base_url Server connection URL
        @param access_token Server-specific access token
        @returns plexapi PlexServer instance
        @raises PlexServerUnreachableError
        """
        self._import_plexapi()
        try:
            return self._PlexServer(base_url, access_token)
        except Exception as e:
            logger.error(f"Failed to connect to Plex server {base_url}: {e}")
            raise PlexServerUnreachableError(f"Cannot connect to Plex server {base_url}: {e}") from e

    def list_libraries(self, server) -> List[Dict[str, Any]]:
        """
        Get libraries (sections) from a Plex server.

        @param server plexapi PlexServer instance
        @returns List of library dicts with section_key, title, type, agent, ...
        """
        try:
            sections = server.library.sections()
        except Exception as e:
            raise PlexServerUnreachableError(f"Failed to list libraries: {e}") from e

        libraries = []
        for section in sections:
            libraries.append({
                "section_key": str(section.key),
                "title": section.title,
                "type": section.type,
                "agent": getattr(section, "agent", None),
                "scanner": getattr(section, "scanner", None),
                "language": getattr(section, "language", None),
                "uuid": getattr(section, "uuid", None),
                "item_count": getattr(section, "totalSize", None),
            })
        return libraries

    def list_items(self, server, section_key: str) -> List[Dict[str, Any]]:
        """
        Get every item of a library section.

        @param server plexapi PlexServer instance
        @param section_key Library section key
        @returns List of item dicts keyed by rating_key
        @raises PlexServerUnreachableError once retries are exhausted
        """
        try:
            raw_items = self._fetch_section_items(server, section_key)
        except Exception as e:
            raise PlexServerUnreachableError(f"Failed to list items of section {section_key}: {e}") from e

        items = []
        for item in raw_items:
            try:
                items.append(self._item_to_dict(item))
            except Exception as e:
                logger.warning(f"Error processing item {getattr(item, 'title', 'unknown')}: {e}")
                continue
        return items

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=4, max=10), reraise=True)
    def _fetch_section_items(self, server, section_key: str):
        return server.library.sectionByID(int(section_key)).all()

    def _item_to_dict(self, item) -> Dict[str, Any]:
        guids = [str(g.id) for g in (getattr(item, "guids", None) or [])]
        return {
            "rating_key": str(item.ratingKey),
            "guid": item.guid,
            "guids": guids,
            "title": item.title,
            "year": item.year,
            "type": item.type,
            "added_at": item.addedAt,
            "updated_at": item.updatedAt,
            "metadata": {
                "original_title": getattr(item, "originalTitle", None),
                "summary": getattr(item, "summary", None),
                "studio": getattr(item, "studio", None),
                "content_rating": getattr(item, "contentRating", None),
                "duration": getattr(item, "duration", None),
                "originally_available_at": _json_safe(getattr(item, "originallyAvailableAt", None)),
                "guids": guids,
                "external_ids": parse_external_ids([item.guid] + guids),
            },
        }


def get_plex_client_from_token(auth_token: str) -> Optional[PlexClient]:
    """
    Factory function to create PlexClient from auth token.

    @param auth_token Plex.tv auth token
    @returns PlexClient instance or None if token is empty
    """
    if not auth_token:
        return None
    return PlexClient(auth_token)
