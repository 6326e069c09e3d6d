"""
Shared pytest fixtures for the Plex sync tests.

Provides:
- a throwaway SQLite database per test (file based so worker threads and
  the rate limiter's own sessions see the same data)
- FakePlexWorld: an in-memory set of Plex servers, libraries and accounts
  exposing the PlexClient interface
- FakeCatalog: an in-memory TMDB exposing the TMDBClient interface
- FakeClock / FakeSleeper so rate-limit windows can be crossed instantly

No network access and no plexapi import is needed.
"""
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db.base import Base
from app.models.plex_account import PlexAccount
from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.plex_server import PlexServer
from app.models.user import User
from app.services.plex import PlexServerUnreachableError, parse_external_ids
from app.services.rate_limiter import RateLimiter
from app.services.tmdb import Candidate


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'plexsync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def add_user(db, username: str, token: Optional[str] = None) -> User:
    """Create a user, with a linked Plex account when a token is given."""
    user = User(username=username)
    db.add(user)
    db.flush()
    if token:
        db.add(PlexAccount(user_id=user.id, username=f"{username}@plex.tv", auth_token=token))
    db.commit()
    return user


def add_library(db, machine_id: str = "m1", section_key: str = "1", title: str = "Movies",
                type: str = "movie") -> PlexLibrary:
    """Create a library (and its server on first use) without crawling."""
    server = db.query(PlexServer).filter(PlexServer.machine_id == machine_id).first()
    if not server:
        server = PlexServer(machine_id=machine_id, name=machine_id,
                            base_url=f"https://{machine_id}.plex.direct:32400",
                            access_token=f"owner|{machine_id}")
        db.add(server)
        db.flush()
    library = PlexLibrary(server_id=server.id, section_key=section_key, title=title, type=type, item_count=0)
    db.add(library)
    db.commit()
    return library


def add_item(db, library: PlexLibrary, rating_key, title: str, year: Optional[int] = None,
             tmdb: Optional[int] = None, imdb: Optional[str] = None, guid: Optional[str] = None,
             tmdb_id: Optional[int] = None, attempts: int = 0, is_active: bool = True) -> PlexLibraryItem:
    """Insert a cached item as the crawler would have stored it."""
    remote = make_item(rating_key, title, year, tmdb=tmdb, imdb=imdb, guid=guid)
    item = PlexLibraryItem(
        library_id=library.id,
        rating_key=remote["rating_key"],
        guid=remote["guid"],
        title=title,
        year=year,
        type="movie",
        metadata_json=remote["metadata"],
        updated_at_plex=remote["updated_at"],
        tmdb_id=tmdb_id,
        matching_attempts=attempts,
        is_active=is_active,
    )
    db.add(item)
    db.commit()
    return item


# =============================================================================
# Time
# =============================================================================

class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeSleeper:
    """Records requested sleeps and moves the clock forward instead of blocking."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return FakeSleeper(clock)


@pytest.fixture
def limiter(session_factory, clock):
    return RateLimiter(session_factory, capacity=40, window_seconds=10, clock=clock)


# =============================================================================
# Plex
# =============================================================================

def make_item(rating_key, title: str, year: Optional[int] = None, tmdb: Optional[int] = None,
              imdb: Optional[str] = None, updated_at: Optional[datetime] = None,
              guid: Optional[str] = None) -> Dict:
    """Build an item dict shaped like PlexClient.list_items output."""
    guids = []
    if tmdb:
        guids.append(f"tmdb://{tmdb}")
    if imdb:
        guids.append(f"imdb://{imdb}")
    guid = guid or f"plex://movie/{int(rating_key):024x}"
    return {
        "rating_key": str(rating_key),
        "guid": guid,
        "guids": guids,
        "title": title,
        "year": year,
        "type": "movie",
        "added_at": datetime(2024, 1, 1),
        "updated_at": updated_at or datetime(2024, 1, 1),
        "metadata": {
            "original_title": None,
            "summary": f"{title} summary",
            "guids": guids,
            "external_ids": parse_external_ids([guid] + guids),
        },
    }


class FakeConnection:
    def __init__(self, machine_id: str, token: str):
        self.machine_id = machine_id
        self.token = token


class FakePlexWorld:
    """
    In-memory Plex.tv plus servers.

    Usage:
        world.add_server("m1", "Home")
        world.add_library("m1", "1", "Movies", items=[make_item(1, "Heat", 1995)])
        world.share("token-a", "m1", owned=True)
        client = world.client_factory("token-a")
    """

    def __init__(self):
        self.servers: Dict[str, Dict] = {}
        self.accounts: Dict[str, Dict[str, Dict]] = {}
        self.listing_calls: List[str] = []

    def add_server(self, machine_id: str, name: Optional[str] = None, reachable: bool = True):
        self.servers[machine_id] = {
            "name": name or machine_id,
            "base_url": f"https://{machine_id}.plex.direct:32400",
            "reachable": reachable,
            "libraries": {},
            "broken_sections": set(),
        }

    def add_library(self, machine_id: str, section_key: str, title: str, type: str = "movie",
                    items: Optional[List[Dict]] = None):
        self.servers[machine_id]["libraries"][section_key] = {
            "title": title,
            "type": type,
            "items": list(items or []),
        }

    def set_items(self, machine_id: str, section_key: str, items: List[Dict]):
        self.servers[machine_id]["libraries"][section_key]["items"] = list(items)

    def share(self, token: str, machine_id: str, owned: bool = False, sections=None):
        self.accounts.setdefault(token, {})[machine_id] = {
            "owned": owned,
            "sections": set(sections) if sections is not None else None,
        }

    def unshare(self, token: str, machine_id: str):
        self.accounts.get(token, {}).pop(machine_id, None)

    def client_factory(self, token: str) -> "FakePlexClient":
        return FakePlexClient(self, token)


class FakePlexClient:
    def __init__(self, world: FakePlexWorld, token: str):
        self.world = world
        self.token = token

    def list_servers(self):
        servers = []
        for machine_id, grant in self.world.accounts.get(self.token, {}).items():
            server = self.world.servers[machine_id]
            servers.append({
                "machine_id": machine_id,
                "name": server["name"],
                "base_url": server["base_url"],
                "access_token": f"{self.token}|{machine_id}",
                "version": "1.40.0",
                "platform": "Linux",
                "owned": grant["owned"],
            })
        return servers

    def connect_server(self, base_url: str, access_token: str):
        account_token, machine_id = access_token.split("|")
        if not self.world.servers[machine_id]["reachable"]:
            raise PlexServerUnreachableError(f"Cannot connect to Plex server {base_url}")
        return FakeConnection(machine_id, account_token)

    def list_libraries(self, connection: FakeConnection):
        grant = self.world.accounts[connection.token][connection.machine_id]
        libraries = self.world.servers[connection.machine_id]["libraries"]
        return [
            {
                "section_key": key,
                "title": lib["title"],
                "type": lib["type"],
                "agent": "tv.plex.agents.movie",
                "scanner": "Plex Movie",
                "language": "en-US",
                "uuid": f"uuid-{connection.machine_id}-{key}",
                "item_count": len(lib["items"]),
            }
            for key, lib in libraries.items()
            if grant["sections"] is None or key in grant["sections"]
        ]

    def list_items(self, connection: FakeConnection, section_key: str):
        server = self.world.servers[connection.machine_id]
        self.world.listing_calls.append(f"{connection.machine_id}/{section_key}")
        if section_key in server["broken_sections"]:
            raise PlexServerUnreachableError(f"Failed to list items of section {section_key}: timed out")
        return [dict(item) for item in server["libraries"][section_key]["items"]]


@pytest.fixture
def plex_world():
    return FakePlexWorld()


# =============================================================================
# TMDB
# =============================================================================

class FakeCatalog:
    """In-memory TMDB with the TMDBClient search interface. Records every call."""

    def __init__(self):
        self.external: Dict = {}
        self.title_year: Dict = {}
        self.titles: Dict = {}
        self.calls: List = []
        self.error: Optional[Exception] = None

    def add_movie(self, tmdb_id: int, title: str, year: Optional[int], imdb: Optional[str] = None,
                  searchable: bool = True) -> Candidate:
        candidate = Candidate(catalog_id=tmdb_id, title=title, year=year)
        self.external[("tmdb", str(tmdb_id))] = [candidate]
        if imdb:
            self.external[("imdb", imdb)] = [candidate]
        if searchable:
            self.title_year.setdefault((title, year), []).append(candidate)
            self.titles.setdefault(title, []).append(candidate)
        return candidate

    def _maybe_fail(self):
        if self.error:
            raise self.error

    def search_by_external_id(self, external_id, source):
        self.calls.append(("external_id", source, str(external_id)))
        self._maybe_fail()
        return list(self.external.get((source, str(external_id)), []))

    def search_by_title_year(self, title, year):
        self.calls.append(("title_year", title, year))
        self._maybe_fail()
        return list(self.title_year.get((title, year), []))

    def search_by_title(self, title):
        self.calls.append(("title", title))
        self._maybe_fail()
        return list(self.titles.get(title, []))


@pytest.fixture
def catalog():
    return FakeCatalog()
