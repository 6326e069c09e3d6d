"""
Tests for services/plex.py - GUID parsing, connection choice and item mapping.

plexapi objects are replaced by unittest.mock objects.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from app.services.plex import (
    PlexClient, PlexServerUnreachableError, choose_connection, parse_external_ids,
)


class TestParseExternalIds:

    def test_legacy_agent_guids(self):
        ids = parse_external_ids(["com.plexapp.agents.imdb://tt0113277?lang=en"])

        assert ids == {"tmdb": None, "imdb": "tt0113277", "tvdb": None}

    def test_new_agent_secondary_guids(self):
        ids = parse_external_ids([
            "plex://movie/5d776825880197001ec967c6",
            "imdb://tt0113277",
            "tmdb://949",
            "tvdb://123",
        ])

        assert ids == {"tmdb": "949", "imdb": "tt0113277", "tvdb": "123"}

    def test_themoviedb_agent(self):
        assert parse_external_ids(["com.plexapp.agents.themoviedb://949?lang=en"])["tmdb"] == "949"

    def test_ignores_empty_and_unknown(self):
        assert parse_external_ids([None, "", "local://42"]) == {"tmdb": None, "imdb": None, "tvdb": None}


def _conn(uri, local=False, relay=False):
    conn = MagicMock()
    conn.uri = uri
    conn.local = local
    conn.relay = relay
    return conn


class TestChooseConnection:

    def test_prefers_direct_remote(self):
        relay = _conn("https://relay", relay=True)
        local = _conn("http://192.168.1.2:32400", local=True)
        remote = _conn("https://1-2-3-4.plex.direct:32400")

        assert choose_connection([relay, local, remote]) is remote

    def test_falls_back_to_local(self):
        relay = _conn("https://relay", relay=True)
        local = _conn("http://192.168.1.2:32400", local=True)

        assert choose_connection([relay, local]) is local

    def test_relay_as_last_resort(self):
        relay = _conn("https://relay", relay=True)

        assert choose_connection([relay]) is relay
        assert choose_connection([]) is None


def _plex_movie(rating_key=101, title="Heat", year=1995):
    item = MagicMock()
    item.ratingKey = rating_key
    item.guid = "plex://movie/5d776825880197001ec967c6"
    guid = MagicMock()
    guid.id = "tmdb://949"
    item.guids = [guid]
    item.title = title
    item.year = year
    item.type = "movie"
    item.addedAt = datetime(2023, 5, 1, 10, 0)
    item.updatedAt = datetime(2024, 2, 3, 4, 5)
    item.originalTitle = None
    item.summary = "A group of professional bank robbers..."
    item.studio = "Warner Bros."
    item.contentRating = "R"
    item.duration = 10200000
    item.originallyAvailableAt = datetime(1995, 12, 15)
    return item


class TestListItems:

    def test_maps_plex_items_to_dicts(self):
        client = PlexClient("token")
        with patch.object(PlexClient, "_fetch_section_items", return_value=[_plex_movie()]):
            items = client.list_items(MagicMock(), "1")

        assert len(items) == 1
        item = items[0]
        assert item["rating_key"] == "101"
        assert item["guids"] == ["tmdb://949"]
        assert item["updated_at"] == datetime(2024, 2, 3, 4, 5)
        assert item["metadata"]["external_ids"]["tmdb"] == "949"
        assert item["metadata"]["originally_available_at"] == "1995-12-15T00:00:00"

    def test_listing_failure_is_unreachable(self):
        client = PlexClient("token")
        with patch.object(PlexClient, "_fetch_section_items", side_effect=ConnectionError("timed out")):
            with pytest.raises(PlexServerUnreachableError):
                client.list_items(MagicMock(), "1")

    def test_library_listing_failure_is_unreachable(self):
        server = MagicMock()
        server.library.sections.side_effect = ConnectionError("refused")

        with pytest.raises(PlexServerUnreachableError):
            PlexClient("token").list_libraries(server)

    def test_library_listing_maps_sections(self):
        section = MagicMock()
        section.key = 1
        section.title = "Movies"
        section.type = "movie"
        section.agent = "tv.plex.agents.movie"
        section.scanner = "Plex Movie"
        section.language = "en-US"
        section.uuid = "abc"
        section.totalSize = 12
        server = MagicMock()
        server.library.sections.return_value = [section]

        libraries = PlexClient("token").list_libraries(server)

        assert libraries == [{
            "section_key": "1", "title": "Movies", "type": "movie",
            "agent": "tv.plex.agents.movie", "scanner": "Plex Movie", "language": "en-US",
            "uuid": "abc", "item_count": 12,
        }]
