"""
TMDB matching for Plex library items.

@description Resolves one PlexLibraryItem to a TMDB id by trying an ordered
list of independent matchers; the first one that returns a result wins:

1. KnownGuidMatcher    - reuse the id already resolved for the same Plex GUID
2. ExternalIdMatcher   - TMDB / IMDb / TVDB ids embedded in the Plex GUIDs
3. TitleYearMatcher    - unique exact title + year hit from /search/movie
4. FuzzyTitleMatcher   - rapidfuzz ranking of a title-only search

Every TMDB request first takes a slot from the shared RateLimiter. A refused
slot ends the attempt as DEFERRED and leaves the item untouched. A completed
attempt, matched or not, bumps matching_attempts and last_matched_at so items
with no plausible match stop being retried once they hit the attempt cap.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
import enum
import logging
import re
import unicodedata

import httpx
from rapidfuzz import fuzz, process
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.plex_library_item import PlexLibraryItem
from app.services.plex import parse_external_ids
from app.services.rate_limiter import RateLimiter, RateLimitDeferred
from app.services.tmdb import Candidate

logger = logging.getLogger(__name__)


class MatchStatus(str, enum.Enum):
    MATCHED = "matched"
    UNRESOLVED = "unresolved"
    DEFERRED = "deferred"
    ERROR = "error"


@dataclass
class MatchResult:
    catalog_id: int
    confidence: float
    strategy: str


@dataclass
class MatchOutcome:
    status: MatchStatus
    catalog_id: Optional[int] = None
    confidence: float = 0.0
    strategy: Optional[str] = None
    retry_after: float = 0.0
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.status == MatchStatus.MATCHED


def normalize_title(title: Optional[str]) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    if not title:
        return ""
    text = unicodedata.normalize("NFKD", title)
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = text.lower().replace("&", " and ")
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


class GatedCatalog:
    """
    Catalog client wrapper that pays for each request with a reservation.

    @raises RateLimitDeferred when the limiter refuses a slot
    """

    def __init__(self, client, limiter: RateLimiter):
        self.client = client
        self.limiter = limiter

    def _reserve(self):
        reservation = self.limiter.reserve()
        if not reservation.granted:
            raise RateLimitDeferred(reservation.retry_after)

    def search_by_external_id(self, external_id: str, source: str) -> List[Candidate]:
        self._reserve()
        return self.client.search_by_external_id(external_id, source)

    def search_by_title_year(self, title: str, year: int) -> List[Candidate]:
        self._reserve()
        return self.client.search_by_title_year(title, year)

    def search_by_title(self, title: str) -> List[Candidate]:
        self._reserve()
        return self.client.search_by_title(title)


class Matcher:
    """One resolution strategy. Returns None when it has no answer."""

    name = "matcher"

    def find(self, db: Session, item: PlexLibraryItem, catalog: GatedCatalog) -> Optional[MatchResult]:
        raise NotImplementedError


class KnownGuidMatcher(Matcher):
    """Another library (or server) already resolved this exact Plex GUID."""

    name = "known_guid"

    def find(self, db, item, catalog):
        if not item.guid or item.guid.startswith("local://"):
            return None
        tmdb_id = (
            db.query(PlexLibraryItem.tmdb_id)
            .filter(
                PlexLibraryItem.guid == item.guid,
                PlexLibraryItem.tmdb_id.isnot(None),
                PlexLibraryItem.id != item.id,
            )
            .limit(1)
            .scalar()
        )
        if tmdb_id is None:
            return None
        return MatchResult(catalog_id=tmdb_id, confidence=1.0, strategy=self.name)


class ExternalIdMatcher(Matcher):
    name = "external_id"
    sources = ("tmdb", "imdb", "tvdb")

    def find(self, db, item, catalog):
        metadata = item.metadata_json or {}
        ids = metadata.get("external_ids") or parse_external_ids([item.guid] + metadata.get("guids", []))
        for source in self.sources:
            external_id = ids.get(source)
            if not external_id:
                continue
            candidates = catalog.search_by_external_id(external_id, source)
            if candidates:
                return MatchResult(catalog_id=candidates[0].catalog_id, confidence=1.0, strategy=self.name)
        return None


class TitleYearMatcher(Matcher):
    name = "title_year"

    def find(self, db, item, catalog):
        if not item.year or not item.title:
            return None
        wanted = normalize_title(item.title)
        candidates = catalog.search_by_title_year(item.title, item.year)
        exact = [
            c for c in candidates
            if c.year == item.year
            and wanted in (normalize_title(c.title), normalize_title(c.original_title))
        ]
        if len(exact) != 1:
            return None
        return MatchResult(catalog_id=exact[0].catalog_id, confidence=0.95, strategy=self.name)


class FuzzyTitleMatcher(Matcher):
    """
    Title-only search ranked with token_sort_ratio.

    @description Only candidates released within one year of the item are
    ranked. The best one is accepted when it clears min_score and the
    runner-up trails it by more than ambiguity_margin points.
    """

    name = "fuzzy_title"

    def __init__(self, min_score: Optional[float] = None, ambiguity_margin: Optional[float] = None):
        self.min_score = min_score if min_score is not None else settings.MATCH_FUZZY_MIN_SCORE
        self.ambiguity_margin = (
            ambiguity_margin if ambiguity_margin is not None else settings.MATCH_FUZZY_AMBIGUITY_MARGIN
        )

    def find(self, db, item, catalog):
        if not item.year or not item.title:
            return None
        candidates = [
            c for c in catalog.search_by_title(item.title)
            if c.year is not None and abs(c.year - item.year) <= 1
        ]
        if not candidates:
            return None

        choices = [normalize_title(c.title) for c in candidates]
        ranked = process.extract(normalize_title(item.title), choices, scorer=fuzz.token_sort_ratio, limit=2)
        _, top_score, top_index = ranked[0]
        if top_score < self.min_score:
            return None
        if len(ranked) > 1 and top_score - ranked[1][1] <= self.ambiguity_margin:
            logger.debug(f"Ambiguous fuzzy match for '{item.title}' ({item.year})")
            return None
        return MatchResult(
            catalog_id=candidates[top_index].catalog_id,
            confidence=round(top_score / 100.0 * 0.9, 3),
            strategy=self.name,
        )


def default_matchers() -> List[Matcher]:
    return [KnownGuidMatcher(), ExternalIdMatcher(), TitleYearMatcher(), FuzzyTitleMatcher()]


class MatchingEngine:
    """
    Runs the matcher chain for single items.

    @param db Session the item belongs to. The engine changes the item but
        leaves committing to the caller.
    @param catalog TMDB client (search_by_external_id, search_by_title_year, search_by_title)
    @param limiter Shared RateLimiter
    @param matchers Ordered strategies, defaults to default_matchers()
    """

    def __init__(self, db: Session, catalog, limiter: RateLimiter,
                 matchers: Optional[List[Matcher]] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.catalog = GatedCatalog(catalog, limiter)
        self.matchers = matchers if matchers is not None else default_matchers()
        self.clock = clock

    def match(self, item: PlexLibraryItem) -> MatchOutcome:
        result = None
        try:
            for matcher in self.matchers:
                result = matcher.find(self.db, item, self.catalog)
                if result:
                    break
        except RateLimitDeferred as e:
            return MatchOutcome(status=MatchStatus.DEFERRED, retry_after=e.retry_after)
        except httpx.HTTPError as e:
            logger.warning(f"TMDB lookup failed for '{item.title}' ({item.rating_key}): {e}")
            return MatchOutcome(status=MatchStatus.ERROR, error=str(e))
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception(f"Matching failed for '{item.title}' ({item.rating_key})")
            return MatchOutcome(status=MatchStatus.ERROR, error=str(e))

        item.matching_attempts = (item.matching_attempts or 0) + 1
        item.last_matched_at = self.clock()

        if result is None:
            logger.info(f"No TMDB match for '{item.title}' ({item.year}), attempt {item.matching_attempts}")
            return MatchOutcome(status=MatchStatus.UNRESOLVED)

        item.tmdb_id = result.catalog_id
        logger.debug(f"Matched '{item.title}' to TMDB {result.catalog_id} via {result.strategy}")
        return MatchOutcome(
            status=MatchStatus.MATCHED,
            catalog_id=result.catalog_id,
            confidence=result.confidence,
            strategy=result.strategy,
        )
