"""
Celery tasks for Plex library synchronization.

Runs sync jobs created by app.services.sync_jobs.trigger_sync.

@description A job walks through its phases in order:
- discovery: servers of each linked Plex account, then their libraries
- crawl: item listings fetched by a bounded thread pool, diffs applied and
  committed one library at a time
- matching: every active item in scope goes through the MatchingEngine,
  counters and progress are committed after each item
- access: each user's visible libraries are reconciled (full sync only)

Cancellation is cooperative and checked between libraries and items.
A failing server or database aborts the job as failed; libraries already
committed stay committed and the next run picks up from there.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import time

from celery.signals import worker_ready
from sqlalchemy.orm import Session

from app.core.celery_app import celery_app
from app.core.config import settings
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.models.plex_account import PlexAccount
from app.models.plex_library import PlexLibrary
from app.models.plex_library_item import PlexLibraryItem
from app.models.plex_server import PlexServer
from app.models.sync_job import SyncJob, SyncJobType, SyncJobStatus
from app.models.user_plex_access import UserPlexAccess
from app.services.crawler import CatalogCrawler, DiscoveredServer
from app.services.matching import MatchingEngine, MatchStatus
from app.services.plex import PlexClient
from app.services.plex_access import AccessTracker
from app.services.plex_cleanup import run_full_cleanup
from app.services.rate_limiter import RateLimiter
from app.services.sync_jobs import (
    SyncAlreadyRunningError, InvalidJobStateError,
    trigger_sync, start_job, complete_job, fail_job, mark_cancelled, recover_interrupted_jobs,
)
from app.services.tmdb import TMDBClient

logger = logging.getLogger(__name__)

CrawlTarget = Tuple[PlexServer, PlexLibrary, object]


class SyncCancelled(Exception):
    pass


def _new_stats() -> Dict:
    return {
        "servers": 0,
        "libraries": 0,
        "items_created": 0,
        "items_updated": 0,
        "items_removed": 0,
        "items_unchanged": 0,
        "already_matched": 0,
        "matched": 0,
        "unresolved": 0,
        "deferred": 0,
        "errors": 0,
        "skipped_exhausted": 0,
        "strategies": {},
        "access_granted": 0,
        "access_revoked": 0,
    }


class SyncJobRunner:
    """
    Executes one SyncJob to a terminal state.

    @param db Session owned by the caller, used for every write of the job
    @param job A pending SyncJob
    @param client_factory Callable(token) -> PlexClient
    @param catalog TMDB client, defaults to TMDBClient()
    @param limiter Shared RateLimiter, defaults to one on SessionLocal
    @param sleep Used to wait out rate-limit denials
    """

    def __init__(
        self,
        db: Session,
        job: SyncJob,
        client_factory: Callable[[str], PlexClient] = PlexClient,
        catalog=None,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
        parallelism: Optional[int] = None,
        max_attempts: Optional[int] = None,
        defer_max_waits: Optional[int] = None,
        library_types: Optional[Iterable[str]] = None,
    ):
        self.db = db
        self.job = job
        self.clock = clock
        self.sleep = sleep
        self.crawler = CatalogCrawler(db, client_factory=client_factory, clock=clock)
        self.access = AccessTracker(db, clock=clock)
        self.catalog = catalog if catalog is not None else TMDBClient()
        self.limiter = limiter if limiter is not None else RateLimiter(SessionLocal, clock=clock)
        self.parallelism = parallelism or settings.SYNC_LIBRARY_PARALLELISM
        self.max_attempts = max_attempts if max_attempts is not None else settings.MATCH_MAX_ATTEMPTS
        self.defer_max_waits = defer_max_waits if defer_max_waits is not None else settings.MATCH_DEFER_MAX_WAITS
        self.library_types = set(library_types if library_types is not None else settings.SYNC_LIBRARY_TYPES)
        self.stats = _new_stats()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> SyncJob:
        start_job(self.db, self.job, now=self.clock())
        logger.info(f"Starting {self.job.type.value} job {self.job.id}")
        try:
            if self.job.type == SyncJobType.FULL_SYNC:
                self._run_full_sync()
            elif self.job.type == SyncJobType.LIBRARY_SYNC:
                self._run_library_sync()
            else:
                self._run_matching()

            self._save_stats()
            complete_job(self.db, self.job, step=self._summary(), now=self.clock())
            logger.info(f"Sync job {self.job.id} completed: {self.stats}")
        except SyncCancelled:
            self.db.rollback()
            self._save_stats()
            mark_cancelled(self.db, self.job, now=self.clock())
            logger.info(f"Sync job {self.job.id} cancelled")
        except Exception as e:
            logger.exception(f"Sync job {self.job.id} failed")
            self.db.rollback()
            self._save_stats()
            fail_job(self.db, self.job, str(e) or e.__class__.__name__, now=self.clock())
        return self.job

    # ------------------------------------------------------------------
    # Job kinds
    # ------------------------------------------------------------------

    def _run_full_sync(self):
        accounts_query = self.db.query(PlexAccount).filter(PlexAccount.is_active == True)
        if self.job.user_id is not None:
            accounts_query = accounts_query.filter(PlexAccount.user_id == self.job.user_id)
        accounts = accounts_query.order_by(PlexAccount.id).all()

        self._step("Discovering servers")
        discovered: List[Tuple[PlexAccount, List[DiscoveredServer]]] = []
        for account in accounts:
            self._checkpoint()
            discovered.append((account, self.crawler.discover_servers(account)))
            self.db.commit()
        self.stats["servers"] = len({d.server.id for _, servers in discovered for d in servers})

        self._step("Discovering libraries")
        targets: Dict[int, CrawlTarget] = {}
        for account, servers in discovered:
            for entry in servers:
                if not entry.reachable:
                    continue
                self._checkpoint()
                for library in self.crawler.discover_libraries(entry):
                    if library.type in self.library_types and library.id not in targets:
                        targets[library.id] = (entry.server, library, entry.connection)
                self.db.commit()

        self._crawl(list(targets.values()))
        self._match(self._items_in(list(targets.keys())))
        self._reconcile_access(discovered)

    def _run_library_sync(self):
        library = self.db.get(PlexLibrary, self.job.library_id)
        if library is None:
            raise ValueError(f"Plex library {self.job.library_id} not found")
        self._crawl([(library.server, library, None)])
        self._match(self._items_in([library.id]))

    def _run_matching(self):
        library_ids = [self.job.library_id] if self.job.library_id is not None else None
        self._match(self._items_in(library_ids, unmatched_only=True))

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _crawl(self, targets: List[CrawlTarget]):
        """Fetch listings in parallel, apply and commit them in order."""
        self.stats["libraries"] = len(targets)
        if not targets:
            return
        self._step(f"Crawling {len(targets)} libraries")

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            futures = [
                pool.submit(self.crawler.fetch_listing, server.base_url, server.access_token,
                            library.section_key, connection)
                for server, library, connection in targets
            ]
            try:
                for (server, library, _), future in zip(targets, futures):
                    self._checkpoint()
                    self._step(f"Crawling {server.name} / {library.title}")
                    listing = future.result()
                    diff = self.crawler.apply_listing(library, listing)
                    self.stats["items_created"] += len(diff.created)
                    self.stats["items_updated"] += len(diff.updated)
                    self.stats["items_removed"] += len(diff.removed)
                    self.stats["items_unchanged"] += diff.unchanged
                    if diff.has_changes or server.last_synced_at is None:
                        server.last_synced_at = self.clock()
                    self._save_stats()
                    self.db.commit()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _items_in(self, library_ids: Optional[List[int]], unmatched_only: bool = False) -> List[PlexLibraryItem]:
        query = self.db.query(PlexLibraryItem).filter(PlexLibraryItem.is_active == True)
        if library_ids is not None:
            if not library_ids:
                return []
            query = query.filter(PlexLibraryItem.library_id.in_(library_ids))
        if unmatched_only:
            query = query.filter(PlexLibraryItem.tmdb_id.is_(None))
        return query.order_by(PlexLibraryItem.id).all()

    def _match(self, items: List[PlexLibraryItem]):
        self.job.total_items = len(items)
        self._step(f"Matching {len(items)} items")
        self.db.commit()

        engine = MatchingEngine(self.db, self.catalog, self.limiter, clock=self.clock)
        for item in items:
            self._checkpoint()
            self.job.current_step = f"Matching {item.title}"
            succeeded = self._match_item(engine, item)
            self.job.processed_items += 1
            if succeeded:
                self.job.successful_items += 1
            else:
                self.job.failed_items += 1
            self.job.progress = self._progress()
            self._save_stats()
            self.db.commit()

    def _match_item(self, engine: MatchingEngine, item: PlexLibraryItem) -> bool:
        if item.tmdb_id is not None:
            self.stats["already_matched"] += 1
            return True
        if (item.matching_attempts or 0) >= self.max_attempts and not self.job.include_exhausted:
            self.stats["skipped_exhausted"] += 1
            return False

        waits = 0
        while True:
            outcome = engine.match(item)
            if outcome.status != MatchStatus.DEFERRED:
                break
            if waits >= self.defer_max_waits:
                logger.warning(f"Giving up on '{item.title}' for this run, TMDB rate limit still exhausted")
                self.stats["deferred"] += 1
                return False
            waits += 1
            logger.debug(f"TMDB rate limit reached, waiting {outcome.retry_after:.2f}s")
            self.sleep(outcome.retry_after)

        if outcome.status == MatchStatus.MATCHED:
            self.stats["matched"] += 1
            strategies = self.stats["strategies"]
            strategies[outcome.strategy] = strategies.get(outcome.strategy, 0) + 1
            return True
        if outcome.status == MatchStatus.ERROR:
            self.stats["errors"] += 1
        else:
            self.stats["unresolved"] += 1
        return False

    def _reconcile_access(self, discovered: List[Tuple[PlexAccount, List[DiscoveredServer]]]):
        self._step("Reconciling library access")
        for account, servers in discovered:
            self._checkpoint()
            listed_ids = set()
            for entry in servers:
                listed_ids.add(entry.server.id)
                if not entry.reachable:
                    continue
                change = self.access.reconcile(account.user_id, entry.server, entry.libraries)
                self.stats["access_granted"] += len(change.granted)
                self.stats["access_revoked"] += len(change.revoked)

            # Servers that dropped out of the account's listing entirely
            stale_servers = (
                self.db.query(PlexServer)
                .join(PlexLibrary, PlexLibrary.server_id == PlexServer.id)
                .join(UserPlexAccess, UserPlexAccess.library_id == PlexLibrary.id)
                .filter(UserPlexAccess.user_id == account.user_id, UserPlexAccess.is_active == True)
                .distinct()
                .all()
            )
            for server in stale_servers:
                if server.id in listed_ids:
                    continue
                change = self.access.reconcile(account.user_id, server, [])
                self.stats["access_revoked"] += len(change.revoked)
            self._save_stats()
            self.db.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint(self):
        """Stop at a unit boundary if cancellation was requested."""
        self.db.refresh(self.job, attribute_names=["cancel_requested"])
        if self.job.cancel_requested:
            raise SyncCancelled(f"Sync job {self.job.id} cancelled by user")

    def _step(self, label: str):
        self.job.current_step = label
        self.db.commit()

    def _progress(self) -> int:
        if not self.job.total_items:
            return 0
        # 100 is reserved for the completed state
        return min(99, self.job.processed_items * 100 // self.job.total_items)

    def _save_stats(self):
        # JSON columns only track reassignment
        self.job.metadata_json = {**self.stats, "strategies": dict(self.stats["strategies"])}

    def _summary(self) -> str:
        return (
            f"Completed: {self.job.successful_items} matched, {self.job.failed_items} failed "
            f"of {self.job.total_items} items"
        )


def enqueue_sync_job(job_id: int):
    """Dispatch helper passed to trigger_sync."""
    return run_sync_job_task.apply_async(args=[job_id])


@celery_app.task
def run_sync_job_task(job_id: int):
    """
    Celery task running one sync job.

    @param job_id Database ID of a pending SyncJob
    """
    db = SessionLocal()
    try:
        job = db.get(SyncJob, job_id)
        if not job:
            logger.error(f"Sync job {job_id} not found")
            return "Job not found"
        if job.status != SyncJobStatus.PENDING:
            logger.warning(f"Sync job {job_id} is {job.status.value}, not running it")
            return f"Job {job_id} is {job.status.value}"

        SyncJobRunner(db, job).run()
        return f"Job {job_id} {job.status.value}"
    except InvalidJobStateError as e:
        logger.warning(f"Sync job {job_id} was picked up elsewhere: {e}")
        return f"Error: {str(e)}"
    except Exception as e:
        logger.exception(f"Error in run_sync_job_task: {e}")
        return f"Error: {str(e)}"
    finally:
        db.close()


@celery_app.task
def scheduled_full_sync_task():
    """Periodic full sync, skipped while another sync covers the same scope."""
    db = SessionLocal()
    try:
        job = trigger_sync(db, SyncJobType.FULL_SYNC, dispatch=enqueue_sync_job)
        return f"Queued full sync job {job.id}"
    except SyncAlreadyRunningError as e:
        logger.info(f"Skipping scheduled full sync: {e}")
        return "Already running"
    finally:
        db.close()


@celery_app.task
def plex_cleanup_task():
    """Periodic maintenance of sync jobs, access rows and library counts."""
    db = SessionLocal()
    try:
        return run_full_cleanup(db)
    finally:
        db.close()


@worker_ready.connect
def recover_sync_jobs_on_startup(**kwargs):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = recover_interrupted_jobs(db, dispatch=enqueue_sync_job)
        logger.info(f"Sync job recovery: {result}")
    except Exception:
        logger.exception("Error recovering sync jobs on worker start")
    finally:
        db.close()
