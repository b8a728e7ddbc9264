"""
Crawler service.
Owns the pipelines of one process and exposes the operational hooks:
start a crawl, pause it, report status and read the error log.
"""

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from .config import CrawlerConfig, CrawlerSettings, ProgressStoreConfig
from .errors import CrawlAborted, CrawlError, ItemValidationError, StoreUnavailable
from .models import BulkWriteResult, FailedPages, SessionResult
from .pipeline import CrawlPipeline
from .resilience.progress_store import ProgressStore
from .resilience.rate_controller import RateAdaptiveController
from .resilience.retry_handler import RetryHandler
from .schemas import GenreListResponse, GenreRef, parse_model
from .source_client import SourceApiClient
from .storage import CatalogStorage
from .utils import validate_genre

logger = logging.getLogger(__name__)

MAX_SESSION_HISTORY = 20


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Crawler:
    """Crawl service with explicitly injected dependencies."""

    def __init__(
        self,
        client: SourceApiClient,
        storage: CatalogStorage,
        progress: ProgressStore,
        config: Optional[CrawlerConfig] = None,
        controller: Optional[RateAdaptiveController] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the crawler.

        Args:
            client: Source API client
            storage: Document store
            progress: Progress store
            config: CrawlerConfig instance, uses defaults if None
            controller: Rate controller, created from config if None
            sleep: Async sleep function used for pacing
            rng: Random source for synthetic stats
            clock: Monotonic clock in seconds
        """
        self.config = config or CrawlerConfig()
        self.client = client
        self.storage = storage
        self.progress = progress
        self.controller = controller or RateAdaptiveController(self.config.rate_control)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

        self._pipelines: Dict[str, CrawlPipeline] = {}
        self._active: Optional[CrawlPipeline] = None
        self._starting = False
        self._pending_pause: Optional[str] = None
        self.status = "idle"
        self.sessions: List[SessionResult] = []

    def pipeline_for(self, category: str) -> CrawlPipeline:
        """Get or create the pipeline of a category."""
        pipeline = self._pipelines.get(category)
        if pipeline is None:
            pipeline = CrawlPipeline(
                category=category,
                client=self.client,
                storage=self.storage,
                progress=self.progress,
                controller=self.controller,
                config=self.config.pipeline,
                retry_config=self.config.retry,
                sleep=self._sleep,
                rng=self._rng,
                clock=self._clock,
            )
            self._pipelines[category] = pipeline
        return pipeline

    @property
    def active_category(self) -> Optional[str]:
        return self._active.category if self._active else None

    async def preflight(self) -> dict:
        """
        Check the progress store, document store and source API.

        Returns:
            Dict with one health entry per dependency
        """
        progress_health = await asyncio.to_thread(self.progress.health_check)
        if not progress_health['healthy']:
            logger.warning("Progress store unreachable, starting cold: %s", progress_health['error'])

        store_ok = await asyncio.to_thread(self.storage.ping)
        api_health = await self.client.check_health()

        return {
            'progress_store': progress_health,
            'document_store': {'healthy': store_ok},
            'source_api': api_health,
        }

    async def start_crawl(self, category: str) -> SessionResult:
        """
        Run one crawl session for a category.

        Args:
            category: Category to crawl

        Returns:
            SessionResult with status completed, paused or error

        Raises:
            CrawlAborted: If an error storm aborted the session
            StoreUnavailable: If the document store was lost
        """
        if self._starting or (self._active is not None and self._active.is_running):
            raise RuntimeError("A crawl session is already running")

        session_id = f"{category}-{uuid.uuid4().hex[:8]}"
        started_at = _utc_now()
        started = self._clock()
        pipeline = self.pipeline_for(category)
        before = pipeline.stats.to_dict()

        logger.info("Starting crawl session %s", session_id)
        self._pending_pause = None
        self._starting = True
        try:
            health = await self.preflight()
        finally:
            self._starting = False
        if not health['document_store']['healthy']:
            self.status = "error"
            raise StoreUnavailable("Document store failed preflight")
        if not health['source_api']['healthy'] and health['source_api']['status'] is None:
            self.status = "error"
            result = self._build_result(session_id, category, "error", started_at, started, pipeline, before)
            result.stop_reason = f"source API unreachable: {health['source_api']['error']}"
            self._remember(result)
            await asyncio.to_thread(self.progress.save_session_stats, session_id, result.to_dict())
            logger.error("Session %s not started: %s", session_id, result.stop_reason)
            return result
        if self._pending_pause is not None:
            result = self._build_result(session_id, category, "paused", started_at, started, pipeline, before)
            result.stop_reason = self._pending_pause
            self._pending_pause = None
            self.status = "idle"
            self._remember(result)
            await asyncio.to_thread(self.progress.save_session_stats, session_id, result.to_dict())
            logger.info("Session %s paused before it started: %s", session_id, result.stop_reason)
            return result

        self._active = pipeline
        self.status = "running"
        pipeline.deadline = started + self.config.pipeline.max_session_duration
        loop = asyncio.get_running_loop()
        timer = loop.call_later(
            self.config.pipeline.max_session_duration,
            pipeline.stop,
            "max session duration reached",
        )

        try:
            outcome = await pipeline.run()
        except (CrawlAborted, StoreUnavailable) as e:
            self.status = "error"
            result = self._build_result(session_id, category, "error", started_at, started, pipeline, before)
            result.stop_reason = str(e)
            self._remember(result)
            await asyncio.to_thread(self.progress.log_error, category, 0, e, {'phase': 'session', 'session_id': session_id})
            await asyncio.to_thread(self.progress.save_session_stats, session_id, result.to_dict())
            logger.error("Session %s failed: %s", session_id, e)
            raise
        finally:
            timer.cancel()
            self._active = None

        enumeration = outcome.enumeration
        # Unfinished items keep the category open until a later session stores them
        finished = enumeration.reached_end and not outcome.pending_pages
        status = "completed" if finished else "paused"
        result = self._build_result(session_id, category, status, started_at, started, pipeline, before)
        result.reached_end = enumeration.reached_end
        result.stop_reason = enumeration.stop_reason

        if finished:
            final_stats = result.to_dict()
            final_stats['total_processed'] = enumeration.total_processed
            await asyncio.to_thread(self.progress.mark_completed, category, final_stats)
        await asyncio.to_thread(self.progress.save_session_stats, session_id, result.to_dict())

        self.status = "completed" if status == "completed" else "idle"
        self._remember(result)
        logger.info(
            "Session %s %s: %d pages, %d new stories, %d new chapters, %d duplicates, %d errors",
            session_id, status, result.pages_processed, result.new_stories,
            result.new_chapters, result.duplicates_skipped, result.errors
        )
        return result

    def _build_result(
        self,
        session_id: str,
        category: str,
        status: str,
        started_at: str,
        started: float,
        pipeline: CrawlPipeline,
        before: dict
    ) -> SessionResult:
        after = pipeline.stats.to_dict()
        delta = {key: after[key] - before.get(key, 0) for key in after}
        duration = max(self._clock() - started, 0.0)
        minutes = duration / 60 if duration > 0 else 0.0

        return SessionResult(
            session_id=session_id,
            category=category,
            status=status,
            started_at=started_at,
            completed_at=_utc_now(),
            pages_processed=delta['pages_processed'],
            stories_queued=delta['stories_queued'],
            new_stories=delta['new_stories'],
            updated_stories=delta['updated_stories'],
            new_chapters=delta['new_chapters'],
            duplicates_skipped=delta['duplicates_skipped'],
            errors=delta['errors'],
            duration_seconds=duration,
            stories_per_minute=(delta['new_stories'] + delta['updated_stories']) / minutes if minutes else 0.0,
            api_calls_per_minute=delta['api_calls_made'] / minutes if minutes else 0.0,
        )

    def _remember(self, result: SessionResult):
        self.sessions.append(result)
        del self.sessions[:-MAX_SESSION_HISTORY]

    def pause(self, reason: str = "paused by operator") -> bool:
        """
        Pause the running session at its next page or batch boundary.

        A pause that arrives while a session is still in preflight is kept
        and the session returns paused without crawling.

        Returns:
            True if a session was running or starting
        """
        if self._active is not None and self._active.is_running:
            self._active.stop(reason)
            return True
        if self._starting:
            self._pending_pause = reason
            return True
        return False

    def get_status(self) -> dict:
        """
        Get coarse status and cumulative counters.

        Returns:
            Dict with status, active category, per-category counters and health
        """
        return {
            'status': self.status,
            'active_category': self.active_category,
            'phase': self._active.current_phase if self._active else None,
            'healthy': self.controller.is_healthy(),
            'categories': {
                category: pipeline.stats.to_dict()
                for category, pipeline in self._pipelines.items()
            },
            'rate_control': self.controller.get_stats(),
            'last_session': self.sessions[-1].to_dict() if self.sessions else None,
        }

    async def get_error_log(self, category: str) -> FailedPages:
        """Read failed pages and their errors for a category."""
        return await asyncio.to_thread(self.progress.get_failed_pages, category)

    async def retry_failed_pages(self, category: str) -> dict:
        """
        Re-crawl pages recorded in the error log of a category.

        Returns:
            Dict with pages_tried, recovered and new_stories
        """
        failed = await self.get_error_log(category)
        if not failed.pages:
            logger.info("No failed pages to retry for %s", category)
            return {'pages_tried': [], 'recovered': [], 'new_stories': 0}

        pipeline = self.pipeline_for(category)
        before = pipeline.stats.new_stories
        pages = failed.pages[:self.config.pipeline.retry_failed_limit]
        logger.info("Retrying %d failed pages for %s: %s", len(pages), category, pages)

        self._active = pipeline
        self.status = "running"
        try:
            recovered = await pipeline.retry_pages(pages)
        finally:
            self._active = None
            self.status = "idle"

        return {
            'pages_tried': pages,
            'recovered': recovered,
            'new_stories': pipeline.stats.new_stories - before,
        }

    async def sync_genres(self) -> BulkWriteResult:
        """
        Fetch the genre taxonomy and upsert it.

        Returns:
            BulkWriteResult of the upsert; failed counts invalid entries
        """
        retry = RetryHandler(self.controller, self.config.retry, sleep=self._sleep)
        response, _ = await retry.execute(self.client.fetch_genres)
        listing = parse_model(GenreListResponse, response.body, "genre list")
        if listing.status != "success" or listing.data is None:
            raise CrawlError(f"Invalid genre response: status {listing.status!r}")

        docs = []
        invalid = 0
        for raw in listing.data.items:
            try:
                genre = parse_model(GenreRef, raw, "genre")
            except ItemValidationError:
                invalid += 1
                continue
            if not validate_genre(genre.name.strip(), genre.slug.strip()):
                invalid += 1
                continue
            docs.append({'source_id': genre.id, 'name': genre.name.strip(), 'slug': genre.slug.strip()})

        result = await asyncio.to_thread(self.storage.bulk_upsert_genres, docs)
        result.failed += invalid
        logger.info(
            "Genres synced: %d new, %d updated, %d invalid",
            result.inserted, result.updated, result.failed
        )
        return result

    def reset_stats(self, category: Optional[str] = None):
        """Reset counters of one category, or of all."""
        if category is None:
            for pipeline in self._pipelines.values():
                pipeline.reset_stats()
            self.controller.reset()
        elif category in self._pipelines:
            self._pipelines[category].reset_stats()

    async def reset_progress(self, category: str) -> bool:
        """Forget the cursor and error log of a category."""
        return await asyncio.to_thread(self.progress.reset_progress, category)

    async def aclose(self):
        """Release the HTTP client and store connections."""
        await self.client.close()
        self.storage.close()
        self.progress.close()


def build_crawler(settings: CrawlerSettings) -> Crawler:
    """
    Wire a Crawler from environment settings.

    Args:
        settings: CrawlerSettings instance

    Returns:
        Crawler with real HTTP, database and Redis dependencies
    """
    config = settings.crawler_config()
    client = SourceApiClient(
        base_url=config.api_base_url,
        timeout=config.request_timeout,
        user_agent=config.user_agent,
    )
    storage = CatalogStorage(settings.database_url)
    progress = ProgressStore.from_url(settings.redis_url, ProgressStoreConfig())
    return Crawler(client=client, storage=storage, progress=progress, config=config)
