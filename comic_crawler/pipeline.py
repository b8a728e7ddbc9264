"""
Three-phase crawl pipeline for one category.

Phase 1 enumerates listing pages and queues unseen stories, Phase 2 fetches
story details and bulk-upserts them, Phase 3 flattens and upserts chapters.
Every HTTP call goes through the retry handler, which reports each outcome
to the rate controller; the controller's delay paces every next request.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from .config import PipelineConfig, RetryConfig
from .errors import CrawlAborted, CrawlError, ItemValidationError, StoreUnavailable
from .models import (
    CatalogItemRef,
    ProgressStatus,
    RecommendedAction,
    ResponseAnalysis,
    SessionStats,
)
from .resilience.progress_store import ProgressStore
from .resilience.rate_controller import RateAdaptiveController
from .resilience.retry_handler import RetryHandler
from .schemas import (
    ChapterContentResponse,
    ChapterEntry,
    ChapterServer,
    ListingItem,
    ListingResponse,
    StoryDetail,
    StoryDetailResponse,
    parse_model,
)
from .source_client import ApiResponse, SourceApiClient
from .storage import CatalogStorage
from .utils import (
    chunked,
    generate_chapter_stats,
    generate_story_stats,
    is_newer,
    map_story_status,
    normalize_image_url,
    parse_chapter_number,
    sanitize_content,
)

logger = logging.getLogger(__name__)


class ExistingIdCache:
    """
    Session-scoped index of known story slugs.

    A slug counts as known unless the listing reports a newer update time
    than the one stored; once a slug is queued it stays known until cleared.
    """

    def __init__(self):
        self._known: Dict[str, Optional[str]] = {}
        self.loaded = False

    def load(self, index: Dict[str, Optional[str]]):
        self._known = dict(index)
        self.loaded = True

    def is_known(self, ref: CatalogItemRef) -> bool:
        if ref.slug not in self._known:
            return False
        return not is_newer(ref.last_known_update_time, self._known[ref.slug])

    def add(self, ref: CatalogItemRef):
        self._known[ref.slug] = ref.last_known_update_time

    def clear(self):
        self._known.clear()
        self.loaded = False

    def __contains__(self, slug: str) -> bool:
        return slug in self._known

    def __len__(self) -> int:
        return len(self._known)


@dataclass
class QueuedStory:
    """A new listing entry waiting for its detail fetch."""
    ref: CatalogItemRef
    name: str
    thumb_url: str
    page: int


@dataclass
class ChapterJob:
    """A stored story whose chapters still need to be written."""
    slug: str
    servers: List[ChapterServer]
    page: int = 0


@dataclass
class EnumerationResult:
    """Outcome of Phase 1."""
    start_page: int
    end_page: int = 0
    pages_fetched: int = 0
    queued: int = 0
    duplicates: int = 0
    errors: int = 0
    reached_end: bool = False
    aborted: bool = False
    stop_reason: Optional[str] = None
    total_processed: int = 0


@dataclass
class PipelineOutcome:
    """Outcome of one full pipeline run."""
    enumeration: EnumerationResult
    stories_written: int = 0
    chapters_written: int = 0
    aborted_phases: List[str] = field(default_factory=list)
    pending_pages: List[int] = field(default_factory=list)


class CrawlPipeline:
    """Runs enumerate, detail fetch and chapter fetch for one category."""

    def __init__(
        self,
        category: str,
        client: SourceApiClient,
        storage: CatalogStorage,
        progress: ProgressStore,
        controller: RateAdaptiveController,
        config: Optional[PipelineConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the pipeline.

        Args:
            category: Listing category to crawl
            client: Source API client
            storage: Document store
            progress: Progress store
            controller: Rate controller shared by all phases
            config: PipelineConfig instance, uses defaults if None
            retry_config: RetryConfig for per-request retries
            sleep: Async sleep function used for pacing
            rng: Random source for synthetic stats
            clock: Monotonic clock in seconds
        """
        self.category = category
        self.client = client
        self.storage = storage
        self.progress = progress
        self.controller = controller
        self.config = config or PipelineConfig()
        self._sleep = sleep
        self.retry = RetryHandler(controller, retry_config, sleep=self._wait, should_stop=self._stop_requested)
        self._rng = rng or random.Random()
        self._clock = clock

        self.stats = SessionStats()
        self.cache = ExistingIdCache()
        self.story_queue: Deque[QueuedStory] = deque()
        self.chapter_queue: Deque[ChapterJob] = deque()

        self._running = False
        self._stop_reason: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._aborted_phase: Optional[str] = None
        self.deadline: Optional[float] = None
        self.current_phase: Optional[str] = None

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def stop(self, reason: str = "stop requested"):
        """Ask the pipeline to halt at the next page or batch boundary."""
        if self._running:
            logger.info("Stopping %s pipeline: %s", self.category, reason)
        self._running = False
        self._stop_reason = reason
        if self._stop_event is not None:
            self._stop_event.set()

    def _stop_requested(self) -> bool:
        return not self._running

    def cleanup(self):
        """Release queues and the id cache. Counters are kept."""
        self.story_queue.clear()
        self.chapter_queue.clear()
        self.cache.clear()
        self.current_phase = None

    def reset_stats(self):
        self.stats = SessionStats()

    def begin(self):
        """Arm the pipeline; phases only make progress while it is running."""
        self._running = True
        self._stop_reason = None
        self._aborted_phase = None
        self._stop_event = asyncio.Event()

    async def run(self) -> PipelineOutcome:
        """
        Run all three phases.

        Items still queued when the run ends (stop, time budget, abort) are
        not lost: the saved cursor is moved back to the lowest page holding
        one of them, so the next session lists that page again.

        Returns:
            PipelineOutcome for the session

        Raises:
            CrawlAborted: If an error storm aborted any phase
            StoreUnavailable: If the document store was lost
        """
        self.begin()
        outcome = None
        try:
            await self.load_existing_ids()
            enumeration = await self.enumerate()
            outcome = PipelineOutcome(enumeration=enumeration)
            if enumeration.aborted:
                outcome.aborted_phases.append("enumerate")

            outcome.stories_written = await self.fetch_details()
            if self._take_abort("details"):
                outcome.aborted_phases.append("details")

            outcome.chapters_written = await self.fetch_chapters()
            if self._take_abort("chapters"):
                outcome.aborted_phases.append("chapters")
        finally:
            self._running = False
            pending = self._pending_pages()
            if pending:
                await self._rewind_cursor(pending[0], len(self.story_queue) + len(self.chapter_queue))
            if outcome is not None:
                outcome.pending_pages = pending
            self.cleanup()

        if outcome.aborted_phases:
            raise CrawlAborted(
                f"{self.category}: error storm in {', '.join(outcome.aborted_phases)} "
                f"({self.controller.state.consecutive_errors} consecutive errors)"
            )
        return outcome

    def _take_abort(self, phase: str) -> bool:
        if self._aborted_phase == phase:
            self._aborted_phase = None
            return True
        return False

    def _pending_pages(self) -> List[int]:
        """Sorted listing pages that still have queued stories or chapter jobs."""
        pages = {queued.page for queued in self.story_queue}
        pages.update(job.page for job in self.chapter_queue if job.page)
        return sorted(pages)

    async def _rewind_cursor(self, page: int, pending: int):
        entry = await self._offload(self.progress.get_progress, self.category)
        if entry.status != ProgressStatus.RUNNING or entry.current_page <= page:
            return
        total = max(entry.total_processed - pending, 0)
        await self._offload(self.progress.save_progress, self.category, page, total)
        logger.info("Cursor for %s moved back to page %d, %d queued items unfinished", self.category, page, pending)

    # Helpers

    async def _offload(self, func, *args):
        """Run a blocking store call off the event loop."""
        return await asyncio.to_thread(func, *args)

    async def _wait(self, delay: float):
        """Sleep for delay seconds, returning early once stop() is called."""
        if self._stop_event is None:
            await self._sleep(delay)
            return
        if self._stop_event.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        if sleeper.done() and not sleeper.cancelled() and sleeper.exception() is not None:
            raise sleeper.exception()

    async def _pace(self, factor: float = 1.0, minimum: float = 0.0):
        delay = max(self.controller.current_delay_seconds() * factor, minimum)
        await self._wait(delay)

    async def _fetch(self, func, *args) -> Tuple[ApiResponse, ResponseAnalysis]:
        async def call():
            self.stats.api_calls_made += 1
            return await func(*args)
        return await self.retry.execute(call)

    def _in_error_storm(self) -> bool:
        last = self.controller.last_analysis
        return last is not None and last.recommended_action == RecommendedAction.PAUSE_AND_RETRY

    def _session_time_low(self) -> bool:
        if self.deadline is None:
            return False
        return self.deadline - self._clock() < self.config.session_timeout_margin

    async def _record_error(self, page: int, error: Exception, **context):
        self.stats.errors += 1
        await self._offload(self.progress.log_error, self.category, page, error, context)

    async def _check_api_health(self):
        self.stats.api_calls_made += 1
        health = await self.client.check_health()
        if not health['healthy']:
            logger.warning("Source API looks unhealthy (%s), continuing with backoff", health.get('error') or health.get('status'))

    # Phase 1

    async def load_existing_ids(self):
        """Load known slugs from the document store into the cache."""
        index = await self._offload(self.storage.load_story_index)
        self.cache.load(index)
        logger.info("Loaded %d existing story ids for %s", len(self.cache), self.category)

    def _parse_listing(self, response: ApiResponse) -> Tuple[List[ListingItem], int]:
        """
        Validate a listing page.

        Returns:
            Tuple of (valid items, invalid item count); an invalid envelope
            counts as an empty page
        """
        try:
            listing = parse_model(ListingResponse, response.body, "listing")
        except ItemValidationError as e:
            logger.warning("Invalid listing response: %s", e)
            return [], 0
        if not listing.is_success:
            return [], 0

        items = []
        invalid = 0
        for raw in listing.raw_items:
            try:
                items.append(parse_model(ListingItem, raw, "listing item"))
            except ItemValidationError as e:
                invalid += 1
                logger.debug("Skipping malformed listing item: %s", e)
        return items, invalid

    def _enqueue_new(self, items: List[ListingItem], page: int) -> Tuple[int, int]:
        """
        Queue every unseen item of a page. Returns (queued, duplicates).

        The per-session item cap is only checked between pages, so a page is
        never split across sessions.
        """
        queued = 0
        duplicates = 0
        for item in items:
            ref = item.to_ref()
            if self.cache.is_known(ref):
                duplicates += 1
                continue
            self.cache.add(ref)
            self.story_queue.append(QueuedStory(ref=ref, name=item.name, thumb_url=item.thumb_url, page=page))
            queued += 1
        return queued, duplicates

    async def enumerate(self) -> EnumerationResult:
        """
        Phase 1: walk listing pages from the stored cursor.

        Returns:
            EnumerationResult describing where and why the walk stopped
        """
        self.current_phase = "enumerate"
        progress = await self._offload(self.progress.get_progress, self.category)
        page = progress.current_page
        total = progress.total_processed if progress.status == ProgressStatus.RUNNING else 0

        result = EnumerationResult(start_page=page)
        consecutive_empty = 0
        logger.info("Phase 1 [%s]: starting at page %d", self.category, page)

        while self._running:
            if len(self.story_queue) >= self.config.max_items_per_session:
                result.stop_reason = "item limit reached"
                break
            if self._session_time_low():
                result.stop_reason = "session time budget nearly spent"
                break

            try:
                response, analysis = await self._fetch(self.client.fetch_listing, self.category, page)
            except CrawlError as e:
                if not self._running:
                    break
                result.errors += 1
                logger.error("Page %d of %s failed: %s", page, self.category, e)
                await self._record_error(page, e, phase="enumerate")
                if self._in_error_storm():
                    result.aborted = True
                    result.stop_reason = "error storm"
                    break
                page += 1
                await self._pace()
                continue

            items, invalid = self._parse_listing(response)
            self.stats.validation_skipped += invalid
            result.pages_fetched += 1

            if not items:
                consecutive_empty += 1
                logger.info("Empty page %d for %s (%d consecutive)", page, self.category, consecutive_empty)
                if analysis.recommended_action == RecommendedAction.CHECK_API_HEALTH:
                    await self._check_api_health()
                if consecutive_empty >= self.config.empty_page_limit:
                    result.reached_end = True
                    result.stop_reason = "end of listing"
                    break
                page += 1
                await self._pace()
                continue

            consecutive_empty = 0
            queued, duplicates = self._enqueue_new(items, page)
            result.queued += queued
            result.duplicates += duplicates
            self.stats.pages_processed += 1
            self.stats.stories_queued += queued
            self.stats.duplicates_skipped += duplicates
            total += queued

            # Checkpoint only after the page is fully handled
            await self._offload(self.progress.save_progress, self.category, page + 1, total)
            logger.info(
                "Page %d of %s: %d new, %d known (queue %d)",
                page, self.category, queued, duplicates, len(self.story_queue)
            )
            page += 1
            await self._pace()

        if not self._running and result.stop_reason is None:
            result.stop_reason = self._stop_reason or "stopped"
        result.end_page = page
        result.total_processed = total
        return result

    # Phase 2

    async def _fetch_story_detail(self, queued: QueuedStory) -> StoryDetail:
        response, _ = await self._fetch(self.client.fetch_story, queued.ref.slug)
        detail = parse_model(StoryDetailResponse, response.body, f"story {queued.ref.slug}")
        if detail.status != "success":
            raise ItemValidationError(f"story {queued.ref.slug}: status {detail.status!r}")
        return detail.data.item

    def _prepare_story_doc(self, queued: QueuedStory, detail: StoryDetail, has_chapters: bool = False) -> dict:
        doc = {
            'source_id': detail.id or queued.ref.id,
            'slug': queued.ref.slug,
            'name': queued.name or detail.name,
            'origin_name': detail.origin_name,
            'content': sanitize_content(detail.content),
            'status': map_story_status(detail.status),
            'thumb_url': normalize_image_url(queued.thumb_url or detail.thumb_url),
            'author': detail.author,
            'genres': [
                {'source_id': g.id, 'name': g.name, 'slug': g.slug}
                for g in detail.category if g.slug
            ],
            'source_updated_at': queued.ref.last_known_update_time or detail.updated_at,
            'list_type': self.category,
            'chapters_pending': has_chapters,
        }
        doc.update(generate_story_stats(self._rng))
        return doc

    async def fetch_details(self) -> int:
        """
        Phase 2: fetch details for queued stories and upsert them in batches.

        Returns:
            Number of stories committed (inserted or updated)
        """
        self.current_phase = "details"
        written = 0
        batch_size = self.config.detail_batch_size
        total_batches = (len(self.story_queue) + batch_size - 1) // batch_size
        batch_no = 0

        while self.story_queue and self._running:
            batch_no += 1
            batch = [self.story_queue.popleft() for _ in range(min(batch_size, len(self.story_queue)))]
            docs = []
            jobs = []
            logger.info("Phase 2 [%s]: batch %d/%d (%d stories)", self.category, batch_no, total_batches, len(batch))

            for index, queued in enumerate(batch):
                if not self._running:
                    self.story_queue.extendleft(reversed(batch[index:]))
                    break
                try:
                    detail = await self._fetch_story_detail(queued)
                except ItemValidationError as e:
                    self.stats.validation_skipped += 1
                    logger.warning("Skipping %s: %s", queued.ref.slug, e)
                except CrawlError as e:
                    if not self._running:
                        self.story_queue.extendleft(reversed(batch[index:]))
                        break
                    logger.error("Detail fetch failed for %s: %s", queued.ref.slug, e)
                    await self._record_error(queued.page, e, phase="details", slug=queued.ref.slug)
                    if self._in_error_storm():
                        self._aborted_phase = "details"
                        self.story_queue.extendleft(reversed(batch[index + 1:]))
                        break
                else:
                    has_chapters = any(server.server_data for server in detail.chapters)
                    docs.append(self._prepare_story_doc(queued, detail, has_chapters))
                    if has_chapters:
                        jobs.append(ChapterJob(slug=queued.ref.slug, servers=detail.chapters, page=queued.page))

                if index < len(batch) - 1:
                    await self._pace(self.config.detail_delay_factor, self.config.min_detail_delay)

            if docs:
                result = await self._offload(self.storage.bulk_upsert_stories, docs)
                written += result.committed
                self.stats.new_stories += result.inserted
                self.stats.updated_stories += result.updated
                self.stats.duplicates_skipped += result.duplicates_skipped
                self.stats.validation_skipped += result.failed
                self.chapter_queue.extend(jobs)
                logger.info(
                    "Stories saved: %d new, %d updated, %d duplicates skipped",
                    result.inserted, result.updated, result.duplicates_skipped
                )

            if self._aborted_phase == "details":
                break
            if self.story_queue and self._running:
                await self._pace(0.5)

        return written

    # Phase 3

    def _prepare_chapter_docs(self, servers: List[ChapterServer], story_views: int) -> Tuple[List[dict], int]:
        """
        Flatten server groups into chapter documents with sequence numbers.

        The first server listing a sequence number wins.

        Returns:
            Tuple of (documents ordered by sequence number, skipped count)
        """
        docs: Dict[float, dict] = {}
        skipped = 0
        for server in servers:
            for entry in server.server_data:
                sequence = parse_chapter_number(entry.chapter_name)
                if sequence is None:
                    logger.warning("Invalid chapter number: %r", entry.chapter_name)
                    skipped += 1
                    continue
                if sequence in docs:
                    skipped += 1
                    continue
                docs[sequence] = self._chapter_doc(entry, server.server_name, sequence, story_views)
        return [docs[key] for key in sorted(docs)], skipped

    def _chapter_doc(self, entry: ChapterEntry, server_name: str, sequence: float, story_views: int) -> dict:
        doc = {
            'sequence_number': sequence,
            'chapter_name': entry.chapter_name or f"Chapter {sequence:g}",
            'chapter_title': entry.chapter_title,
            'filename': entry.filename,
            'server_name': server_name or "Server #1",
            'chapter_api_data': entry.chapter_api_data,
        }
        doc.update(generate_chapter_stats(story_views, self._rng))
        return doc

    async def _attach_chapter_images(self, job: ChapterJob, docs: List[dict]):
        for doc in docs:
            if not self._running or self._aborted_phase:
                return
            url = doc.get('chapter_api_data')
            if not url:
                continue
            try:
                response, _ = await self._fetch(self.client.fetch_chapter, url)
                content = parse_model(ChapterContentResponse, response.body, f"chapter {doc['chapter_name']}")
                doc['images'] = content.image_urls()
            except ItemValidationError as e:
                logger.warning("No content for %s chapter %s: %s", job.slug, doc['chapter_name'], e)
            except CrawlError as e:
                await self._record_error(job.page, e, phase="chapters", slug=job.slug)
                if self._in_error_storm():
                    self._aborted_phase = "chapters"
                    return
            await self._pace(self.config.detail_delay_factor, self.config.min_detail_delay)

    async def _process_chapter_job(self, job: ChapterJob, semaphore: asyncio.Semaphore) -> Optional[int]:
        """Write one story's chapters. Returns None when a stop left the job undone."""
        async with semaphore:
            if not self._running or self._aborted_phase:
                return None
            found = await self._offload(self.storage.find_story, job.slug)
            if found is None:
                logger.warning("Story %s not stored, skipping its chapters", job.slug)
                return 0
            story_id, story_views = found

            docs, skipped = self._prepare_chapter_docs(job.servers, story_views)
            self.stats.validation_skipped += skipped
            if self.config.fetch_chapter_content:
                await self._attach_chapter_images(job, docs)
                if not self._running:
                    return None

            written = 0
            for chunk in chunked(docs, self.config.chapter_write_batch):
                result = await self._offload(self.storage.bulk_upsert_chapters, story_id, chunk)
                written += result.committed
                self.stats.new_chapters += result.inserted
                self.stats.updated_chapters += result.updated
                self.stats.duplicates_skipped += result.duplicates_skipped
            await self._offload(self.storage.mark_chapters_synced, story_id)
            logger.debug("Chapters for %s: %d written", job.slug, written)
            return written

    async def fetch_chapters(self) -> int:
        """
        Phase 3: write chapters for every story queued by Phase 2.

        Returns:
            Number of chapters committed
        """
        self.current_phase = "chapters"
        written = 0
        semaphore = asyncio.Semaphore(self.config.chapter_concurrency)

        while self.chapter_queue and self._running and not self._aborted_phase:
            batch = [self.chapter_queue.popleft() for _ in range(min(self.config.chapter_batch_size, len(self.chapter_queue)))]
            results = await asyncio.gather(
                *(self._process_chapter_job(job, semaphore) for job in batch),
                return_exceptions=True
            )
            undone = []
            for job, outcome in zip(batch, results):
                if isinstance(outcome, StoreUnavailable):
                    raise outcome
                if isinstance(outcome, Exception):
                    self.stats.errors += 1
                    logger.error("Chapter processing failed for %s: %s", job.slug, outcome)
                    continue
                if outcome is None:
                    undone.append(job)
                    continue
                written += outcome
            self.chapter_queue.extendleft(reversed(undone))

            if self.chapter_queue and self._running:
                await self._pace(0.5)

        return written

    # Retry of failed pages

    async def retry_pages(self, pages: List[int]) -> List[int]:
        """
        Re-fetch listing pages recorded in the error log.

        New items go through the normal dedup path and Phases 2 and 3. A
        page leaves the error log only once all of its items are stored.

        Args:
            pages: Candidate pages, at most retry_failed_limit are tried

        Returns:
            Pages that were fetched and fully processed
        """
        self.begin()
        fetched = []
        recovered = []
        try:
            await self.load_existing_ids()
            self.current_phase = "retry"
            for page in pages[:self.config.retry_failed_limit]:
                if not self._running:
                    break
                try:
                    response, _ = await self._fetch(self.client.fetch_listing, self.category, page)
                except CrawlError as e:
                    if not self._running:
                        break
                    logger.error("Retry of page %d failed: %s", page, e)
                    self.stats.errors += 1
                    if self._in_error_storm():
                        break
                    await self._pace()
                    continue

                items, invalid = self._parse_listing(response)
                self.stats.validation_skipped += invalid
                queued, duplicates = self._enqueue_new(items, page)
                self.stats.stories_queued += queued
                self.stats.duplicates_skipped += duplicates
                fetched.append(page)
                logger.info("Refetched page %d of %s: %d new", page, self.category, queued)
                await self._pace()

            await self.fetch_details()
            await self.fetch_chapters()

            pending = set(self._pending_pages())
            for page in fetched:
                if page in pending:
                    continue
                await self._offload(self.progress.clear_failed_page, self.category, page)
                recovered.append(page)
        finally:
            self._running = False
            self.cleanup()
        return recovered

    def get_stats(self) -> dict:
        """
        Get pipeline statistics.

        Returns:
            Dict with counters, queue sizes and controller state
        """
        return {
            'category': self.category,
            'running': self._running,
            'phase': self.current_phase,
            'stats': self.stats.to_dict(),
            'story_queue': len(self.story_queue),
            'chapter_queue': len(self.chapter_queue),
            'known_ids': len(self.cache),
            'rate_control': self.controller.get_stats(),
            'retry': self.retry.get_stats(),
        }
