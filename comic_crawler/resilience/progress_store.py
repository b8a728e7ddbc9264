"""
Progress persistence in Redis.
Stores per-category crawl cursors, error logs and session stats under
namespaced keys, each with an expiry so abandoned crawls clean themselves up.
"""

import itertools
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from ..config import ProgressStoreConfig
from ..models import CrawlProgress, ErrorLogEntry, ErrorType, FailedPages, ProgressStatus

logger = logging.getLogger(__name__)


class ProgressStore:
    """Manages resumable crawl state in a Redis key-value cache."""

    def __init__(
        self,
        client: Redis,
        config: Optional[ProgressStoreConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the store.

        Args:
            client: Redis client created with decode_responses=True
            config: ProgressStoreConfig instance, uses defaults if None
            clock: Wall-clock function returning seconds
        """
        self._client = client
        self.config = config or ProgressStoreConfig()
        self._clock = clock
        self._seq = itertools.count()

    @classmethod
    def from_url(cls, url: str, config: Optional[ProgressStoreConfig] = None) -> "ProgressStore":
        """Create a store connected to the Redis server at url."""
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        return cls(client, config)

    # Key layout

    def _progress_key(self, category: str) -> str:
        return f"{self.config.key_prefix}:progress:{category}"

    def _error_prefix(self, category: str) -> str:
        return f"{self.config.key_prefix}:errors:{category}:"

    def _session_key(self, session_id: str) -> str:
        return f"{self.config.key_prefix}:session:{session_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    # Progress

    def save_progress(
        self,
        category: str,
        page: int,
        total_processed: int,
        status: ProgressStatus = ProgressStatus.RUNNING,
        **extra
    ) -> bool:
        """
        Overwrite the cursor for a category.

        Args:
            category: Category being crawled
            page: Next page to fetch
            total_processed: Items processed so far
            status: Progress status to record
            **extra: Additional fields stored alongside the cursor

        Returns:
            True if saved, False if the store was unreachable
        """
        payload = {
            'category': category,
            'current_page': max(1, int(page)),
            'total_processed': max(0, int(total_processed)),
            'status': ProgressStatus(status).value,
            'last_updated_at': self._now_iso(),
            'timestamp': self._now_ms(),
            **extra,
        }
        try:
            self._client.setex(self._progress_key(category), self.config.progress_ttl, json.dumps(payload))
            logger.debug("Saved progress for %s: page %d, total %d", category, payload['current_page'], payload['total_processed'])
            return True
        except RedisError as e:
            logger.error("Failed to save progress for %s: %s", category, e)
            return False

    def get_progress(self, category: str) -> CrawlProgress:
        """
        Read the cursor for a category.

        Never raises: a missing entry yields a fresh cursor, an unreachable
        store yields a fresh cursor with status error.

        Args:
            category: Category to look up

        Returns:
            CrawlProgress for the category
        """
        try:
            raw = self._client.get(self._progress_key(category))
        except RedisError as e:
            logger.error("Failed to read progress for %s: %s", category, e)
            return CrawlProgress(category=category, status=ProgressStatus.ERROR, error=str(e))

        if not raw:
            return CrawlProgress(category=category)

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return CrawlProgress(
                category=category,
                current_page=max(1, int(data.get('current_page', 1))),
                total_processed=max(0, int(data.get('total_processed', 0))),
                status=ProgressStatus(data.get('status', ProgressStatus.NEW.value)),
                last_updated_at=data.get('last_updated_at'),
                final_stats=data.get('final_stats'),
            )
        except (ValueError, TypeError) as e:
            logger.warning("Corrupt progress entry for %s: %s", category, e)
            return CrawlProgress(category=category)

    def mark_completed(self, category: str, final_stats: dict) -> bool:
        """
        Record that a category reached the end of its listing.

        The next session starts again from page 1.

        Args:
            category: Completed category
            final_stats: Session statistics to keep with the entry

        Returns:
            True if saved
        """
        payload = {
            'category': category,
            'current_page': 1,
            'total_processed': int(final_stats.get('total_processed', 0)),
            'status': ProgressStatus.COMPLETED.value,
            'last_updated_at': self._now_iso(),
            'completed_at': self._now_iso(),
            'timestamp': self._now_ms(),
            'final_stats': final_stats,
        }
        try:
            self._client.setex(self._progress_key(category), self.config.completed_ttl, json.dumps(payload, default=str))
            logger.info("Marked %s as completed", category)
            return True
        except RedisError as e:
            logger.error("Failed to mark %s completed: %s", category, e)
            return False

    def reset_progress(self, category: str) -> bool:
        """
        Remove the cursor and error log of a category.

        Returns:
            True if the store accepted the deletes
        """
        try:
            keys = [self._progress_key(category)]
            keys.extend(self._client.scan_iter(match=f"{self._error_prefix(category)}*"))
            self._client.delete(*keys)
            logger.info("Reset progress for %s", category)
            return True
        except RedisError as e:
            logger.error("Failed to reset progress for %s: %s", category, e)
            return False

    def get_all_progress(self) -> Dict[str, CrawlProgress]:
        """
        Get the cursor of every category that has one.

        Returns:
            Dict of category -> CrawlProgress
        """
        prefix = f"{self.config.key_prefix}:progress:"
        result = {}
        try:
            keys = sorted(self._client.scan_iter(match=f"{prefix}*"))
        except RedisError as e:
            logger.error("Failed to list progress entries: %s", e)
            return result

        for key in keys:
            category = key[len(prefix):]
            result[category] = self.get_progress(category)
        return result

    # Error log

    def log_error(self, category: str, page: int, error: Exception, context: Optional[dict] = None) -> bool:
        """
        Append one failure to the error log of a category.

        Args:
            category: Category being crawled
            page: Page the failure belongs to
            error: The exception
            context: Optional extra diagnostics

        Returns:
            True if logged
        """
        error_type = getattr(error, 'error_type', ErrorType.UNKNOWN)
        entry = {
            'category': category,
            'page': int(page),
            'error_type': error_type.value if isinstance(error_type, ErrorType) else str(error_type),
            'message': str(error)[:500],
            'timestamp': self._now_iso(),
            'timestamp_ms': self._now_ms(),
            'context': context or {},
        }
        key = f"{self._error_prefix(category)}{entry['timestamp_ms']}-{next(self._seq)}"
        try:
            self._client.setex(key, self.config.error_ttl, json.dumps(entry, default=str))
            return True
        except RedisError as e:
            logger.error("Failed to log error for %s page %s: %s", category, page, e)
            return False

    def _load_errors(self, pattern: str) -> List[tuple]:
        """Load (key, entry) pairs matching a key pattern, oldest first."""
        loaded = []
        for key in self._client.scan_iter(match=pattern):
            raw = self._client.get(key)
            if not raw:
                continue
            try:
                loaded.append((key, json.loads(raw)))
            except ValueError:
                logger.warning("Skipping corrupt error entry %s", key)
        loaded.sort(key=lambda pair: pair[1].get('timestamp_ms', 0))
        return loaded

    def get_failed_pages(self, category: str) -> FailedPages:
        """
        Collect retry candidates from the error log.

        Returns:
            FailedPages with distinct pages (ascending) and the entries
        """
        try:
            loaded = self._load_errors(f"{self._error_prefix(category)}*")
        except RedisError as e:
            logger.error("Failed to read error log for %s: %s", category, e)
            return FailedPages()

        errors = [
            ErrorLogEntry(
                category=data.get('category', category),
                page=int(data.get('page', 0)),
                error_type=data.get('error_type', ErrorType.UNKNOWN.value),
                message=data.get('message', ''),
                timestamp=data.get('timestamp', ''),
                context=data.get('context') or {},
            )
            for _, data in loaded
        ]
        pages = sorted({e.page for e in errors if e.page > 0})
        return FailedPages(pages=pages, errors=errors)

    def clear_failed_page(self, category: str, page: int) -> int:
        """
        Remove error entries of one page after a successful retry.

        Returns:
            Number of entries removed
        """
        try:
            stale = [key for key, data in self._load_errors(f"{self._error_prefix(category)}*") if int(data.get('page', 0)) == page]
            if stale:
                self._client.delete(*stale)
            return len(stale)
        except RedisError as e:
            logger.error("Failed to clear errors for %s page %d: %s", category, page, e)
            return 0

    def get_error_stats(self, category: Optional[str] = None, hours: int = 24) -> dict:
        """
        Summarize recent errors.

        Args:
            category: Restrict to one category, or None for all
            hours: Look-back window

        Returns:
            Dict with total, by_category, by_type and the 10 most recent entries
        """
        pattern = f"{self._error_prefix(category)}*" if category else f"{self.config.key_prefix}:errors:*"
        cutoff = self._now_ms() - hours * 3600 * 1000
        stats = {'total': 0, 'by_category': {}, 'by_type': {}, 'recent': []}

        try:
            loaded = self._load_errors(pattern)
        except RedisError as e:
            logger.error("Failed to read error stats: %s", e)
            return stats

        recent = [data for _, data in loaded if data.get('timestamp_ms', 0) >= cutoff]
        for data in recent:
            cat = data.get('category', 'unknown')
            etype = data.get('error_type', ErrorType.UNKNOWN.value)
            stats['by_category'][cat] = stats['by_category'].get(cat, 0) + 1
            stats['by_type'][etype] = stats['by_type'].get(etype, 0) + 1
        stats['total'] = len(recent)
        stats['recent'] = recent[-10:]
        return stats

    # Session stats

    def save_session_stats(self, session_id: str, stats: dict) -> bool:
        """Store statistics of one crawl session."""
        payload = {**stats, 'session_id': session_id, 'saved_at': self._now_iso(), 'timestamp': self._now_ms()}
        try:
            self._client.setex(self._session_key(session_id), self.config.session_ttl, json.dumps(payload, default=str))
            return True
        except RedisError as e:
            logger.error("Failed to save session stats %s: %s", session_id, e)
            return False

    def get_session_stats(self, session_id: str) -> Optional[dict]:
        """Read statistics of one crawl session, or None."""
        try:
            raw = self._client.get(self._session_key(session_id))
        except RedisError as e:
            logger.error("Failed to read session stats %s: %s", session_id, e)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    # Maintenance

    def _entry_timestamp_ms(self, key: str) -> Optional[int]:
        raw = self._client.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        ts = data.get('timestamp_ms', data.get('timestamp'))
        return ts if isinstance(ts, (int, float)) else None

    def cleanup(self, retention_days: int = 30) -> int:
        """
        Remove entries older than the retention window or without expiry.

        Args:
            retention_days: Maximum age to keep

        Returns:
            Number of keys removed
        """
        cutoff = self._now_ms() - retention_days * 24 * 3600 * 1000
        removed = 0
        try:
            for key in list(self._client.scan_iter(match=f"{self.config.key_prefix}:*")):
                ttl = self._client.ttl(key)
                if ttl == -2:
                    continue
                if ttl == -1:
                    self._client.delete(key)
                    removed += 1
                    continue
                ts = self._entry_timestamp_ms(key)
                if ts is not None and ts < cutoff:
                    self._client.delete(key)
                    removed += 1
        except RedisError as e:
            logger.error("Cleanup failed after %d removals: %s", removed, e)
            return removed

        if removed:
            logger.info("Cleaned up %d stale crawler keys", removed)
        return removed

    def health_check(self) -> dict:
        """
        Ping the store.

        Returns:
            Dict with healthy, latency_ms and error
        """
        started = time.monotonic()
        try:
            self._client.ping()
        except RedisError as e:
            return {'healthy': False, 'latency_ms': None, 'error': str(e)}
        return {'healthy': True, 'latency_ms': round((time.monotonic() - started) * 1000, 2), 'error': None}

    def close(self):
        """Close the Redis connection."""
        try:
            self._client.close()
        except RedisError as e:
            logger.warning("Error closing progress store: %s", e)
