"""
Category worker process.

Each category runs in its own process with its own Crawler and event loop.
The worker reads Commands from its inbox and reports upward through the
shared outbox; it exits 0 after a finished session and 1 on escalation.
"""

import asyncio
import logging
import queue
import signal
import sys
from typing import Any, Optional

from .config import CrawlerSettings
from .crawler import Crawler, build_crawler
from .errors import CrawlError
from .models import ErrorType
from .messages import (
    Command,
    ErrorMessage,
    HealthMessage,
    LogMessage,
    ShutdownAck,
    StatusMessage,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


class ChannelLogHandler(logging.Handler):
    """Forwards log records to the supervisor as LogMessage."""

    def __init__(self, category: str, outbox: Any, level: int = logging.INFO):
        super().__init__(level)
        self.category = category
        self.outbox = outbox

    def emit(self, record: logging.LogRecord):
        try:
            self.outbox.put_nowait(LogMessage(
                category=self.category,
                level=record.levelno,
                logger_name=record.name,
                message=self.format(record),
                timestamp=record.created,
            ))
        except (queue.Full, ValueError, OSError):
            self.handleError(record)


def memory_usage_mb() -> Optional[float]:
    """Peak resident memory of this process, where the platform reports it."""
    if sys.platform == 'win32':
        return None
    import resource
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    return peak / (1024 * 1024) if sys.platform == 'darwin' else peak / 1024


def apply_memory_limit(limit_mb: Optional[int]):
    """Cap the address space of this process."""
    if not limit_mb or sys.platform == 'win32':
        return
    import resource
    limit = int(limit_mb) * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as e:
        logger.warning("Could not apply %dMB memory limit: %s", limit_mb, e)


class CategoryWorker:
    """Command loop around one Crawler for one category."""

    def __init__(
        self,
        category: str,
        crawler: Crawler,
        inbox: Any,
        outbox: Any,
        poll_interval: float = 0.5
    ):
        """
        Initialize the worker.

        Args:
            category: Category owned by this worker
            crawler: Crawler instance used for sessions
            inbox: Queue of Command values from the supervisor
            outbox: Queue receiving upward messages
            poll_interval: Seconds between inbox checks
        """
        self.category = category
        self.crawler = crawler
        self.inbox = inbox
        self.outbox = outbox
        self.poll_interval = poll_interval
        self._session: Optional[asyncio.Task] = None
        self._stopping = False

    def send(self, message):
        self.outbox.put(message)

    def _status(self) -> StatusMessage:
        status = self.crawler.get_status()
        return StatusMessage(
            category=self.category,
            status=status['status'],
            stats=status['categories'].get(self.category, {}),
        )

    async def _run_session(self):
        # A STOP read in the same poll as START wins
        if self._stopping:
            return None
        result = await self.crawler.start_crawl(self.category)
        if result.status == "error":
            raise CrawlError(result.stop_reason or "session failed")

        if not self._stopping:
            failed = await self.crawler.get_error_log(self.category)
            if failed.pages:
                await self.crawler.retry_failed_pages(self.category)
        return result

    def _handle_command(self, command: Command):
        if command == Command.START:
            if self._session is None:
                logger.info("Worker %s starting session", self.category)
                self._session = asyncio.create_task(self._run_session())
                self.send(StatusMessage(category=self.category, status="running"))
        elif command == Command.STOP:
            self._stopping = True
            self.crawler.pause("stop requested by supervisor")
        elif command == Command.STATUS:
            self.send(self._status())
        elif command == Command.HEALTH_CHECK:
            self.send(HealthMessage(
                category=self.category,
                healthy=self.crawler.controller.is_healthy(),
                phase=self.crawler.get_status()['phase'],
                memory_mb=memory_usage_mb(),
            ))
        else:
            logger.warning("Unknown command: %r", command)

    def _drain_inbox(self):
        while True:
            try:
                command = self.inbox.get_nowait()
            except queue.Empty:
                return
            self._handle_command(Command(command))

    async def run(self) -> int:
        """
        Serve commands until the session ends or a stop is requested.

        Returns:
            Process exit code
        """
        try:
            while True:
                self._drain_inbox()

                if self._session is not None and self._session.done():
                    return self._finish_session()
                if self._stopping and self._session is None:
                    self.send(ShutdownAck(category=self.category))
                    return EXIT_OK

                await asyncio.sleep(self.poll_interval)
        finally:
            await self.crawler.aclose()

    def _finish_session(self) -> int:
        error = self._session.exception()
        if error is not None:
            logger.error("Worker %s failed: %s", self.category, error)
            error_type = getattr(error, 'error_type', ErrorType.UNKNOWN)
            self.send(ErrorMessage(
                category=self.category,
                error_type=error_type.value if isinstance(error_type, ErrorType) else str(error_type),
                message=str(error),
            ))
            return EXIT_ERROR

        result = self._session.result()
        if result is None:
            logger.info("Worker %s stopped before its session started", self.category)
            self.send(StatusMessage(category=self.category, status="stopped"))
        else:
            self.send(StatusMessage(category=self.category, status="completed", stats=result.to_dict()))
        if self._stopping:
            self.send(ShutdownAck(category=self.category))
        return EXIT_OK


def worker_main(category: str, settings_data: dict, inbox: Any, outbox: Any):
    """
    Process entry point for one category worker.

    Args:
        category: Category to crawl
        settings_data: CrawlerSettings fields, passed as a plain dict
        inbox: Command queue of this worker
        outbox: Shared upward message queue
    """
    # The supervisor coordinates shutdown through STOP commands
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    worker_settings = CrawlerSettings(**settings_data)

    handler = ChannelLogHandler(category, outbox, getattr(logging, worker_settings.log_level.upper(), logging.INFO))
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(handler.level)

    apply_memory_limit(worker_settings.memory_limit_mb)

    try:
        crawler = build_crawler(worker_settings)
    except CrawlError as e:
        outbox.put(ErrorMessage(category=category, error_type=e.error_type.value, message=str(e)))
        sys.exit(EXIT_ERROR)

    worker = CategoryWorker(category, crawler, inbox, outbox)
    sys.exit(asyncio.run(worker.run()))
