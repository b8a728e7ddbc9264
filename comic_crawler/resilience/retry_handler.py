"""
Retry handling for source API calls.
Every attempt is reported to the rate controller; the pause before the
next attempt depends on the action the controller recommends.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

from ..config import RetryConfig
from ..errors import CrawlError, UnknownFetchError
from ..models import RecommendedAction, ResponseAnalysis
from ..source_client import ApiResponse
from .rate_controller import RateAdaptiveController

logger = logging.getLogger(__name__)


class RetryHandler:
    """Executes API calls with action-aware exponential backoff."""

    def __init__(
        self,
        controller: RateAdaptiveController,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        should_stop: Optional[Callable[[], bool]] = None
    ):
        """
        Initialize retry handler.

        Args:
            controller: Rate controller that classifies each attempt
            config: RetryConfig instance, uses defaults if None
            sleep: Async sleep function
            should_stop: Returns True once the caller wants retries abandoned
        """
        self.controller = controller
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._should_stop = should_stop or (lambda: False)
        self.total_attempts = 0
        self.total_retries = 0

    def backoff_for(self, action: RecommendedAction, attempt: int) -> float:
        """
        Seconds to wait before retrying after the given attempt.

        Args:
            action: Action recommended for the failed attempt
            attempt: 1-based attempt number that just failed

        Returns:
            Delay in seconds
        """
        if action == RecommendedAction.BACKOFF:
            return min(self.config.backoff_base * (2 ** attempt), self.config.backoff_max)
        if action == RecommendedAction.PAUSE_AND_RETRY:
            return min(self.config.pause_base * (1.5 ** attempt), self.config.pause_max)
        return min(self.config.default_base * (2 ** attempt), self.config.default_max)

    async def execute(
        self,
        func: Callable[..., Awaitable[ApiResponse]],
        *args,
        **kwargs
    ) -> Tuple[ApiResponse, ResponseAnalysis]:
        """
        Execute an API call with retry logic.

        Args:
            func: Coroutine function returning an ApiResponse
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Tuple of (response, analysis) for the first successful attempt

        Raises:
            CrawlError: The last error once all attempts are exhausted or a
                stop was requested during backoff
        """
        last_error: Optional[CrawlError] = None

        for attempt in range(1, self.config.max_attempts + 1):
            self.total_attempts += 1
            started = time.monotonic()
            try:
                response = await func(*args, **kwargs)
            except CrawlError as e:
                if not e.elapsed_ms:
                    e.elapsed_ms = (time.monotonic() - started) * 1000
                analysis = self.controller.analyze_error(e)
                last_error = e
                logger.warning(
                    "Attempt %d/%d failed: %s [%s]",
                    attempt,
                    self.config.max_attempts,
                    e,
                    analysis.error_type.value if analysis.error_type else "UNKNOWN",
                )
            else:
                analysis = self.controller.analyze_response(response)
                return response, analysis

            if attempt >= self.config.max_attempts or self._should_stop():
                break
            wait = self.backoff_for(analysis.recommended_action, attempt)
            self.total_retries += 1
            logger.info("Retrying in %.1fs...", wait)
            await self._sleep(wait)
            if self._should_stop():
                logger.info("Retry abandoned, stop requested")
                break

        raise last_error or UnknownFetchError("Request failed without an error")

    def get_stats(self) -> dict:
        """
        Get retry handler statistics.

        Returns:
            Dict with handler state info
        """
        return {
            'total_attempts': self.total_attempts,
            'total_retries': self.total_retries,
            'max_attempts': self.config.max_attempts,
        }
