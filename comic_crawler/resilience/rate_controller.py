"""
Adaptive rate control for the source API.
Classifies every HTTP outcome and turns the running state into a
recommended action and an inter-request delay.
"""

import logging
import random
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from ..config import RateControlConfig
from ..errors import (
    ConnectionFailure,
    FetchTimeout,
    RateLimited,
    ServiceUnavailable,
    SourceHttpError,
)
from ..models import (
    ErrorType,
    HistoryEntry,
    RateLimitInfo,
    RateState,
    RecommendedAction,
    ResponseAnalysis,
    ResponseStatus,
)
from ..source_client import ApiResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = frozenset({429, 502, 503, 504, 509})

THROTTLE_PHRASES = (
    'rate limit',
    'too many requests',
    'quota exceeded',
    'api limit',
    'throttled',
    'slow down',
)

ERROR_ESCALATION_THRESHOLD = 5
EMPTY_PAGE_THRESHOLD = 3

# Higher rank wins when two rules disagree
_SEVERITY = {
    RecommendedAction.CONTINUE: 0,
    RecommendedAction.RETRY: 1,
    RecommendedAction.REDUCE_SPEED: 2,
    RecommendedAction.CHECK_API_HEALTH: 3,
    RecommendedAction.SLOW_DOWN: 4,
    RecommendedAction.WAIT: 5,
    RecommendedAction.BACKOFF: 6,
    RecommendedAction.PAUSE_AND_RETRY: 7,
}


def _more_severe(current: RecommendedAction, candidate: RecommendedAction) -> RecommendedAction:
    return candidate if _SEVERITY[candidate] > _SEVERITY[current] else current


class RateAdaptiveController:
    """Observes request outcomes and recommends pacing for the next request."""

    def __init__(
        self,
        config: Optional[RateControlConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize controller with configuration.

        Args:
            config: RateControlConfig instance, uses defaults if None
            rng: Random source for jitter
            clock: Wall-clock function returning seconds
        """
        self.config = config or RateControlConfig()
        self._rng = rng or random.Random()
        self._clock = clock

        self._base_ms = self.config.base_delay * 1000
        self._max_ms = self.config.max_delay * 1000
        self._min_ms = self.config.min_delay * 1000

        self.state = RateState(current_delay_ms=self._base_ms)
        self._history: Deque[HistoryEntry] = deque(maxlen=self.config.history_size)
        self._response_times: Deque[float] = deque(maxlen=self.config.response_window)
        self._last_analysis: Optional[ResponseAnalysis] = None
        self._error_patterns: Dict[str, int] = self._empty_patterns()

    @staticmethod
    def _empty_patterns() -> Dict[str, int]:
        return {
            'rate_limit': 0,
            'timeout': 0,
            'server_error': 0,
            'connection_error': 0,
        }

    @property
    def last_analysis(self) -> Optional[ResponseAnalysis]:
        return self._last_analysis

    @property
    def is_rate_limited(self) -> bool:
        return self.state.is_rate_limited

    def analyze_response(self, response: ApiResponse, elapsed_ms: Optional[float] = None) -> ResponseAnalysis:
        """
        Classify a completed HTTP exchange.

        Rules are checked in priority order; the first match sets the status,
        but the empty-page and error counters are always updated.

        Args:
            response: The completed exchange
            elapsed_ms: Response time, defaults to response.elapsed_ms

        Returns:
            ResponseAnalysis for this exchange
        """
        elapsed = response.elapsed_ms if elapsed_ms is None else elapsed_ms
        self._record_response_time(elapsed)

        status = ResponseStatus.SUCCESS
        detected = False
        confidence = 0.0
        action = RecommendedAction.CONTINUE
        error_type = None
        is_error = False

        if response.status_code in RATE_LIMIT_STATUSES:
            status = ResponseStatus.RATE_LIMITED
            detected = True
            confidence = 0.95
            action = RecommendedAction.BACKOFF
            is_error = True
            if response.status_code in (502, 503, 504):
                error_type = ErrorType.SERVICE_UNAVAILABLE
            else:
                error_type = ErrorType.RATE_LIMIT
            self._register_error(error_type)
        elif elapsed > self.config.very_slow_threshold * 1000:
            status = ResponseStatus.VERY_SLOW
            detected = True
            confidence = 0.8
            action = RecommendedAction.SLOW_DOWN
        elif elapsed > self.config.slow_threshold * 1000:
            status = ResponseStatus.SLOW
            detected = True
            confidence = 0.5
            action = RecommendedAction.REDUCE_SPEED

        if not is_error:
            if self._is_empty_body(response.body):
                self.state.consecutive_empty_pages += 1
                if status == ResponseStatus.SUCCESS:
                    status = ResponseStatus.EMPTY
                    if self.state.consecutive_empty_pages >= EMPTY_PAGE_THRESHOLD:
                        detected = True
                        confidence = 0.7
                        action = RecommendedAction.CHECK_API_HEALTH
            else:
                self.state.consecutive_empty_pages = 0
                self.state.consecutive_errors = 0
                self.state.last_success_at = self._clock()

        info = self._parse_rate_limit_headers(response.headers)
        if info is not None:
            header_action = self._header_action(info)
            if header_action == RecommendedAction.WAIT:
                action = RecommendedAction.WAIT
            elif header_action is not None:
                action = _more_severe(action, header_action)
            if header_action is not None:
                detected = True
                confidence = max(confidence, 0.9)

        if self._contains_throttle_phrase(response.body):
            detected = True
            confidence = max(confidence, 0.85)
            action = _more_severe(action, RecommendedAction.BACKOFF)

        if self.state.consecutive_errors >= ERROR_ESCALATION_THRESHOLD:
            action = RecommendedAction.PAUSE_AND_RETRY

        analysis = ResponseAnalysis(
            status=status,
            rate_limit_detected=detected,
            confidence=confidence,
            recommended_action=action,
            response_time_ms=elapsed,
            error_type=error_type,
            rate_limit_info=info,
        )
        self._finish(analysis, is_error)
        return analysis

    def analyze_error(self, error: Exception, elapsed_ms: Optional[float] = None) -> ResponseAnalysis:
        """
        Classify a transport or HTTP-level failure.

        Args:
            error: The raised exception
            elapsed_ms: Time spent before the failure

        Returns:
            ResponseAnalysis with status ERROR
        """
        elapsed = getattr(error, 'elapsed_ms', 0.0) if elapsed_ms is None else elapsed_ms
        if elapsed:
            self._record_response_time(elapsed)

        error_type, action, confidence, detected = self._classify_error(error, elapsed)
        self._register_error(error_type)

        info = None
        if isinstance(error, SourceHttpError):
            info = self._parse_rate_limit_headers(error.headers)
            if info is not None and info.retry_after_ms is not None:
                action = RecommendedAction.WAIT

        if self.state.consecutive_errors >= ERROR_ESCALATION_THRESHOLD:
            action = RecommendedAction.PAUSE_AND_RETRY

        analysis = ResponseAnalysis(
            status=ResponseStatus.ERROR,
            rate_limit_detected=detected,
            confidence=confidence,
            recommended_action=action,
            response_time_ms=elapsed,
            error_type=error_type,
            rate_limit_info=info,
        )
        self._finish(analysis, True)
        return analysis

    def _classify_error(self, error: Exception, elapsed: float):
        """Map an exception to (error_type, action, confidence, rate_limit_detected)."""
        if isinstance(error, RateLimited):
            return ErrorType.RATE_LIMIT, RecommendedAction.BACKOFF, 0.95, True
        if isinstance(error, ServiceUnavailable):
            return ErrorType.SERVICE_UNAVAILABLE, RecommendedAction.BACKOFF, 0.7, True
        if isinstance(error, SourceHttpError):
            return ErrorType.UNKNOWN, RecommendedAction.RETRY, 0.3, False
        if isinstance(error, FetchTimeout):
            if elapsed > self.config.slow_threshold * 1000:
                return ErrorType.TIMEOUT, RecommendedAction.SLOW_DOWN, 0.6, True
            return ErrorType.TIMEOUT, RecommendedAction.RETRY, 0.4, False
        if isinstance(error, ConnectionFailure):
            return ErrorType.CONNECTION_ERROR, RecommendedAction.BACKOFF, 0.4, False

        message = str(error).lower()
        if 'too many requests' in message or 'rate limit' in message:
            return ErrorType.RATE_LIMIT, RecommendedAction.BACKOFF, 0.8, True
        if 'timeout' in message or 'timed out' in message:
            return ErrorType.TIMEOUT, RecommendedAction.RETRY, 0.4, False
        return ErrorType.UNKNOWN, RecommendedAction.RETRY, 0.3, False

    def _register_error(self, error_type: ErrorType):
        self.state.consecutive_errors += 1
        if error_type == ErrorType.RATE_LIMIT:
            self._error_patterns['rate_limit'] += 1
        elif error_type == ErrorType.TIMEOUT:
            self._error_patterns['timeout'] += 1
        elif error_type == ErrorType.SERVICE_UNAVAILABLE:
            self._error_patterns['server_error'] += 1
        elif error_type == ErrorType.CONNECTION_ERROR:
            self._error_patterns['connection_error'] += 1

    def _finish(self, analysis: ResponseAnalysis, is_error: bool):
        self.state.is_rate_limited = analysis.rate_limit_detected
        self._history.append(HistoryEntry(
            timestamp=self._clock(),
            response_time_ms=analysis.response_time_ms,
            status=analysis.status,
            is_error=is_error,
        ))
        self._last_analysis = analysis

        if analysis.recommended_action in (
            RecommendedAction.BACKOFF,
            RecommendedAction.WAIT,
            RecommendedAction.PAUSE_AND_RETRY,
        ):
            logger.warning(
                "Rate signal: %s -> %s (confidence %.2f, %d consecutive errors)",
                analysis.status.value,
                analysis.recommended_action.value,
                analysis.confidence,
                self.state.consecutive_errors,
            )

    def _record_response_time(self, elapsed_ms: float):
        self._response_times.append(elapsed_ms)
        self.state.avg_response_time_ms = sum(self._response_times) / len(self._response_times)

    @staticmethod
    def _is_empty_body(body) -> bool:
        if not isinstance(body, dict):
            return True
        if body.get('status') in ('error', 'fail'):
            return True
        data = body.get('data')
        if not isinstance(data, dict):
            return True
        if 'items' in data:
            return not data.get('items')
        return not data.get('item')

    @staticmethod
    def _envelope_text(body) -> str:
        """Envelope strings only; item payloads are ignored."""
        if not isinstance(body, dict):
            return str(body or '')
        parts = []
        for key, value in body.items():
            if key == 'data' and isinstance(value, dict):
                for inner_key, inner_value in value.items():
                    if inner_key not in ('items', 'item') and isinstance(inner_value, str):
                        parts.append(inner_value)
            elif isinstance(value, str):
                parts.append(value)
        return ' '.join(parts)

    def _contains_throttle_phrase(self, body) -> bool:
        text = self._envelope_text(body).lower()
        return any(phrase in text for phrase in THROTTLE_PHRASES)

    @staticmethod
    def _parse_rate_limit_headers(headers: Dict[str, str]) -> Optional[RateLimitInfo]:
        """Read remaining-quota and retry-after headers, if any are present."""
        if not headers:
            return None
        lowered = {k.lower(): v for k, v in headers.items()}

        remaining = None
        for name in ('x-ratelimit-remaining', 'x-rate-limit-remaining', 'ratelimit-remaining'):
            if name in lowered:
                try:
                    remaining = int(float(lowered[name]))
                except (TypeError, ValueError):
                    remaining = None
                break

        limit = None
        for name in ('x-ratelimit-limit', 'x-rate-limit-limit', 'ratelimit-limit'):
            if name in lowered:
                try:
                    limit = int(float(lowered[name]))
                except (TypeError, ValueError):
                    limit = None
                break

        retry_after_ms = None
        if 'retry-after' in lowered:
            try:
                retry_after_ms = float(lowered['retry-after']) * 1000
            except (TypeError, ValueError):
                # HTTP-date form is not used by the source API
                retry_after_ms = None

        reset = lowered.get('x-ratelimit-reset') or lowered.get('ratelimit-reset')

        if remaining is None and limit is None and retry_after_ms is None and reset is None:
            return None
        return RateLimitInfo(remaining=remaining, limit=limit, reset=reset, retry_after_ms=retry_after_ms)

    @staticmethod
    def _header_action(info: RateLimitInfo) -> Optional[RecommendedAction]:
        if info.retry_after_ms is not None:
            return RecommendedAction.WAIT
        if info.remaining is not None:
            if info.remaining < 5:
                return RecommendedAction.BACKOFF
            if info.remaining < 10:
                return RecommendedAction.SLOW_DOWN
        return None

    def _base_for_action(self, analysis: Optional[ResponseAnalysis]) -> float:
        action = analysis.recommended_action if analysis else RecommendedAction.CONTINUE
        base = self._base_ms

        if action == RecommendedAction.CONTINUE:
            return base * 0.8
        if action == RecommendedAction.REDUCE_SPEED:
            return base * 1.5
        if action == RecommendedAction.SLOW_DOWN:
            return base * 3
        if action == RecommendedAction.BACKOFF:
            return min(base * 8, self._max_ms)
        if action == RecommendedAction.PAUSE_AND_RETRY:
            return min(base * 15, self._max_ms)
        if action == RecommendedAction.WAIT:
            info = analysis.rate_limit_info
            if info is not None and info.retry_after_ms is not None:
                return info.retry_after_ms
            return min(base * 10, self._max_ms)
        if action == RecommendedAction.CHECK_API_HEALTH:
            return base * 5
        return base

    def current_delay(self) -> float:
        """
        Compute the delay before the next request.

        Returns:
            Delay in milliseconds, clamped to [min_delay, max_delay]
        """
        delay = self._base_for_action(self._last_analysis)

        delay *= 1.4 ** min(self.state.consecutive_errors, 5)
        delay *= 1.3 ** min(self.state.consecutive_empty_pages, 3)
        if self._recent_average() > 3000:
            delay *= 1.5

        jitter = delay * self.config.jitter_percent * self._rng.uniform(-1, 1)
        delay = min(max(delay + jitter, self._min_ms), self._max_ms)

        self.state.current_delay_ms = delay
        return delay

    def current_delay_seconds(self) -> float:
        return self.current_delay() / 1000

    def _recent_average(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def is_healthy(self) -> bool:
        """
        Check whether the upstream currently looks healthy.

        Returns:
            True if recent error rate < 30%, fewer than 3 consecutive errors,
            not rate limited and average response time under 10s
        """
        cutoff = self._clock() - self.config.health_window
        recent = [h for h in self._history if h.timestamp >= cutoff]
        error_rate = sum(1 for h in recent if h.is_error) / len(recent) if recent else 0.0

        return (
            error_rate < 0.3
            and self.state.consecutive_errors < 3
            and not self.state.is_rate_limited
            and self._recent_average() < 10000
        )

    def get_stats(self) -> dict:
        """
        Get controller statistics.

        Returns:
            Dict with current state info
        """
        last = self._last_analysis
        return {
            'current_delay_ms': round(self.state.current_delay_ms),
            'consecutive_errors': self.state.consecutive_errors,
            'consecutive_empty_pages': self.state.consecutive_empty_pages,
            'avg_response_time_ms': round(self.state.avg_response_time_ms),
            'is_rate_limited': self.state.is_rate_limited,
            'last_success_at': self.state.last_success_at,
            'last_action': last.recommended_action.value if last else None,
            'error_patterns': dict(self._error_patterns),
            'history_size': len(self._history),
            'is_healthy': self.is_healthy(),
        }

    def reset(self):
        """Reset controller to initial state."""
        self.state = RateState(current_delay_ms=self._base_ms)
        self._history.clear()
        self._response_times.clear()
        self._last_analysis = None
        self._error_patterns = self._empty_patterns()
        logger.info("Rate controller reset")
