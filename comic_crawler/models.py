"""
Data models for the comic catalog crawler.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional


class ResponseStatus(str, Enum):
    """Classification of one observed HTTP exchange."""
    SUCCESS = "success"
    SLOW = "slow"
    VERY_SLOW = "very_slow"
    EMPTY = "empty"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"


class RecommendedAction(str, Enum):
    """Pacing action recommended by the rate controller."""
    CONTINUE = "continue"
    REDUCE_SPEED = "reduce_speed"
    SLOW_DOWN = "slow_down"
    BACKOFF = "backoff"
    WAIT = "wait"
    RETRY = "retry"
    CHECK_API_HEALTH = "check_api_health"
    PAUSE_AND_RETRY = "pause_and_retry"


class ErrorType(str, Enum):
    """Error taxonomy shared by the controller, the pipeline and the error log."""
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    VALIDATION = "VALIDATION"
    DUPLICATE_KEY = "DUPLICATE_KEY"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


class ProgressStatus(str, Enum):
    """Lifecycle of a category's crawl cursor."""
    NEW = "new"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class RateLimitInfo:
    """Rate-limit hints read from response headers."""
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset: Optional[str] = None
    retry_after_ms: Optional[float] = None


@dataclass(frozen=True)
class ResponseAnalysis:
    """Immutable verdict for one HTTP exchange."""
    status: ResponseStatus
    rate_limit_detected: bool
    confidence: float
    recommended_action: RecommendedAction
    response_time_ms: float = 0.0
    error_type: Optional[ErrorType] = None
    rate_limit_info: Optional[RateLimitInfo] = None


@dataclass
class RateState:
    """Mutable pacing state owned by one rate controller."""
    current_delay_ms: float
    consecutive_errors: int = 0
    consecutive_empty_pages: int = 0
    avg_response_time_ms: float = 1000.0
    is_rate_limited: bool = False
    last_success_at: Optional[float] = None


@dataclass
class HistoryEntry:
    """One observation kept in the controller's rolling history."""
    timestamp: float
    response_time_ms: float
    status: ResponseStatus
    is_error: bool


@dataclass
class CrawlProgress:
    """Resumable cursor for one category."""
    category: str
    current_page: int = 1
    total_processed: int = 0
    status: ProgressStatus = ProgressStatus.NEW
    last_updated_at: Optional[str] = None
    final_stats: Optional[dict] = None
    error: Optional[str] = None


@dataclass
class ErrorLogEntry:
    """One logged failure, kept until its expiry."""
    category: str
    page: int
    error_type: str
    message: str
    timestamp: str
    context: Dict = field(default_factory=dict)


@dataclass
class FailedPages:
    """Retry candidates discovered from the error log."""
    pages: List[int] = field(default_factory=list)
    errors: List[ErrorLogEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class CatalogItemRef:
    """Minimal listing entry used for dedup before any detail fetch."""
    id: str
    slug: str
    last_known_update_time: Optional[str] = None


@dataclass
class BulkWriteResult:
    """Outcome of one bulk upsert batch."""
    inserted: int = 0
    updated: int = 0
    duplicates_skipped: int = 0
    failed: int = 0

    @property
    def committed(self) -> int:
        return self.inserted + self.updated


@dataclass
class SessionStats:
    """Cumulative counters backing status reporting."""
    new_stories: int = 0
    updated_stories: int = 0
    new_chapters: int = 0
    updated_chapters: int = 0
    duplicates_skipped: int = 0
    validation_skipped: int = 0
    errors: int = 0
    pages_processed: int = 0
    api_calls_made: int = 0
    stories_queued: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionResult:
    """Result of one crawl session for one category."""
    session_id: str
    category: str
    status: str
    started_at: str
    completed_at: str
    pages_processed: int = 0
    stories_queued: int = 0
    new_stories: int = 0
    updated_stories: int = 0
    new_chapters: int = 0
    duplicates_skipped: int = 0
    errors: int = 0
    reached_end: bool = False
    stop_reason: Optional[str] = None
    duration_seconds: float = 0.0
    stories_per_minute: float = 0.0
    api_calls_per_minute: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)
