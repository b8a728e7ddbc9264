"""
Configuration for the comic catalog crawler.

Component settings are plain dataclasses with sensible defaults.
CrawlerSettings reads the environment (and .env) and builds them.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CATEGORIES = "truyen-moi,sap-ra-mat,dang-phat-hanh,hoan-thanh"


@dataclass
class RateControlConfig:
    """Configuration for adaptive rate control. Times are in seconds."""
    base_delay: float = 1.2
    max_delay: float = 45.0
    min_delay: float = 0.5
    slow_threshold: float = 5.0
    very_slow_threshold: float = 15.0
    jitter_percent: float = 0.1
    history_size: int = 100
    response_window: int = 20
    health_window: float = 300.0


@dataclass
class RetryConfig:
    """Configuration for per-request retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 5.0
    backoff_max: float = 30.0
    pause_base: float = 10.0
    pause_max: float = 45.0
    default_base: float = 1.0
    default_max: float = 10.0


@dataclass
class PipelineConfig:
    """Configuration for the three-phase crawl pipeline."""
    detail_batch_size: int = 15
    chapter_batch_size: int = 5
    chapter_concurrency: int = 2
    chapter_write_batch: int = 100
    empty_page_limit: int = 3
    detail_delay_factor: float = 0.7
    min_detail_delay: float = 0.8
    max_items_per_session: int = 1000
    retry_failed_limit: int = 5
    max_session_duration: float = 7200.0
    session_timeout_margin: float = 1200.0
    fetch_chapter_content: bool = False


@dataclass
class ProgressStoreConfig:
    """Key layout and expiry for the progress cache."""
    key_prefix: str = "crawler"
    progress_ttl: int = 7 * 24 * 3600
    completed_ttl: int = 24 * 3600
    error_ttl: int = 7 * 24 * 3600
    session_ttl: int = 3 * 24 * 3600


@dataclass
class SupervisorConfig:
    """Configuration for worker lifecycle management."""
    restart_base_delay: float = 60.0
    restart_multiplier: float = 2.0
    restart_max_delay: float = 600.0
    health_interval: float = 60.0
    inactivity_threshold: float = 120.0
    shutdown_timeout: float = 10.0
    memory_limit_mb: Optional[int] = 300
    rerun_interval: Optional[float] = None


@dataclass
class CrawlerConfig:
    """Main configuration bundle for one crawler instance."""
    api_base_url: str = "https://otruyenapi.com/v1/api"
    request_timeout: float = 10.0
    user_agent: str = "ComicCrawler/2.0"
    rate_control: RateControlConfig = field(default_factory=RateControlConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


class CrawlerSettings(BaseSettings):
    """Environment settings (prefix CRAWLER_)."""

    model_config = SettingsConfigDict(
        env_prefix="CRAWLER_",
        env_file=Path(__file__).parent.parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Source API
    api_base_url: str = "https://otruyenapi.com/v1/api"
    request_timeout: float = 10.0
    user_agent: str = "ComicCrawler/2.0"

    # Storage
    database_url: str = "sqlite:///database/comics.db"
    redis_url: str = "redis://localhost:6379/0"

    # Categories - accepts comma-separated string from env
    categories: str = DEFAULT_CATEGORIES

    # Pacing
    base_delay: float = 1.2
    max_delay: float = 45.0

    # Pipeline
    detail_batch_size: int = 15
    chapter_batch_size: int = 5
    chapter_concurrency: int = 2
    max_items_per_session: int = 1000
    max_session_duration: float = 7200.0
    fetch_chapter_content: bool = False

    # Supervisor
    restart_base_delay: float = 60.0
    restart_max_delay: float = 600.0
    health_interval: float = 60.0
    inactivity_threshold: float = 120.0
    shutdown_timeout: float = 10.0
    memory_limit_mb: Optional[int] = 300
    rerun_interval: Optional[float] = None

    log_level: str = "INFO"

    @property
    def categories_list(self) -> List[str]:
        """Return categories as a list."""
        return [c.strip() for c in self.categories.split(",") if c.strip()]

    def crawler_config(self) -> CrawlerConfig:
        """Build the crawler configuration bundle."""
        return CrawlerConfig(
            api_base_url=self.api_base_url,
            request_timeout=self.request_timeout,
            user_agent=self.user_agent,
            rate_control=RateControlConfig(
                base_delay=self.base_delay,
                max_delay=self.max_delay,
            ),
            pipeline=PipelineConfig(
                detail_batch_size=self.detail_batch_size,
                chapter_batch_size=self.chapter_batch_size,
                chapter_concurrency=self.chapter_concurrency,
                max_items_per_session=self.max_items_per_session,
                max_session_duration=self.max_session_duration,
                fetch_chapter_content=self.fetch_chapter_content,
            ),
        )

    def supervisor_config(self) -> SupervisorConfig:
        """Build the supervisor configuration."""
        return SupervisorConfig(
            restart_base_delay=self.restart_base_delay,
            restart_max_delay=self.restart_max_delay,
            health_interval=self.health_interval,
            inactivity_threshold=self.inactivity_threshold,
            shutdown_timeout=self.shutdown_timeout,
            memory_limit_mb=self.memory_limit_mb,
            rerun_interval=self.rerun_interval,
        )


settings = CrawlerSettings()
