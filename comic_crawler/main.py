"""
Main entry point for the comic catalog crawler.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

# Load environment variables from .env file
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)

from .config import CrawlerSettings, settings
from .crawler import Crawler, build_crawler
from .errors import CrawlError
from .supervisor import WorkerSupervisor

logger = logging.getLogger(__name__)

# Crawler of the in-process commands, for signal handling
_crawler: Optional[Crawler] = None
_stop_event = threading.Event()
_supervising = False


def signal_handler(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    print("\n\n" + "=" * 60)
    print("STOP SIGNAL RECEIVED - SHUTTING DOWN GRACEFULLY")
    print("=" * 60)
    if _crawler is not None:
        _crawler.pause("interrupted")
        print("Waiting for current page or batch to complete...")
    elif _supervising:
        _stop_event.set()
        print("Stopping workers...")
    else:
        print("Exiting immediately...")
        sys.exit(0)


def install_signal_handlers():
    signal.signal(signal.SIGINT, signal_handler)
    # SIGTERM is not reliably available on Windows
    if hasattr(signal, 'SIGTERM') and sys.platform != 'win32':
        signal.signal(signal.SIGTERM, signal_handler)


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _print_session(result):
    print("\n" + "=" * 60)
    print("CRAWL SESSION COMPLETE" if result.status == "completed" else f"CRAWL SESSION {result.status.upper()}")
    print("=" * 60)
    print(f"Session:     {result.session_id}")
    print(f"Category:    {result.category}")
    print(f"Duration:    {result.duration_seconds / 60:.1f} minutes")
    print(f"Pages:       {result.pages_processed}")
    print(f"New:         {result.new_stories} stories, {result.new_chapters} chapters")
    print(f"Updated:     {result.updated_stories} stories")
    print(f"Duplicates:  {result.duplicates_skipped}")
    print(f"Errors:      {result.errors}")
    print(f"Speed:       {result.stories_per_minute:.1f} stories/minute, {result.api_calls_per_minute:.1f} calls/minute")
    if result.stop_reason:
        print(f"Stopped:     {result.stop_reason}")


async def _with_crawler(cfg: CrawlerSettings, action):
    global _crawler
    _crawler = build_crawler(cfg)
    try:
        return await action(_crawler)
    finally:
        await _crawler.aclose()
        _crawler = None


def run_supervise(args, cfg: CrawlerSettings) -> int:
    """Run every category as a supervised worker process."""
    global _supervising
    categories = args.categories.split(',') if args.categories else cfg.categories_list

    crawler = build_crawler(cfg)
    try:
        removed = crawler.progress.cleanup(args.retention_days)
        print(f"✓ Startup cleanup removed {removed} stale entries")
    finally:
        asyncio.run(crawler.aclose())

    supervisor = WorkerSupervisor.with_processes(
        categories,
        cfg.model_dump(),
        cfg.supervisor_config(),
    )
    print(f"Supervising {len(categories)} categories: {', '.join(categories)}")
    print("Press Ctrl+C to stop (progress is saved automatically)\n")
    _supervising = True
    supervisor.run(_stop_event)

    status = supervisor.get_status()
    print("\n" + "=" * 60)
    print("SUPERVISOR STOPPED")
    print("=" * 60)
    for category, worker in status['workers'].items():
        print(f"{category:<20} {worker['state']:<12} restarts: {worker['restart_count']}")
    return 0


def run_crawl(args, cfg: CrawlerSettings) -> int:
    """Run one in-process crawl session."""
    async def action(crawler: Crawler):
        if args.sync_genres:
            await crawler.sync_genres()
        return await crawler.start_crawl(args.category)

    try:
        result = asyncio.run(_with_crawler(cfg, action))
    except CrawlError as e:
        print(f"\n✗ Crawl failed: {e}")
        return 1

    _print_session(result)
    return 0 if result.status != "error" else 1


def run_retry_failed(args, cfg: CrawlerSettings) -> int:
    """Retry pages recorded in the error log."""
    try:
        outcome = asyncio.run(_with_crawler(cfg, lambda c: c.retry_failed_pages(args.category)))
    except CrawlError as e:
        print(f"\n✗ Retry failed: {e}")
        return 1

    print(f"Pages tried:  {outcome['pages_tried']}")
    print(f"Recovered:    {outcome['recovered']}")
    print(f"New stories:  {outcome['new_stories']}")
    return 0


def run_sync_genres(args, cfg: CrawlerSettings) -> int:
    """Fetch and store the genre taxonomy."""
    try:
        result = asyncio.run(_with_crawler(cfg, lambda c: c.sync_genres()))
    except CrawlError as e:
        print(f"\n✗ Genre sync failed: {e}")
        return 1

    print(f"✓ Genres: {result.inserted} new, {result.updated} updated, {result.failed} invalid")
    return 0


def run_status(args, cfg: CrawlerSettings) -> int:
    """Print progress, error and database statistics."""
    async def action(crawler: Crawler):
        progress = await asyncio.to_thread(crawler.progress.get_all_progress)
        errors = await asyncio.to_thread(crawler.progress.get_error_stats)
        db_stats = await asyncio.to_thread(crawler.storage.get_stats)
        return progress, errors, db_stats

    progress, errors, db_stats = asyncio.run(_with_crawler(cfg, action))

    print("=" * 60)
    print("CRAWL PROGRESS")
    print("=" * 60)
    if not progress:
        print("No categories crawled yet")
    for category, entry in progress.items():
        print(f"{category:<20} {entry.status.value:<10} page {entry.current_page:<6} processed {entry.total_processed}")

    print(f"\nStories:   {db_stats['total_stories']}")
    print(f"Chapters:  {db_stats['total_chapters']}")
    print(f"Genres:    {db_stats['total_genres']}")
    print(f"\nErrors (24h): {errors['total']}")
    for error_type, count in sorted(errors['by_type'].items()):
        print(f"  {error_type:<22} {count}")
    return 0


def run_errors(args, cfg: CrawlerSettings) -> int:
    """Print the error log of a category."""
    failed = asyncio.run(_with_crawler(cfg, lambda c: c.get_error_log(args.category)))

    print(f"Failed pages for {args.category}: {failed.pages or 'none'}")
    for entry in failed.errors[-args.limit:]:
        print(f"  [{entry.timestamp}] page {entry.page} {entry.error_type}: {entry.message[:80]}")
        if args.verbose and entry.context:
            print(f"      {json.dumps(entry.context)}")
    return 0


def run_reset(args, cfg: CrawlerSettings) -> int:
    """Forget the cursor and error log of a category."""
    if asyncio.run(_with_crawler(cfg, lambda c: c.reset_progress(args.category))):
        print(f"✓ Reset progress for {args.category}")
        return 0
    print(f"✗ Could not reset progress for {args.category}")
    return 1


def run_cleanup(args, cfg: CrawlerSettings) -> int:
    """Remove stale progress store entries."""
    async def action(crawler: Crawler):
        return await asyncio.to_thread(crawler.progress.cleanup, args.days)

    removed = asyncio.run(_with_crawler(cfg, action))
    print(f"✓ Removed {removed} entries older than {args.days} days")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description='Comic catalog crawler',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Supervise every configured category
  comic-crawler supervise

  # One session for one category, in this process
  comic-crawler crawl --category truyen-moi

  # Retry pages that failed earlier
  comic-crawler retry-failed --category truyen-moi

  # Inspect progress and errors
  comic-crawler status
  comic-crawler errors --category truyen-moi
"""
    )
    parser.add_argument('--log-level', type=str, default=None,
                        help='Log level (default: from CRAWLER_LOG_LEVEL)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    supervise = subparsers.add_parser('supervise', help='Run all categories as supervised workers')
    supervise.add_argument('--categories', type=str, help='Comma-separated categories (default: from settings)')
    supervise.add_argument('--retention-days', type=int, default=30,
                           help='Startup cleanup retention in days (default: 30)')
    supervise.set_defaults(handler=run_supervise)

    crawl = subparsers.add_parser('crawl', help='Run one crawl session in this process')
    crawl.add_argument('--category', type=str, required=True)
    crawl.add_argument('--sync-genres', action='store_true', help='Sync genres before crawling')
    crawl.set_defaults(handler=run_crawl)

    retry = subparsers.add_parser('retry-failed', help='Retry pages from the error log')
    retry.add_argument('--category', type=str, required=True)
    retry.set_defaults(handler=run_retry_failed)

    genres = subparsers.add_parser('sync-genres', help='Fetch and store the genre taxonomy')
    genres.set_defaults(handler=run_sync_genres)

    status = subparsers.add_parser('status', help='Show progress and statistics')
    status.set_defaults(handler=run_status)

    errors = subparsers.add_parser('errors', help='Show the error log of a category')
    errors.add_argument('--category', type=str, required=True)
    errors.add_argument('--limit', type=int, default=20)
    errors.add_argument('--verbose', action='store_true', help='Show error context')
    errors.set_defaults(handler=run_errors)

    reset = subparsers.add_parser('reset', help='Reset progress of a category')
    reset.add_argument('--category', type=str, required=True)
    reset.set_defaults(handler=run_reset)

    cleanup = subparsers.add_parser('cleanup', help='Remove stale progress entries')
    cleanup.add_argument('--days', type=int, default=30)
    cleanup.set_defaults(handler=run_cleanup)

    args = parser.parse_args(argv)
    setup_logging(args.log_level or settings.log_level)
    install_signal_handlers()

    try:
        return args.handler(args, settings)
    except KeyboardInterrupt:
        print("\nStopped. Run again to resume.")
        return 0


if __name__ == '__main__':
    sys.exit(main())
