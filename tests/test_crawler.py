"""
Tests for crawler.py: sessions, operational hooks and genre sync.
"""

import asyncio

import httpx

from comic_crawler.crawler import Crawler
from comic_crawler.models import ProgressStatus
from comic_crawler.source_client import SourceApiClient

from conftest import API_BASE


def test_completed_session_marks_progress_and_saves_stats(api, crawler, progress):
    api.add_page("new-releases", 1, range(1, 21))

    result = asyncio.run(crawler.start_crawl("new-releases"))

    assert result.status == "completed"
    assert result.reached_end
    assert result.new_stories == 20
    assert result.new_chapters == 60
    assert result.pages_processed == 1
    entry = progress.get_progress("new-releases")
    assert entry.status == ProgressStatus.COMPLETED
    assert entry.current_page == 1
    assert entry.final_stats['total_processed'] == 20
    assert progress.get_session_stats(result.session_id)['new_stories'] == 20
    assert crawler.get_status()['status'] == "completed"


def test_second_session_finds_nothing_new(api, crawler):
    api.add_page("new-releases", 1, range(1, 21))

    first = asyncio.run(crawler.start_crawl("new-releases"))
    second = asyncio.run(crawler.start_crawl("new-releases"))

    assert first.stories_queued == 20
    assert second.stories_queued == 0
    assert second.duplicates_skipped == 20
    assert second.new_stories == 0
    assert api.count("/truyen-tranh/") == 20
    # Cumulative counters span both sessions
    assert crawler.get_status()['categories']['new-releases']['new_stories'] == 20


def test_pause_stops_running_session(api, crawler, sleeps):
    api.add_page("ongoing", 1, range(1, 6))
    api.add_page("ongoing", 2, range(6, 11))

    async def pausing_sleep(seconds):
        sleeps.append(seconds)
        crawler.pause("operator pause")

    crawler._sleep = pausing_sleep
    result = asyncio.run(crawler.start_crawl("ongoing"))

    assert result.status == "paused"
    assert result.stop_reason == "operator pause"
    assert not result.reached_end
    assert not crawler.pause()


def test_paused_session_is_finished_by_the_next_one(api, crawler, progress, storage):
    api.add_page("ongoing", 1, range(1, 6))
    pausing = [True]

    async def pausing_sleep(seconds):
        if pausing:
            crawler.pause("operator pause")

    crawler._sleep = pausing_sleep
    paused = asyncio.run(crawler.start_crawl("ongoing"))
    assert paused.status == "paused"
    assert paused.new_stories == 0
    assert progress.get_progress("ongoing").current_page == 1

    pausing.clear()
    result = asyncio.run(crawler.start_crawl("ongoing"))

    assert result.status == "completed"
    assert result.new_stories == 5
    assert storage.get_stats()['total_stories'] == 5


def test_pause_during_preflight_skips_the_session(api, storage, progress, no_sleep):
    api.add_page("ongoing", 1, range(1, 6))
    crawler = None

    def pausing_handler(request):
        if request.url.path.endswith("/the-loai"):
            assert crawler.pause("operator pause")
        return api.handler(request)

    client = SourceApiClient(API_BASE, transport=httpx.MockTransport(pausing_handler))
    crawler = Crawler(client=client, storage=storage, progress=progress, sleep=no_sleep)

    result = asyncio.run(crawler.start_crawl("ongoing"))

    assert result.status == "paused"
    assert result.stop_reason == "operator pause"
    assert api.count("/danh-sach/") == 0
    assert progress.get_session_stats(result.session_id)['status'] == "paused"
    assert not crawler.pause()


def test_unreachable_api_fails_session_early(storage, progress, no_sleep):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = SourceApiClient(API_BASE, transport=httpx.MockTransport(refuse))
    crawler = Crawler(client=client, storage=storage, progress=progress, sleep=no_sleep)

    result = asyncio.run(crawler.start_crawl("ongoing"))

    assert result.status == "error"
    assert "unreachable" in result.stop_reason
    assert crawler.get_status()['status'] == "error"


def test_error_log_and_retry_failed_pages(api, crawler, progress):
    api.add_page("ongoing", 4, [40, 41, 42])
    progress.log_error("ongoing", 4, RuntimeError("timeout earlier"))

    failed = asyncio.run(crawler.get_error_log("ongoing"))
    assert failed.pages == [4]

    outcome = asyncio.run(crawler.retry_failed_pages("ongoing"))

    assert outcome['pages_tried'] == [4]
    assert outcome['recovered'] == [4]
    assert outcome['new_stories'] == 3
    assert asyncio.run(crawler.get_error_log("ongoing")).pages == []


def test_retry_without_failed_pages_does_nothing(api, crawler):
    outcome = asyncio.run(crawler.retry_failed_pages("ongoing"))

    assert outcome == {'pages_tried': [], 'recovered': [], 'new_stories': 0}
    assert api.count("/danh-sach/") == 0


def test_sync_genres_skips_invalid_entries(api, crawler, storage):
    api.genres.append({"_id": "g-long", "name": "x" * 101, "slug": "too-long"})
    api.genres.append({"_id": "g-empty", "name": "", "slug": "nameless"})

    result = asyncio.run(crawler.sync_genres())

    assert result.inserted == 2
    assert result.failed == 2
    assert storage.get_stats()['total_genres'] == 2


def test_reset_stats_and_progress(api, crawler, progress):
    api.add_page("ongoing", 1, [1])
    asyncio.run(crawler.start_crawl("ongoing"))

    crawler.reset_stats("ongoing")
    assert crawler.get_status()['categories']['ongoing']['new_stories'] == 0

    assert asyncio.run(crawler.reset_progress("ongoing"))
    assert progress.get_progress("ongoing").status == ProgressStatus.NEW


def test_preflight_reports_each_dependency(crawler):
    health = asyncio.run(crawler.preflight())

    assert health['progress_store']['healthy']
    assert health['document_store']['healthy']
    assert health['source_api']['healthy']
