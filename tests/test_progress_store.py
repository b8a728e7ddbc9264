"""
Tests for resilience/progress_store.py against fakeredis.
"""

import json

import fakeredis
import pytest

from comic_crawler.errors import FetchTimeout, RateLimited, ServiceUnavailable
from comic_crawler.models import ProgressStatus
from comic_crawler.resilience.progress_store import ProgressStore

DAY = 24 * 3600


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_saved_progress_reads_back(progress):
    assert progress.save_progress("new-releases", page=5, total_processed=100)

    entry = progress.get_progress("new-releases")
    assert entry.current_page == 5
    assert entry.total_processed == 100
    assert entry.status == ProgressStatus.RUNNING


def test_progress_keys_expire(progress, redis_client):
    progress.save_progress("new-releases", 2, 20)

    ttl = redis_client.ttl("crawler:progress:new-releases")
    assert 0 < ttl <= 7 * DAY


def test_missing_progress_is_a_fresh_cursor(progress):
    entry = progress.get_progress("never-crawled")

    assert entry.current_page == 1
    assert entry.total_processed == 0
    assert entry.status == ProgressStatus.NEW


def test_unreachable_store_reports_error_without_raising():
    server = fakeredis.FakeServer()
    server.connected = False
    store = ProgressStore(fakeredis.FakeRedis(server=server, decode_responses=True))

    entry = store.get_progress("new-releases")
    assert entry.status == ProgressStatus.ERROR
    assert entry.current_page == 1
    assert not store.save_progress("new-releases", 3, 10)
    assert not store.health_check()['healthy']


def test_corrupt_entry_falls_back_to_fresh_cursor(progress, redis_client):
    redis_client.set("crawler:progress:broken", "{not json")

    assert progress.get_progress("broken").status == ProgressStatus.NEW


@pytest.mark.parametrize("raw", [
    "[1, 2]",
    "42",
    json.dumps({'current_page': "abc", 'status': "running"}),
    json.dumps({'current_page': None, 'status': "running"}),
    json.dumps({'total_processed': [5]}),
])
def test_well_formed_json_with_bad_fields_falls_back_to_fresh_cursor(progress, redis_client, raw):
    redis_client.set("crawler:progress:broken", raw)

    entry = progress.get_progress("broken")

    assert entry.status == ProgressStatus.NEW
    assert entry.current_page == 1
    assert entry.total_processed == 0


def test_mark_completed_restarts_from_first_page(progress):
    progress.save_progress("completed", 40, 780)
    progress.mark_completed("completed", {'total_processed': 800, 'new_stories': 20})

    entry = progress.get_progress("completed")
    assert entry.status == ProgressStatus.COMPLETED
    assert entry.current_page == 1
    assert entry.total_processed == 800
    assert entry.final_stats['new_stories'] == 20


def test_failed_pages_are_distinct_and_sorted(progress):
    progress.log_error("ongoing", 7, FetchTimeout("timed out"))
    progress.log_error("ongoing", 3, ServiceUnavailable(503, "https://api.test/x"))
    progress.log_error("ongoing", 7, FetchTimeout("timed out again"), {'attempt': 2})
    progress.log_error("completed", 9, FetchTimeout("other category"))

    failed = progress.get_failed_pages("ongoing")
    assert failed.pages == [3, 7]
    assert failed.count == 3
    assert {e.error_type for e in failed.errors} == {"TIMEOUT", "SERVICE_UNAVAILABLE"}


def test_clear_failed_page(progress):
    progress.log_error("ongoing", 3, FetchTimeout("timed out"))
    progress.log_error("ongoing", 4, FetchTimeout("timed out"))

    assert progress.clear_failed_page("ongoing", 3) == 1
    assert progress.get_failed_pages("ongoing").pages == [4]


def test_error_stats_group_by_category_and_type(progress):
    progress.log_error("ongoing", 1, FetchTimeout("timed out"))
    progress.log_error("ongoing", 2, RateLimited(429, "https://api.test/x"))
    progress.log_error("completed", 1, FetchTimeout("timed out"))

    stats = progress.get_error_stats()
    assert stats['total'] == 3
    assert stats['by_category'] == {'ongoing': 2, 'completed': 1}
    assert stats['by_type'] == {'TIMEOUT': 2, 'RATE_LIMIT': 1}

    assert progress.get_error_stats("completed")['total'] == 1


def test_reset_progress_removes_cursor_and_errors(progress):
    progress.save_progress("ongoing", 12, 200)
    progress.log_error("ongoing", 11, FetchTimeout("timed out"))

    assert progress.reset_progress("ongoing")
    assert progress.get_progress("ongoing").status == ProgressStatus.NEW
    assert progress.get_failed_pages("ongoing").pages == []


def test_get_all_progress(progress):
    progress.save_progress("ongoing", 4, 60)
    progress.mark_completed("completed", {'total_processed': 10})

    entries = progress.get_all_progress()
    assert set(entries) == {"ongoing", "completed"}
    assert entries["completed"].status == ProgressStatus.COMPLETED


def test_session_stats(progress):
    progress.save_session_stats("ongoing-abc123", {'new_stories': 4, 'errors': 1})

    stats = progress.get_session_stats("ongoing-abc123")
    assert stats['new_stories'] == 4
    assert stats['session_id'] == "ongoing-abc123"
    assert progress.get_session_stats("missing") is None


def test_cleanup_removes_stale_and_unexpiring_keys(redis_client):
    clock = FakeClock()
    store = ProgressStore(redis_client, clock=clock)
    store.save_progress("old", 3, 30)
    redis_client.set("crawler:stray", json.dumps({'timestamp': 0}))

    clock.now += 31 * DAY
    store.save_progress("fresh", 2, 10)

    removed = store.cleanup(retention_days=30)

    assert removed == 2
    assert store.get_progress("old").status == ProgressStatus.NEW
    assert store.get_progress("fresh").current_page == 2
