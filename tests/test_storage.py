"""
Tests for storage.py on in-memory SQLite.
"""

import pytest

from comic_crawler.errors import DuplicateKey, StoreUnavailable
from comic_crawler.storage import CatalogStorage


def _story(n: int, source_id: str = None, **fields) -> dict:
    doc = {
        'source_id': source_id or f"id-{n}",
        'slug': f"story-{n}",
        'name': f"Story {n}",
        'status': 'ongoing',
        'origin_name': [f"Origin {n}"],
        'author': [f"Author {n}"],
        'genres': [{'slug': 'action', 'name': 'Action'}],
        'source_updated_at': "2024-05-01T08:00:00.000Z",
        'views': 1000 + n,
    }
    doc.update(fields)
    return doc


def test_one_conflict_among_ten_commits_the_other_nine(storage):
    docs = [_story(n) for n in range(10)]
    # Same source id as story-2 under a different slug
    docs[5]['source_id'] = "id-2"

    result = storage.bulk_upsert_stories(docs)

    assert result.committed == 9
    assert result.inserted == 9
    assert result.duplicates_skipped == 1
    assert storage.get_stats()['total_stories'] == 9
    assert storage.get_story("story-5") is None
    assert storage.get_story("story-6") is not None


def test_upsert_by_slug_updates_and_keeps_engagement(storage):
    storage.bulk_upsert_stories([_story(1, views=5000)])
    result = storage.bulk_upsert_stories([_story(1, name="Story One", views=10, source_updated_at="2024-06-01T00:00:00.000Z")])

    story = storage.get_story("story-1")
    assert result.updated == 1
    assert result.inserted == 0
    assert story['name'] == "Story One"
    assert story['views'] == 5000
    assert story['source_updated_at'] == "2024-06-01T00:00:00.000Z"
    assert story['genres'] == ['action']


def test_invalid_story_is_counted_as_failed(storage):
    result = storage.bulk_upsert_stories([_story(1), _story(2, name="")])

    assert result.inserted == 1
    assert result.failed == 1


def test_story_index_maps_slug_to_update_time(storage):
    storage.bulk_upsert_stories([_story(1), _story(2, source_updated_at=None)])

    assert storage.load_story_index() == {
        'story-1': "2024-05-01T08:00:00.000Z",
        'story-2': None,
    }


def test_chapters_are_keyed_by_story_and_sequence(storage):
    storage.bulk_upsert_stories([_story(1)])
    story_id, views = storage.find_story("story-1")

    first = storage.bulk_upsert_chapters(story_id, [
        {'sequence_number': 1.0, 'chapter_name': "1", 'views': 50},
        {'sequence_number': 1.5, 'chapter_name': "1.5", 'views': 40},
    ])
    again = storage.bulk_upsert_chapters(story_id, [
        {'sequence_number': 1.0, 'chapter_name': "1", 'views': 7, 'images': ["https://img.test/1.jpg"]},
        {'sequence_number': 2.0, 'chapter_name': "2"},
    ])

    assert views == 1001
    assert first.inserted == 2
    assert again.inserted == 1
    assert again.updated == 1
    assert storage.count_chapters(story_id) == 3


def test_genres_upsert_by_slug(storage):
    first = storage.bulk_upsert_genres([
        {'source_id': "g1", 'name': "Action", 'slug': "action"},
        {'source_id': "g2", 'name': "Comedy", 'slug': "comedy"},
    ])
    second = storage.bulk_upsert_genres([{'source_id': "g1", 'name': "Action!", 'slug': "action"}])

    assert first.inserted == 2
    assert second.updated == 1
    assert storage.get_stats()['total_genres'] == 2


def test_ping_and_file_database(tmp_path):
    store = CatalogStorage(f"sqlite:///{tmp_path / 'db' / 'comics.db'}")
    try:
        assert store.ping()
        assert (tmp_path / 'db' / 'comics.db').exists()
    finally:
        store.close()


def test_unopenable_database_raises_store_unavailable(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file")

    with pytest.raises((StoreUnavailable, OSError)):
        CatalogStorage(f"sqlite:///{blocker / 'comics.db'}")


def test_stories_with_unwritten_chapters_are_left_out_of_the_index(storage):
    storage.bulk_upsert_stories([_story(1, chapters_pending=True), _story(2)])

    assert set(storage.load_story_index()) == {"story-2"}
    assert storage.get_story("story-1")['chapters_pending']

    story_id, _ = storage.find_story("story-1")
    storage.mark_chapters_synced(story_id)

    assert set(storage.load_story_index()) == {"story-1", "story-2"}
    assert not storage.get_story("story-1")['chapters_pending']


def test_unique_conflict_is_raised_as_duplicate_key(storage):
    storage.bulk_upsert_stories([_story(1)])

    with storage._session_scope() as session:
        with pytest.raises(DuplicateKey):
            storage._apply_in_savepoint(session, storage._apply_story, _story(2, source_id="id-1"))
        session.commit()

    assert storage.get_story("story-2") is None
