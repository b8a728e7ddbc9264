"""
Tests for utils.py helpers.
"""

import random

import pytest

from comic_crawler.utils import (
    chunked,
    generate_chapter_stats,
    generate_story_stats,
    is_newer,
    map_story_status,
    normalize_image_url,
    parse_chapter_number,
    sanitize_content,
    validate_genre,
)


@pytest.mark.parametrize("name,expected", [
    ("12", 12.0),
    ("12.5", 12.5),
    ("Chap 3", 3.0),
    ("Extra", None),
    ("", None),
    (None, None),
])
def test_parse_chapter_number(name, expected):
    assert parse_chapter_number(name) == expected


def test_chapter_views_never_below_ten():
    rng = random.Random(3)
    for _ in range(200):
        assert generate_chapter_stats(0, rng)['views'] == 10

    stats = generate_chapter_stats(100_000, rng)
    assert 5_000 <= stats['views'] <= 30_000


def test_story_stats_are_in_range():
    rng = random.Random(11)
    for _ in range(200):
        stats = generate_story_stats(rng)
        assert 1_000 <= stats['views'] <= 1_000_000
        assert 3.0 <= stats['rating_value'] <= 5.0
        assert stats['like_count'] <= stats['views']


def test_validate_genre():
    assert validate_genre("Action", "action")
    assert not validate_genre("", "action")
    assert not validate_genre("Action", "")
    assert not validate_genre("x" * 101, "long")
    assert validate_genre("x" * 100, "y" * 100)


def test_sanitize_content_strips_markup():
    raw = "<p>First &amp; second</p><p>Line<br/>break</p>"

    assert sanitize_content(raw) == "First & second\nLine\nbreak"
    assert sanitize_content(None) == ''


@pytest.mark.parametrize("raw,expected", [
    ("<p>Level 1 < 2 and 3 > 2 wins</p>", "Level 1 < 2 and 3 > 2 wins"),
    ("<div>Tom &amp; Jerry</div>\n\n<ul><li>One</li><li>Two</li></ul>", "Tom & Jerry\n\nOne\nTwo"),
    ("plain   text\twith  gaps", "plain text with gaps"),
])
def test_sanitize_content_keeps_text_that_looks_like_markup(raw, expected):
    assert sanitize_content(raw) == expected


def test_map_story_status():
    assert map_story_status("completed") == "completed"
    assert map_story_status("Hoan-Thanh ") == "completed"
    assert map_story_status("unknown") == "ongoing"
    assert map_story_status(None) == "ongoing"


def test_is_newer_ignores_unknown_values():
    assert is_newer("2024-06-01T00:00:00.000Z", "2024-05-01T00:00:00.000Z")
    assert not is_newer("2024-05-01T00:00:00.000Z", "2024-05-01T00:00:00.000Z")
    assert not is_newer(None, "2024-05-01T00:00:00.000Z")
    assert not is_newer("2024-06-01T00:00:00.000Z", None)


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []


def test_normalize_image_url():
    assert normalize_image_url("cover.jpg") == "https://img.otruyenapi.com/uploads/comics/cover.jpg"
    assert normalize_image_url("https://cdn.test/a.jpg") == "https://cdn.test/a.jpg"
    assert normalize_image_url("") == ''
