"""
Shared utility functions for the crawler.
"""

import math
import random
import re
from typing import Iterator, List, Optional, Sequence, TypeVar

from bs4 import BeautifulSoup

T = TypeVar('T')

STATUS_MAP = {
    'ongoing': 'ongoing',
    'dang-phat-hanh': 'ongoing',
    'completed': 'completed',
    'hoan-thanh': 'completed',
    'coming_soon': 'coming_soon',
    'sap-ra-mat': 'coming_soon',
}

THUMB_BASE_URL = "https://img.otruyenapi.com/uploads/comics"

MAX_GENRE_FIELD_LENGTH = 100


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield successive slices of at most size items."""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def generate_story_views(rng: Optional[random.Random] = None) -> int:
    """
    Draw a plausible view count from weighted bands.

    40% in 1k-10k, 30% in 10k-50k, 20% in 50k-200k, 10% in 200k-1M.
    """
    rng = rng or random
    roll = rng.random()
    if roll < 0.4:
        return rng.randint(1_000, 10_000)
    if roll < 0.7:
        return rng.randint(10_000, 50_000)
    if roll < 0.9:
        return rng.randint(50_000, 200_000)
    return rng.randint(200_000, 1_000_000)


def generate_rating(rng: Optional[random.Random] = None) -> float:
    """Draw a rating skewed toward the top of the 3.0-5.0 range."""
    rng = rng or random
    roll = rng.random()
    if roll < 0.1:
        return round(3.0 + rng.random() * 0.9, 1)
    if roll < 0.3:
        return round(4.0 + rng.random() * 0.4, 1)
    return round(4.5 + rng.random() * 0.5, 1)


def generate_story_stats(rng: Optional[random.Random] = None) -> dict:
    """
    Synthesize engagement numbers for a story the source does not report.

    Returns:
        Dict with views, rating_value, rating_count and like_count
    """
    rng = rng or random
    views = generate_story_views(rng)
    rating_rate = 0.005 + rng.random() * 0.025
    like_rate = 0.01 + rng.random() * 0.07
    return {
        'views': views,
        'rating_value': generate_rating(rng),
        'rating_count': max(int(views * rating_rate), 0),
        'like_count': max(int(views * like_rate), 0),
    }


def generate_chapter_stats(story_views: int, rng: Optional[random.Random] = None) -> dict:
    """Chapter views are 5-30% of the story's views, never below 10."""
    rng = rng or random
    chapter_views = int(story_views * (0.05 + rng.random() * 0.25))
    return {
        'views': max(chapter_views, 10),
        'like_count': int(chapter_views * (0.005 + rng.random() * 0.02)),
    }


def parse_chapter_number(chapter_name: str) -> Optional[float]:
    """
    Derive a sequence number from a chapter name.

    Args:
        chapter_name: Name as listed by the source (e.g. "12", "12.5", "Chap 3")

    Returns:
        The first number found, or None
    """
    if chapter_name is None:
        return None
    match = re.search(r'\d+(?:\.\d+)?', str(chapter_name))
    if not match:
        return None
    number = float(match.group(0))
    return number if math.isfinite(number) else None


def map_story_status(status: str) -> str:
    """Normalize the source's status labels."""
    return STATUS_MAP.get((status or '').strip().lower(), 'ongoing')


def normalize_image_url(url: str) -> str:
    """Make thumbnail filenames absolute."""
    if not url:
        return ''
    if url.startswith(('http://', 'https://')):
        return url
    return f"{THUMB_BASE_URL}/{url.lstrip('/')}"


def sanitize_content(content: str) -> str:
    """Strip markup from a description, keeping paragraph breaks."""
    if not content:
        return ''
    soup = BeautifulSoup(content, 'html.parser')
    for br in soup.find_all('br'):
        br.replace_with('\n')
    for block in soup.find_all(['p', 'div', 'li']):
        block.append('\n')
    text = re.sub(r'[ \t\xa0]+', ' ', soup.get_text())
    text = re.sub(r' *\n *', '\n', text)
    return re.sub(r'\n{3,}', '\n\n', text).strip()


def validate_genre(name: str, slug: str) -> bool:
    """Genre entries need a name and slug of at most 100 characters."""
    if not name or not slug:
        return False
    return len(name) <= MAX_GENRE_FIELD_LENGTH and len(slug) <= MAX_GENRE_FIELD_LENGTH


def is_newer(candidate: Optional[str], known: Optional[str]) -> bool:
    """
    Compare two ISO-8601 timestamps as reported by the source.

    Unknown values never count as newer.
    """
    if not candidate or not known:
        return False
    return candidate > known
