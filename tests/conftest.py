"""
Shared fixtures: a fake source API on httpx.MockTransport, a fakeredis
progress store and an in-memory SQLite document store.
"""

import random

import fakeredis
import httpx
import pytest

from comic_crawler.config import CrawlerConfig, PipelineConfig
from comic_crawler.crawler import Crawler
from comic_crawler.pipeline import CrawlPipeline
from comic_crawler.resilience.progress_store import ProgressStore
from comic_crawler.resilience.rate_controller import RateAdaptiveController
from comic_crawler.source_client import SourceApiClient
from comic_crawler.storage import CatalogStorage

API_BASE = "https://api.test/v1/api"
API_PREFIX = "/v1/api"
UPDATED_AT = "2024-05-01T08:00:00.000Z"


def listing_item(n: int, updated_at: str = UPDATED_AT) -> dict:
    return {
        "_id": f"id-{n}",
        "name": f"Story {n}",
        "slug": f"story-{n}",
        "thumb_url": f"story-{n}-thumb.jpg",
        "updatedAt": updated_at,
    }


def story_detail(n: int, chapters: int = 3, name: str = None) -> dict:
    return {
        "_id": f"id-{n}",
        "name": f"Story {n}" if name is None else name,
        "slug": f"story-{n}",
        "origin_name": [f"Origin {n}"],
        "content": f"<p>Story {n} description</p>",
        "status": "ongoing",
        "thumb_url": f"story-{n}-thumb.jpg",
        "author": [f"Author {n}"],
        "category": [{"id": "g-action", "name": "Action", "slug": "action"}],
        "updatedAt": UPDATED_AT,
        "chapters": [{
            "server_name": "Server #1",
            "server_data": [
                {
                    "filename": f"story-{n}-chapter-{c}",
                    "chapter_name": str(c),
                    "chapter_title": "",
                    "chapter_api_data": f"https://cdn.test/v1/api/chapter/{n}-{c}",
                }
                for c in range(1, chapters + 1)
            ],
        }],
    }


class FakeSourceApi:
    """In-memory stand-in for the source API."""

    def __init__(self):
        self.pages = {}
        self.stories = {}
        self.genres = [
            {"_id": "g-action", "name": "Action", "slug": "action"},
            {"_id": "g-comedy", "name": "Comedy", "slug": "comedy"},
        ]
        self.failures = {}
        self.requests = []

    def add_page(self, category: str, page: int, numbers):
        self.pages[(category, page)] = [listing_item(n) for n in numbers]
        for n in numbers:
            self.stories.setdefault(f"story-{n}", story_detail(n))

    def count(self, prefix: str) -> int:
        return sum(1 for r in self.requests if r.url.path[len(API_PREFIX):].startswith(prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]

        if path in self.failures:
            return httpx.Response(self.failures[path], json={"status": "error", "msg": "upstream failure"})

        parts = path.strip("/").split("/")
        if parts[0] == "danh-sach":
            page = int(request.url.params.get("page", "1"))
            items = self.pages.get((parts[1], page), [])
            return httpx.Response(200, json={"status": "success", "data": {"items": items}})
        if parts[0] == "truyen-tranh":
            story = self.stories.get(parts[1])
            if story is None:
                return httpx.Response(404, json={"status": "error", "msg": "not found"})
            return httpx.Response(200, json={"status": "success", "data": {"item": story}})
        if parts[0] == "the-loai":
            return httpx.Response(200, json={"status": "success", "data": {"items": self.genres}})
        if parts[0] == "chapter":
            return httpx.Response(200, json={
                "status": "success",
                "data": {
                    "domain_cdn": "https://img.test",
                    "item": {
                        "chapter_path": f"uploads/{parts[1]}",
                        "chapter_image": [
                            {"image_page": 2, "image_file": "page-2.jpg"},
                            {"image_page": 1, "image_file": "page-1.jpg"},
                        ],
                    },
                },
            })
        return httpx.Response(404, json={"status": "error"})


@pytest.fixture
def api():
    return FakeSourceApi()


@pytest.fixture
def client(api):
    return SourceApiClient(API_BASE, transport=httpx.MockTransport(api.handler))


@pytest.fixture
def storage():
    store = CatalogStorage("sqlite://")
    yield store
    store.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def progress(redis_client):
    return ProgressStore(redis_client)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def no_sleep(sleeps):
    async def sleep(seconds):
        sleeps.append(seconds)
    return sleep


@pytest.fixture
def controller():
    return RateAdaptiveController(rng=random.Random(7))


@pytest.fixture
def make_pipeline(client, storage, progress, controller, no_sleep):
    def factory(category: str = "new-releases", **overrides) -> CrawlPipeline:
        return CrawlPipeline(
            category=category,
            client=client,
            storage=storage,
            progress=progress,
            controller=controller,
            config=PipelineConfig(**overrides),
            sleep=no_sleep,
            rng=random.Random(1),
        )
    return factory


@pytest.fixture
def crawler(client, storage, progress, no_sleep):
    return Crawler(
        client=client,
        storage=storage,
        progress=progress,
        config=CrawlerConfig(api_base_url=API_BASE),
        sleep=no_sleep,
        rng=random.Random(1),
    )
