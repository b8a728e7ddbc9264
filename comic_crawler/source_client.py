"""
Async client for the source comic API.
Uses httpx for async HTTP requests and maps transport failures
onto the crawler's error taxonomy.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .errors import (
    ConnectionFailure,
    FetchTimeout,
    UnknownFetchError,
    http_error,
)

logger = logging.getLogger(__name__)

LIST_ENDPOINT = "/danh-sach"
GENRE_ENDPOINT = "/the-loai"
STORY_ENDPOINT = "/truyen-tranh"


@dataclass
class ApiResponse:
    """A completed HTTP exchange with a decoded body."""
    url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""
    elapsed_ms: float = 0.0


class SourceApiClient:
    """
    Async client for the paginated source API.
    Every call carries a fixed timeout; responses with status 400 or above raise SourceHttpError
    (RateLimited or ServiceUnavailable where the status says so).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_agent: str = "ComicCrawler/2.0",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (e.g. https://otruyenapi.com/v1/api)
            timeout: Per-request timeout in seconds
            user_agent: User-Agent header sent with every request
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {
            'User-Agent': user_agent,
            'Accept': 'application/json',
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.requests_made = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(('http://', 'https://')):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    async def get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """
        GET a JSON resource.

        Args:
            path_or_url: Path under the API root, or an absolute URL
            params: Optional query parameters

        Returns:
            ApiResponse for any 2xx/3xx status

        Raises:
            FetchTimeout, ConnectionFailure, SourceHttpError, UnknownFetchError
        """
        url = self._url(path_or_url)
        client = await self._get_client()
        started = time.monotonic()
        self.requests_made += 1

        try:
            response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            error = FetchTimeout(f"Timeout after {self.timeout:.0f}s: {url}")
            error.elapsed_ms = (time.monotonic() - started) * 1000
            raise error from e
        except httpx.NetworkError as e:
            error = ConnectionFailure(f"Connection failed for {url}: {e}")
            error.elapsed_ms = (time.monotonic() - started) * 1000
            raise error from e
        except httpx.HTTPError as e:
            error = UnknownFetchError(f"Request failed for {url}: {e}")
            error.elapsed_ms = (time.monotonic() - started) * 1000
            raise error from e

        elapsed_ms = (time.monotonic() - started) * 1000

        if response.status_code >= 400:
            error = http_error(response.status_code, url, response.headers, response.text)
            error.elapsed_ms = elapsed_ms
            raise error

        try:
            body = response.json()
        except ValueError:
            logger.warning("Non-JSON body from %s (%d bytes)", url, len(response.content))
            body = None

        return ApiResponse(
            url=url,
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=body,
            text=response.text,
            elapsed_ms=elapsed_ms,
        )

    async def fetch_listing(self, category: str, page: int) -> ApiResponse:
        """Fetch one listing page of a category."""
        return await self.get(f"{LIST_ENDPOINT}/{category}", params={'page': page})

    async def fetch_story(self, slug: str) -> ApiResponse:
        """Fetch full detail for one story."""
        return await self.get(f"{STORY_ENDPOINT}/{slug}")

    async def fetch_chapter(self, url: str) -> ApiResponse:
        """Fetch chapter content from its absolute API URL."""
        return await self.get(url)

    async def fetch_genres(self) -> ApiResponse:
        """Fetch the genre taxonomy."""
        return await self.get(GENRE_ENDPOINT)

    async def check_health(self) -> dict:
        """
        Check the genre endpoint.

        Returns:
            Dict with healthy, response_time_ms, status and error
        """
        started = time.monotonic()
        try:
            response = await self.fetch_genres()
        except Exception as e:
            elapsed = (time.monotonic() - started) * 1000
            logger.error("API health check failed: %s", e)
            return {
                'healthy': False,
                'response_time_ms': elapsed,
                'status': getattr(e, 'status_code', None),
                'error': str(e),
            }

        healthy = response.status_code == 200 and response.elapsed_ms < 5000
        logger.info("API health: %s (%.0fms)", "good" if healthy else "poor", response.elapsed_ms)
        return {
            'healthy': healthy,
            'response_time_ms': response.elapsed_ms,
            'status': response.status_code,
            'error': None,
        }
