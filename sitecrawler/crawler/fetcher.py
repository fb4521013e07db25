"""
HTTP fetching for the fetch stage.

The fetcher never raises for network trouble: every outcome comes back as a
``FetchResult`` and the caller decides between storing and retrying.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientTimeout, InvalidURL


# Statuses treated like a network failure and retried
NOT_FOUND_STATUSES = frozenset({404, 410})


@dataclass
class FetchResult:
    """Raw outcome of one GET."""
    url: str
    status_code: int
    content: Optional[bytes] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    invalid_url: bool = False

    @property
    def transient_failure(self) -> bool:
        """True when the fetch should be retried later."""
        if self.invalid_url:
            return False
        return self.error is not None or self.status_code in NOT_FOUND_STATUSES


class WebFetcher:
    """
    Downloads pages as raw bytes over one shared aiohttp session.

    Any response other than 404/410 counts as fetched, whatever its status:
    an error page is content too. Bodies are not decoded here.
    """

    def __init__(self, user_agent: str, request_timeout: int = 30):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'requests': 0,
            'responses': 0,
            'not_found': 0,
            'errors': 0,
            'invalid_urls': 0,
            'bytes_received': 0
        }

    async def start(self):
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=ClientTimeout(total=self.request_timeout),
            headers={'User-Agent': self.user_agent}
        )
        self.logger.info(f"HTTP session opened (timeout {self.request_timeout}s)")

    async def close(self):
        if self.session is None:
            return
        await self.session.close()
        self.session = None
        self.logger.info("HTTP session closed")

    async def fetch(self, url: str) -> FetchResult:
        """GET ``url`` and return its body, or the reason it could not be fetched."""
        if self.session is None:
            await self.start()

        self.stats['requests'] += 1
        started = time.monotonic()

        try:
            async with self.session.get(url) as response:
                body = await response.read()
                status = response.status
                content_type = response.content_type
        except asyncio.TimeoutError:
            return self._failed(url, started, f"timed out after {self.request_timeout}s")
        except (InvalidURL, ValueError) as e:
            # rejected before connecting
            self.stats['invalid_urls'] += 1
            self.logger.warning(f"Refusing to fetch {url}: {type(e).__name__}: {e}")
            return FetchResult(url=url, status_code=0, error=str(e), invalid_url=True)
        except ClientError as e:
            return self._failed(url, started, f"{type(e).__name__}: {e}")

        result = FetchResult(
            url=url,
            status_code=status,
            content=body,
            content_type=content_type,
            fetch_time=time.monotonic() - started
        )

        if result.transient_failure:
            self.stats['not_found'] += 1
            self.logger.info(f"{url} answered {status}")
        else:
            self.stats['responses'] += 1
            self.stats['bytes_received'] += len(body)
            self.logger.debug(f"{url} answered {status} with {len(body)} bytes in {result.fetch_time:.2f}s")

        return result

    def _failed(self, url: str, started: float, error: str) -> FetchResult:
        self.stats['errors'] += 1
        self.logger.warning(f"Fetch failed for {url}: {error}")
        return FetchResult(url=url, status_code=0, error=error, fetch_time=time.monotonic() - started)

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
