"""
Fetch stage: downloads pages from the fetch topic and stores changed content.
"""

import logging
from typing import Dict, Optional, Union

from .fetcher import WebFetcher
from .links import InvalidLinkError, canonical_key, normalize_scheme
from .retry import CrawlAttempt, CrawlState, RetryCoordinator
from .url_frontier import CrawlMessage, MalformedMessageError, URLFrontier
from ..storage.duplicate_detector import DuplicateDetector
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


class FetchWorker:
    """
    Handles fetch-topic messages one at a time.

    For each message: derive the canonical key, fetch the page, run the
    upsert-if-changed protocol and, when the stored content changed, publish
    the key to the process topic. Transient fetch failures go to the retry
    coordinator; undecodable messages and links that cannot be keyed or
    requested are dropped.
    Storage errors are not handled here and stop the worker.
    """

    def __init__(self, frontier: URLFrontier, fetcher: WebFetcher,
                 duplicate_detector: DuplicateDetector, retry_coordinator: RetryCoordinator,
                 monitor: Optional[CrawlerMonitor] = None, worker_id: str = "fetch-worker"):
        self.frontier = frontier
        self.fetcher = fetcher
        self.duplicate_detector = duplicate_detector
        self.retry_coordinator = retry_coordinator
        self.monitor = monitor
        self.logger = get_crawler_logger(__name__, worker=worker_id)

        self.stats = {
            'received': 0,
            'dropped': 0,
            'stored': 0,
            'unchanged': 0,
            'retried': 0,
            'dead_lettered': 0
        }

    def _drop(self, reason: str, message: str):
        self.stats['dropped'] += 1
        if self.monitor:
            self.monitor.record_dropped(reason)
        self.logger.warning(message)

    async def handle_message(self, payload: Union[str, bytes]) -> Optional[CrawlState]:
        """Process one fetch-topic payload. Returns the final state, or None if dropped."""
        self.stats['received'] += 1

        try:
            message = CrawlMessage.decode(payload)
        except MalformedMessageError as e:
            self._drop('malformed_message', f"Failed to decode message {payload!r}: {e}, skipping")
            return None

        try:
            key = canonical_key(message.link)
        except InvalidLinkError as e:
            self._drop('invalid_link', f"Failed to parse URL {message.link!r}: {e}, skipping")
            return None

        initial = CrawlState.RETRYING if message.retry_count else CrawlState.PENDING
        attempt = CrawlAttempt(message, initial)
        attempt.transition(CrawlState.FETCHING)

        result = await self.fetcher.fetch(normalize_scheme(message.link))
        if result.invalid_url:
            self._drop('invalid_link', f"Cannot fetch {message.link!r}: {result.error}, skipping")
            return None

        if self.monitor:
            self.monitor.record_fetch(not result.transient_failure, result.fetch_time)

        if result.transient_failure:
            reason = result.error or f"HTTP {result.status_code}"
            state = await self.retry_coordinator.handle_failure(attempt, reason)
            if state is CrawlState.DEAD_LETTERED:
                self.stats['dead_lettered'] += 1
                if self.monitor:
                    self.monitor.record_dead_letter()
            else:
                self.stats['retried'] += 1
                if self.monitor:
                    self.monitor.record_retry()
            return state

        outcome = await self.duplicate_detector.upsert_if_changed(key, result.content or b'')
        if self.monitor:
            self.monitor.record_upsert(outcome.value)

        if outcome.changed:
            await self.frontier.publish_process(key)
            self.stats['stored'] += 1
            self.logger.log_url_event(logging.INFO, key, f"Queued {key} for processing ({outcome.value})")
        else:
            self.stats['unchanged'] += 1

        attempt.transition(CrawlState.SUCCEEDED)
        return attempt.state

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
