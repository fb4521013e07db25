"""
Bounded retry and dead-letter handling for fetch failures.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from .url_frontier import CrawlMessage, URLFrontier, routing_key_for


MAX_RETRY_COUNT = 5
RETRY_DELAY = 5.0


class CrawlState(Enum):
    """Lifecycle of one crawl message."""
    PENDING = "pending"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self in (CrawlState.SUCCEEDED, CrawlState.DEAD_LETTERED)


TRANSITIONS = {
    CrawlState.PENDING: {CrawlState.FETCHING},
    CrawlState.FETCHING: {CrawlState.SUCCEEDED, CrawlState.RETRYING, CrawlState.DEAD_LETTERED},
    CrawlState.RETRYING: {CrawlState.FETCHING},
    CrawlState.SUCCEEDED: set(),
    CrawlState.DEAD_LETTERED: set(),
}


class InvalidTransitionError(Exception):
    """Raised on a state change the lifecycle does not allow."""
    pass


class CrawlAttempt:
    """Tracks the state of one message while a worker handles it."""

    def __init__(self, message: CrawlMessage, state: CrawlState = CrawlState.PENDING):
        self.message = message
        self.state = state

    def transition(self, new_state: CrawlState):
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.message.link}: cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state


class RetryCoordinator:
    """
    Decides what happens to a message whose fetch failed transiently.

    The retry count is incremented; once it exceeds ``max_retries`` the bare
    URL goes to the dead-letter topic and is never retried again. Otherwise
    the message is re-published to the fetch topic after ``retry_delay``
    seconds through the frontier's delayed delivery, which never blocks the
    consume loop.
    """

    def __init__(self, frontier: URLFrontier, max_retries: int = MAX_RETRY_COUNT,
                 retry_delay: float = RETRY_DELAY):
        self.frontier = frontier
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'retries_scheduled': 0,
            'dead_lettered': 0
        }

    async def handle_failure(self, attempt: CrawlAttempt, reason: Optional[str] = None) -> CrawlState:
        """Route a failed attempt to retry or dead-letter and return its new state."""
        message = attempt.message
        message.retry_count += 1

        if message.retry_count > self.max_retries:
            await self.frontier.publish_dead_letter(message.link)
            attempt.transition(CrawlState.DEAD_LETTERED)
            self.stats['dead_lettered'] += 1
            self.logger.warning(
                f"Retry count exceeded for {message.link} ({reason}), added to dead letter queue"
            )
            return attempt.state

        await self.frontier.schedule_fetch(message, self.retry_delay, routing_key_for(message.link))
        attempt.transition(CrawlState.RETRYING)
        self.stats['retries_scheduled'] += 1
        self.logger.info(
            f"Retrying {message.link} in {self.retry_delay}s "
            f"({message.retry_count}/{self.max_retries}): {reason}"
        )
        return attempt.state

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
