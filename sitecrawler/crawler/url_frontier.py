"""
URL Frontier implementation backed by Redis.

The frontier is a set of topics (fetch, process, dead-letter), each split
into partitions stored as Redis lists. Delayed delivery uses a sorted set
scored by due time which consumers promote as part of their poll loop.
"""

import json
import logging
import time
import uuid
import zlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import redis.asyncio as redis

from .links import InvalidLinkError, canonical_key
from ..utils.config import QueueConfig


class MalformedMessageError(ValueError):
    """Raised when a fetch-topic payload cannot be decoded."""
    pass


@dataclass
class CrawlMessage:
    """Unit of work on the fetch topic."""
    link: str
    retry_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'link': self.link,
            'retry_count': self.retry_count
        }

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> 'CrawlMessage':
        """Create CrawlMessage from dictionary."""
        link = data.get('link')
        retry_count = data.get('retry_count', 0)
        if not isinstance(link, str):
            raise MalformedMessageError(f"message has no string 'link': {data!r}")
        if isinstance(retry_count, bool) or not isinstance(retry_count, int) or retry_count < 0:
            raise MalformedMessageError(f"invalid retry_count: {retry_count!r}")
        return cls(link=link, retry_count=retry_count)

    @classmethod
    def decode(cls, payload: Union[str, bytes]) -> 'CrawlMessage':
        """
        Decode a fetch-topic payload.

        Accepts the structured record ``{"link": ..., "retry_count": ...}`` as
        well as a bare URL, which starts with a retry count of zero.
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode('utf-8')
            except UnicodeDecodeError as e:
                raise MalformedMessageError(f"payload is not UTF-8: {e}") from e

        text = payload.strip()
        if not text:
            raise MalformedMessageError("empty payload")

        if text.startswith('{'):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise MalformedMessageError(f"invalid JSON record: {e}") from e
            if not isinstance(data, dict):
                raise MalformedMessageError(f"expected a JSON object: {text!r}")
            return cls.from_dict(data)

        return cls(link=text)


def routing_key_for(link: str) -> str:
    """Route by canonical key so every URL of one page lands on one partition."""
    try:
        return canonical_key(link)
    except InvalidLinkError:
        return link


def _as_text(value: Union[str, bytes]) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else value


class URLFrontier:
    """
    Partitioned topics on Redis lists.

    Messages are routed to a partition by CRC32 of a routing key, so all
    messages for one key keep their relative order.
    """

    def __init__(self, redis_client: redis.Redis, config: QueueConfig):
        self.redis_client = redis_client
        self.config = config
        self.topics = config.topics
        self.partitions = config.partitions
        self.logger = logging.getLogger(__name__)

        self.delayed_key = f"{config.key_prefix}:delayed"

        self.stats = {
            'published': 0,
            'consumed': 0,
            'scheduled': 0,
            'promoted': 0,
            'requeued': 0
        }

    def partition_key(self, topic: str, partition: int) -> str:
        """Redis list name for one partition of a topic."""
        return f"{self.config.key_prefix}:{topic}:{partition}"

    def partition_for(self, routing_key: str) -> int:
        return zlib.crc32(routing_key.encode('utf-8')) % self.partitions

    def _target(self, topic: str, routing_key: Optional[str]) -> str:
        partition = self.partition_for(routing_key) if routing_key else 0
        return self.partition_key(topic, partition)

    async def publish(self, topic: str, payload: str, routing_key: Optional[str] = None):
        """Append a payload to a topic."""
        target = self._target(topic, routing_key)
        await self.redis_client.rpush(target, payload)
        self.stats['published'] += 1
        self.logger.debug(f"Published to {target}: {payload}")

    async def schedule(self, topic: str, payload: str, delay: float,
                       routing_key: Optional[str] = None, now: Optional[float] = None):
        """Publish a payload once ``delay`` seconds have passed."""
        now = time.time() if now is None else now
        envelope = json.dumps({
            'id': uuid.uuid4().hex,
            'queue': self._target(topic, routing_key),
            'payload': payload
        })
        await self.redis_client.zadd(self.delayed_key, {envelope: now + delay})
        self.stats['scheduled'] += 1

    async def promote_due(self, now: Optional[float] = None, limit: int = 100) -> int:
        """
        Move delayed messages whose due time has passed onto their topics.

        Removing the envelope from the sorted set is the claim, so concurrent
        consumers never promote the same message twice.
        """
        now = time.time() if now is None else now
        due = await self.redis_client.zrangebyscore(self.delayed_key, '-inf', now, start=0, num=limit)

        promoted = 0
        for member in due:
            if not await self.redis_client.zrem(self.delayed_key, member):
                continue
            envelope = json.loads(_as_text(member))
            await self.redis_client.rpush(envelope['queue'], envelope['payload'])
            promoted += 1

        if promoted:
            self.stats['promoted'] += promoted
            self.logger.debug(f"Promoted {promoted} delayed messages")
        return promoted

    async def claim(self, topic: str, partitions: Sequence[int], batch_size: int,
                    timeout: float = 0.0) -> List[Tuple[str, str]]:
        """
        Pop up to ``batch_size`` messages from the given partitions.

        Returns ``(partition list, payload)`` pairs so that unhandled messages
        can be given back with ``requeue``. Drains without blocking first; if
        nothing is queued and ``timeout`` is positive, blocks for at most
        ``timeout`` seconds for one message.
        """
        keys = [self.partition_key(topic, partition) for partition in partitions]
        claimed: List[Tuple[str, str]] = []

        for key in keys:
            remaining = batch_size - len(claimed)
            if remaining <= 0:
                break
            items = await self.redis_client.lpop(key, remaining)
            if items:
                claimed.extend((key, _as_text(item)) for item in items)

        if not claimed and timeout > 0:
            item = await self.redis_client.blpop(keys, timeout=timeout)
            if item:
                claimed.append((_as_text(item[0]), _as_text(item[1])))

        self.stats['consumed'] += len(claimed)
        return claimed

    async def poll(self, topic: str, partitions: Sequence[int], batch_size: int,
                   timeout: float = 0.0) -> List[str]:
        """Like ``claim`` but returns the payloads only."""
        return [payload for _, payload in await self.claim(topic, partitions, batch_size, timeout)]

    async def requeue(self, claimed: Sequence[Tuple[str, str]]):
        """Push claimed messages back to the head of their partitions, keeping their order."""
        for key, payload in reversed(claimed):
            await self.redis_client.lpush(key, payload)
        self.stats['consumed'] -= len(claimed)
        if claimed:
            self.stats['requeued'] += len(claimed)
            self.logger.info(f"Returned {len(claimed)} unhandled messages to their partitions")

    # Topic-specific helpers

    async def schedule_fetch(self, message: CrawlMessage, delay: float,
                             routing_key: Optional[str] = None):
        await self.schedule(self.topics.fetch, message.encode(), delay, routing_key or routing_key_for(message.link))

    async def publish_link(self, link: str):
        """Put a newly discovered link on the fetch topic as a bare URL."""
        await self.publish(self.topics.fetch, link, routing_key_for(link))

    async def publish_process(self, key: str):
        await self.publish(self.topics.process, key, key)

    async def publish_dead_letter(self, link: str):
        await self.publish(self.topics.dead_letter, link, link)

    async def topic_depth(self, topic: str) -> int:
        """Number of messages waiting across all partitions of a topic."""
        total = 0
        for partition in range(self.partitions):
            total += await self.redis_client.llen(self.partition_key(topic, partition))
        return total

    async def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            **self.stats,
            'fetch_queued': await self.topic_depth(self.topics.fetch),
            'process_queued': await self.topic_depth(self.topics.process),
            'dead_lettered': await self.topic_depth(self.topics.dead_letter),
            'delayed': await self.redis_client.zcard(self.delayed_key)
        }
