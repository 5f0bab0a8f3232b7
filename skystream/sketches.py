"""Probabilistic structures kept in Redis: dedup filters, topic frequencies, topic vocabulary.

All of them are safe to share between workers and processes; Redis serialises
the updates, so no in-process locking is needed.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from .config import settings
from .logging_setup import get_logger

logger = get_logger(__name__)

TOPK_KEYSPACE = "topics-topk:"
CMS_KEYSPACE = "topics-cms:"


def hour_bucket(now: Optional[datetime] = None) -> str:
    """UTC hour the timestamp falls in, e.g. ``2025-05-01T14:00``."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:00")


def topk_key(now: Optional[datetime] = None) -> str:
    return TOPK_KEYSPACE + hour_bucket(now)


def cms_key(now: Optional[datetime] = None) -> str:
    return CMS_KEYSPACE + hour_bucket(now)


def _already_exists(error: ResponseError) -> bool:
    return "exists" in str(error).lower()


class BloomFilter:
    """Per-stage dedup set keyed by post uri."""

    def __init__(
        self,
        client: Redis,
        name: str,
        capacity: int = settings.BLOOM_CAPACITY,
        error_rate: float = settings.BLOOM_ERROR_RATE,
    ):
        self.client = client
        self.name = name
        self.capacity = capacity
        self.error_rate = error_rate

    async def ensure(self):
        try:
            await self.client.bf().create(self.name, self.error_rate, self.capacity)
            logger.info("Bloom filter created", name=self.name, capacity=self.capacity, error_rate=self.error_rate)
        except ResponseError as e:
            if not _already_exists(e):
                raise
            logger.info("Bloom filter already exists", name=self.name)

    async def contains(self, item: str) -> bool:
        return bool(await self.client.bf().exists(self.name, item))

    async def add(self, item: str):
        await self.client.bf().add(self.name, item)


class TopK:
    """Heavy-hitters over hour-bucketed keys."""

    def __init__(
        self,
        client: Redis,
        k: int = settings.TOPK_K,
        width: int = settings.TOPK_WIDTH,
        depth: int = settings.TOPK_DEPTH,
        decay: float = settings.TOPK_DECAY,
    ):
        self.client = client
        self.k = k
        self.width = width
        self.depth = depth
        self.decay = decay

    async def ensure(self, key: str):
        try:
            await self.client.topk().reserve(key, self.k, self.width, self.depth, self.decay)
            logger.info("Top-K created", key=key, k=self.k)
        except ResponseError as e:
            if not _already_exists(e):
                raise
            logger.debug("Top-K already exists", key=key)

    async def incr_by(self, key: str, counts: Dict[str, int]):
        if not counts:
            return
        await self.client.topk().incrby(key, list(counts.keys()), list(counts.values()))

    async def list(self, key: str) -> List[str]:
        try:
            items = await self.client.topk().list(key)
        except ResponseError as e:
            # Nothing has been counted in this hour yet
            logger.info("Top-K not available", key=key, error=str(e))
            return []
        return [item for item in items or [] if item]


class CountMinSketch:
    """Approximate per-topic counts, the alternative to Top-K."""

    def __init__(self, client: Redis, width: int = settings.CMS_WIDTH, depth: int = settings.CMS_DEPTH):
        self.client = client
        self.width = width
        self.depth = depth

    async def ensure(self, key: str):
        try:
            await self.client.cms().initbydim(key, self.width, self.depth)
            logger.info("Count-min sketch created", key=key, width=self.width, depth=self.depth)
        except ResponseError as e:
            if not _already_exists(e):
                raise
            logger.debug("Count-min sketch already exists", key=key)

    async def incr_by(self, key: str, counts: Dict[str, int]):
        if not counts:
            return
        await self.client.cms().incrby(key, list(counts.keys()), list(counts.values()))

    async def query(self, key: str, item: str) -> int:
        try:
            counts = await self.client.cms().query(key, item)
        except ResponseError:
            return 0
        return int(counts[0]) if counts else 0


class TopicUniverse:
    """Every topic string ever extracted; additive only."""

    def __init__(self, client: Redis, key: str = settings.TOPIC_UNIVERSE_KEY):
        self.client = client
        self.key = key

    async def members(self) -> Set[str]:
        return set(await self.client.smembers(self.key))

    async def add(self, topics: Iterable[str]):
        topics = [t for t in topics if t]
        if topics:
            await self.client.sadd(self.key, *topics)
