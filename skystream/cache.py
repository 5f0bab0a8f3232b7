import hashlib
from typing import Optional

from .config import settings
from .logging_setup import get_logger
from .metrics import semantic_cache_lookups_total
from .models import CacheEntry
from .store import DocumentStore

logger = get_logger(__name__)


def entry_id(post: str) -> str:
    return hashlib.sha1(post.encode("utf-8")).hexdigest()


class SemanticCache:
    """Answers keyed by the meaning of the question rather than its exact text.

    A lookup is a hit only when the closest stored post is strictly nearer
    than ``threshold`` in cosine distance. Entries never expire; storing the
    same post twice keeps the last answer.
    """

    def __init__(self, store: DocumentStore, embedder, threshold: float = settings.SEMANTIC_CACHE_THRESHOLD):
        self.store = store
        self.embedder = embedder
        self.threshold = threshold

    async def get(self, post: str) -> Optional[str]:
        vector = await self.embedder.embed(post)
        hits = await self.store.vector_knn(vector, 1, ["post", "answer"])

        if hits:
            fields, distance = hits[0]
            if distance < self.threshold:
                semantic_cache_lookups_total.labels(result="hit").inc()
                logger.info("Semantic cache hit", post=post, cached_post=fields.get("post"), distance=distance)
                return fields.get("answer")
            logger.debug("Nearest cache entry too far", post=post, distance=distance)

        semantic_cache_lookups_total.labels(result="miss").inc()
        return None

    async def put(self, post: str, answer: str) -> CacheEntry:
        vector = await self.embedder.embed(post)
        entry = CacheEntry(post=post, answer=answer, embedding=vector)
        await self.store.upsert(
            entry_id(post),
            {"post": entry.post, "answer": entry.answer, "postEmbedding": entry.embedding},
        )
        logger.debug("Semantic cache entry stored", post=post)
        return entry
