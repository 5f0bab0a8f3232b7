"""Semantic router: maps a free-text query to the handlers that should answer it.

Queries are split into clauses and every clause is matched against the single
nearest routing reference. A reference carries its own cutoff, so a compound
question can fan out to several routes.
"""

import hashlib
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .logging_setup import get_logger
from .metrics import router_matches_total
from .models import RoutingReference
from .store import DocumentStore

logger = get_logger(__name__)

TRENDING_TOPICS = "trending_topics"
SUMMARIZATION = "summarization"

_CLAUSE_SEPARATORS = re.compile(r"[!?,.:;()\"\[\]{}]+")

TRENDING_TOPICS_REFERENCES = [
    "What are the most mentioned topics?",
    "What's trending right now?",
    "What’s hot in the network",
    "Top topics?",
    "What are the most discussed topics?",
    "What are the most popular topics?",
    "What are the most talked about topics?",
    "What are the most mentioned topics in the AI community?",
]

SUMMARIZATION_REFERENCES = [
    "What are people saying about {topics}?",
    "What’s the buzz around {topics}?",
    "Any chatter about {topics}?",
    "What are folks talking about regarding {topics}?",
    "What’s being said about {topics} lately?",
    "What have people been posting about {topics}?",
    "What's trending in conversations about {topics}?",
    "What’s the latest talk on {topics}?",
    "Any recent posts about {topics}?",
    "What's the sentiment around {topics}?",
    "What are people saying about {topic1} and {topic2}?",
    "What are folks talking about when it comes to {topic1}, {topic2}, or both?",
    "What’s being said about {topic1}, {topic2}, and others?",
    "Is there any discussion around {topic1} and {topic2}?",
    "How are people reacting to both {topic1} and {topic2}?",
    "What’s the conversation like around {topic1}, {topic2}, or related topics?",
    "Are {topic1} and {topic2} being discussed together?",
    "Any posts comparing {topic1} and {topic2}?",
    "What's trending when it comes to {topic1} and {topic2}?",
    "What are people saying about the relationship between {topic1} and {topic2}?",
    "What’s the latest discussion on {topic1} and {topic2}?",
]

# route -> (cutoff, phrases)
DEFAULT_ROUTES: Dict[str, Tuple[float, List[str]]] = {
    TRENDING_TOPICS: (0.2, TRENDING_TOPICS_REFERENCES),
    SUMMARIZATION: (0.55, SUMMARIZATION_REFERENCES),
}


def split_clauses(text: str) -> List[str]:
    return [clause.strip() for clause in _CLAUSE_SEPARATORS.split(text or "") if clause.strip()]


def reference_id(route: str, text: str) -> str:
    return hashlib.sha1(f"{route}:{text}".encode("utf-8")).hexdigest()


class SemanticRouter:
    """Nearest-reference classifier over the routing index."""

    def __init__(self, store: DocumentStore, embedder):
        self.store = store
        self.embedder = embedder

    async def references_loaded(self) -> bool:
        return await self.store.count() > 0

    async def load_references(self, texts: Iterable[str], route: str, threshold: float) -> int:
        """Embed and store reference phrases for ``route``; reloading a phrase overwrites it."""
        loaded = 0
        for text in texts:
            vector = await self.embedder.embed(text)
            reference = RoutingReference(text=text, route=route, threshold=threshold, embedding=vector)
            await self.store.upsert(
                reference_id(route, text),
                {
                    "text": reference.text,
                    "route": reference.route,
                    "minThreshold": reference.threshold,
                    "textEmbedding": reference.embedding,
                },
            )
            loaded += 1

        logger.info("Routing references loaded", route=route, count=loaded, threshold=threshold)
        return loaded

    async def bootstrap(self, routes: Optional[Dict[str, Tuple[float, List[str]]]] = None) -> bool:
        """Load the built-in references unless the index already holds some."""
        if await self.references_loaded():
            logger.info("Routing references already present")
            return False

        for route, (threshold, texts) in (routes or DEFAULT_ROUTES).items():
            await self.load_references(texts, route, threshold)
        return True

    async def nearest(self, clause: str) -> Optional[Tuple[RoutingReference, float]]:
        vector = await self.embedder.embed(clause)
        hits = await self.store.vector_knn(vector, 1, ["text", "route", "minThreshold"])
        if not hits:
            return None

        fields, distance = hits[0]
        reference = RoutingReference(
            text=fields.get("text", ""),
            route=fields.get("route", ""),
            threshold=float(fields.get("minThreshold") or 0.0),
        )
        return reference, distance

    async def match_route(self, text: str) -> Set[str]:
        """Routes whose nearest reference is within its own cutoff, over all clauses."""
        routes: Set[str] = set()
        for clause in split_clauses(text):
            match = await self.nearest(clause)
            if match is None:
                continue

            reference, distance = match
            if distance <= reference.threshold:
                routes.add(reference.route)
                router_matches_total.labels(route=reference.route).inc()
                logger.debug(
                    "Clause routed", clause=clause, route=reference.route, reference=reference.text, distance=distance
                )
            else:
                logger.debug("Clause unrouted", clause=clause, nearest=reference.text, distance=distance)

        logger.info("Query routed", routes=sorted(routes), clauses=len(split_clauses(text)))
        return routes
