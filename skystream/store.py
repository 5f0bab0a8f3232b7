"""Document persistence over Redis search indexes.

Each record type declares its schema explicitly (:class:`IndexSchema`) and the
index is registered with Redis at startup. Documents are stored as hashes under
``<prefix><id>``; vectors as little-endian float32 blobs, tag lists joined with
commas.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from redis.asyncio import Redis
from redis.commands.search.field import NumericField, TagField, TextField, VectorField
from redis.commands.search.index_definition import IndexDefinition, IndexType
from redis.commands.search.query import Query
from redis.exceptions import ResponseError

from .logging_setup import get_logger
from .models import FilteredDocument, PostEvent

logger = get_logger(__name__)

TAG_SEPARATOR = ","
_TAG_SPECIAL = re.compile(r"([,.<>{}\[\]\"':;!@#$%^&*()\-+=~|/\\ ])")


@dataclass(frozen=True)
class IndexSchema:
    index_name: str
    prefix: str
    vector_field: str
    vector_dim: int
    distance_metric: str = "COSINE"
    text_fields: Tuple[str, ...] = ()
    tag_fields: Tuple[str, ...] = ()
    numeric_fields: Tuple[str, ...] = ()
    extra_fields: Tuple[str, ...] = field(default=())  # stored, not indexed

    def redis_fields(self) -> list:
        fields = [TextField(name) for name in self.text_fields]
        fields += [TagField(name, separator=TAG_SEPARATOR) for name in self.tag_fields]
        fields += [NumericField(name) for name in self.numeric_fields]
        fields.append(
            VectorField(
                self.vector_field,
                "HNSW",
                {"TYPE": "FLOAT32", "DIM": self.vector_dim, "DISTANCE_METRIC": self.distance_metric},
            )
        )
        return fields


POSTS_SCHEMA = IndexSchema(
    index_name="StreamEventIdx",
    prefix="StreamEvent:",
    vector_field="textEmbedding",
    vector_dim=384,
    text_fields=("text",),
    tag_fields=("langs", "topics"),
    numeric_fields=("timeUs",),
)

ROUTING_SCHEMA = IndexSchema(
    index_name="RoutingIdx",
    prefix="Routing:",
    vector_field="textEmbedding",
    vector_dim=3072,
    text_fields=("text",),
    extra_fields=("route", "minThreshold"),
)

CACHE_SCHEMA = IndexSchema(
    index_name="SemanticCacheIdx",
    prefix="SemanticCacheEntry:",
    vector_field="postEmbedding",
    vector_dim=3072,
    text_fields=("post",),
    extra_fields=("answer",),
)


def escape_tag(value: str) -> str:
    return _TAG_SPECIAL.sub(r"\\\1", value)


def vector_to_bytes(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


class DocumentStore:
    """Persistence port for one schema: upsert, partial update, tag and k-NN queries."""

    def __init__(self, client: Redis, schema: IndexSchema):
        # The client must not decode responses: vector fields are raw bytes
        self.client = client
        self.schema = schema

    def key(self, doc_id: str) -> str:
        return f"{self.schema.prefix}{doc_id}"

    async def ensure_index(self):
        index = self.client.ft(self.schema.index_name)
        try:
            await index.info()
            logger.info("Search index exists", index=self.schema.index_name)
            return
        except ResponseError:
            pass

        try:
            await index.create_index(
                self.schema.redis_fields(),
                definition=IndexDefinition(prefix=[self.schema.prefix], index_type=IndexType.HASH),
            )
            logger.info("Search index created", index=self.schema.index_name, dim=self.schema.vector_dim)
        except ResponseError as e:
            if "already exists" not in str(e).lower():
                raise
            logger.info("Search index already exists", index=self.schema.index_name)

    def _encode(self, name: str, value: Any):
        if name == self.schema.vector_field:
            return vector_to_bytes(value)
        if name in self.schema.tag_fields:
            return TAG_SEPARATOR.join(value)
        return str(value)

    def _decode(self, name: str, raw: bytes):
        if name == self.schema.vector_field:
            return np.frombuffer(raw, dtype=np.float32)
        text = raw.decode("utf-8")
        if name in self.schema.tag_fields:
            return [item for item in text.split(TAG_SEPARATOR) if item]
        return text

    async def upsert(self, doc_id: str, mapping: Dict[str, Any]):
        encoded = {name: self._encode(name, value) for name, value in mapping.items()}
        await self.client.hset(self.key(doc_id), mapping=encoded)

    async def update_field(self, doc_id: str, name: str, value: Any):
        await self.client.hset(self.key(doc_id), name, self._encode(name, value))

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.hgetall(self.key(doc_id))
        if not raw:
            return None
        doc = {}
        for name, value in raw.items():
            name = name.decode("utf-8") if isinstance(name, bytes) else name
            doc[name] = self._decode(name, value)
        return doc

    async def count(self) -> int:
        result = await self.client.ft(self.schema.index_name).search(Query("*").paging(0, 0))
        return result.total

    async def find_by_tag_intersection(
        self, name: str, values: Iterable[str], return_fields: Sequence[str], limit: int = 100
    ) -> List[Dict[str, str]]:
        """Documents whose tag field shares at least one value with ``values``."""
        values = [v for v in values if v]
        if not values:
            return []
        expr = "|".join(escape_tag(v) for v in values)
        query = (
            Query(f"@{name}:{{{expr}}}")
            .return_fields(*return_fields)
            .paging(0, limit)
            .dialect(2)
        )
        result = await self.client.ft(self.schema.index_name).search(query)
        return [self._doc_fields(doc, return_fields) for doc in result.docs]

    async def vector_knn(
        self, vector, k: int, return_fields: Sequence[str], max_distance: Optional[float] = None
    ) -> List[Tuple[Dict[str, str], float]]:
        """Nearest documents by the schema's vector field, closest first."""
        query = (
            Query(f"*=>[KNN {k} @{self.schema.vector_field} $vec AS distance]")
            .sort_by("distance")
            .return_fields(*return_fields, "distance")
            .paging(0, k)
            .dialect(2)
        )
        result = await self.client.ft(self.schema.index_name).search(
            query, query_params={"vec": vector_to_bytes(vector)}
        )
        hits = []
        for doc in result.docs:
            distance = float(doc.distance)
            if max_distance is not None and distance > max_distance:
                continue
            hits.append((self._doc_fields(doc, return_fields), distance))
        return hits

    def _doc_fields(self, doc, return_fields: Sequence[str]) -> Dict[str, str]:
        fields = {"id": doc.id[len(self.schema.prefix):]}
        for name in return_fields:
            fields[name] = getattr(doc, name, "")
        return fields


class PostRepository:
    """FilteredDocument persistence on top of the posts index."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def save(self, doc: FilteredDocument):
        """Idempotent upsert; fields added by later stages are left in place."""
        event = doc.event
        mapping = {
            "id": event.uri,
            "uri": event.uri,
            "did": event.did,
            "rkey": event.rkey,
            "text": event.text,
            "timeUs": event.time_us,
            "operation": event.operation,
            "parentUri": event.parent_uri,
            "rootUri": event.root_uri,
            "langs": event.langs,
            "createdAt": event.created_at,
            "cid": event.cid,
        }
        if doc.topics:
            mapping["topics"] = doc.topics
        if doc.text_embedding is not None:
            mapping["textEmbedding"] = doc.text_embedding
        await self.store.upsert(event.uri, mapping)

    async def get(self, uri: str) -> Optional[FilteredDocument]:
        raw = await self.store.get(uri)
        if raw is None:
            return None
        event = PostEvent(
            uri=raw.get("uri") or uri,
            did=raw.get("did", ""),
            rkey=raw.get("rkey", ""),
            text=raw.get("text", ""),
            time_us=int(raw.get("timeUs") or 0),
            operation=raw.get("operation", ""),
            parent_uri=raw.get("parentUri", ""),
            root_uri=raw.get("rootUri", ""),
            langs=list(raw.get("langs") or []),
            created_at=raw.get("createdAt", ""),
            cid=raw.get("cid", ""),
        )
        return FilteredDocument(
            event=event,
            text_embedding=raw.get("textEmbedding"),
            topics=list(raw.get("topics") or []),
        )

    async def set_embedding(self, uri: str, vector):
        await self.store.update_field(uri, "textEmbedding", vector)

    async def set_topics(self, uri: str, topics: List[str]):
        await self.store.update_field(uri, "topics", topics)

    async def find_texts_by_topics(self, topics: Iterable[str], limit: int = 100) -> List[str]:
        docs = await self.store.find_by_tag_intersection("topics", topics, ["text"], limit=limit)
        return [doc["text"] for doc in docs if doc.get("text")]
