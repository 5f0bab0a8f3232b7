"""Per-entry handlers of the filter, embed and topic stages.

Each handler is called by a :class:`~skystream.worker.StreamWorker` with the
event of one log entry and returns an outcome label. Storage and log errors
propagate (the entry is redelivered); model errors are turned into a negative
outcome so a bad post cannot wedge the group.
"""

from typing import Sequence

from .logging_setup import get_logger
from .metrics import classifier_confidence, processing_errors_total
from .models import FilteredDocument, PostEvent
from .sketches import BloomFilter
from .store import PostRepository
from .topics import TopicAggregator, TopicExtractor

logger = get_logger(__name__)

DUPLICATE = "duplicate"
TRIVIAL = "trivial"
REJECTED = "rejected"
ACCEPTED = "accepted"
EMBEDDED = "embedded"
EMBED_FAILED = "embed_failed"
TOPICS_EXTRACTED = "topics_extracted"
NO_TOPICS = "no_topics"
EXTRACTION_FAILED = "extraction_failed"


class FilterStage:
    """Keeps non-trivial posts the zero-shot classifier scores above the threshold.

    Accepted posts are written to the document store, then appended to the
    filtered log, then remembered in the stage's Bloom filter; the worker acks
    the raw entry only after all three.
    """

    name = "filter"

    def __init__(
        self,
        classifier,
        labels: Sequence[str],
        threshold: float,
        multi_label: bool,
        dedup: BloomFilter,
        posts: PostRepository,
        log,
        output_stream: str,
    ):
        self.classifier = classifier
        self.labels = list(labels)
        self.threshold = threshold
        self.multi_label = multi_label
        self.dedup = dedup
        self.posts = posts
        self.log = log
        self.output_stream = output_stream

    async def is_relevant(self, text: str) -> bool:
        try:
            scores = await self.classifier.classify(text, self.labels, self.multi_label)
        except Exception as e:
            logger.error("Classification failed, treating as irrelevant", error=str(e), error_type=type(e).__name__)
            processing_errors_total.labels(stage=self.name, error_type="classification").inc()
            return False

        if scores:
            classifier_confidence.observe(scores[0][1])
        # Strictly above: a score equal to the threshold is rejected
        return any(score > self.threshold for _, score in scores)

    async def __call__(self, event: PostEvent) -> str:
        if await self.dedup.contains(event.uri):
            logger.debug("Event already processed", uri=event.uri)
            return DUPLICATE

        if event.is_trivial:
            return TRIVIAL

        if not await self.is_relevant(event.text):
            return REJECTED

        await self.posts.save(FilteredDocument.from_event(event))
        await self.log.append(self.output_stream, event.to_fields(), msg_id=event.uri)
        await self.dedup.add(event.uri)

        logger.info("Filtered event", uri=event.uri)
        return ACCEPTED


class EmbedStage:
    """Attaches a sentence embedding to each filtered document exactly once."""

    name = "embed"

    def __init__(self, embedder, dedup: BloomFilter, posts: PostRepository):
        self.embedder = embedder
        self.dedup = dedup
        self.posts = posts

    async def __call__(self, event: PostEvent) -> str:
        if await self.dedup.contains(event.uri):
            logger.debug("Event already embedded", uri=event.uri)
            return DUPLICATE

        doc = await self.posts.get(event.uri)
        if doc is None:
            # The filter stage writes the document before appending; rebuild it from the entry
            logger.warning("Document missing, restoring from log entry", uri=event.uri)
            doc = FilteredDocument.from_event(event)
            await self.posts.save(doc)

        try:
            vector = await self.embedder.embed(doc.event.text)
        except Exception as e:
            logger.error("Embedding failed, dropping event", uri=event.uri, error=str(e))
            processing_errors_total.labels(stage=self.name, error_type="embedding").inc()
            return EMBED_FAILED

        await self.posts.set_embedding(event.uri, vector)
        await self.dedup.add(event.uri)

        logger.info("Embedded event", uri=event.uri)
        return EMBEDDED


class TopicStage:
    """Extracts topics with the LLM, stores them on the document and counts them."""

    name = "topics"

    def __init__(
        self,
        extractor: TopicExtractor,
        aggregator: TopicAggregator,
        dedup: BloomFilter,
        posts: PostRepository,
    ):
        self.extractor = extractor
        self.aggregator = aggregator
        self.dedup = dedup
        self.posts = posts

    async def __call__(self, event: PostEvent) -> str:
        if await self.dedup.contains(event.uri):
            logger.debug("Topics already extracted", uri=event.uri)
            return DUPLICATE

        try:
            topics = await self.extractor.extract(event.text)
            outcome = TOPICS_EXTRACTED if topics else NO_TOPICS
        except Exception as e:
            logger.error("Topic extraction failed, recording no topics", uri=event.uri, error=str(e))
            processing_errors_total.labels(stage=self.name, error_type="topic_extraction").inc()
            topics = []
            outcome = EXTRACTION_FAILED

        await self.posts.set_topics(event.uri, topics)
        if topics:
            await self.aggregator.record(topics)
        await self.dedup.add(event.uri)

        logger.info("Topics extracted", uri=event.uri, topics=topics)
        return outcome
