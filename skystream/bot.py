"""Query side: answers mentions of the bot account from the pipeline's aggregates.

Every tick the bot searches for recent mentions, answers each new one from the
semantic cache or, on a miss, from an LLM call enriched with whatever the
semantic router asked for, and replies in a thread of size-bounded posts.
"""

import asyncio
import re
from collections import Counter
from typing import List, Optional, Tuple

from .bluesky import BlueskyClient, Post, Session, split_into_chunks
from .cache import SemanticCache
from .config import settings
from .llm import ChatModel, system_message, user_message
from .logging_setup import get_logger
from .metrics import bot_replies_total, processing_errors_total
from .router import SUMMARIZATION, TRENDING_TOPICS, SemanticRouter
from .sketches import BloomFilter
from .store import PostRepository
from .topics import TopicAggregator, TopicExtractor

logger = get_logger(__name__)

SELF = "self"
DUPLICATE = "duplicate"
EMPTY = "empty"
REPLIED = "replied"
PARTIAL = "partial"
FAILED = "failed"

ANSWER_PROMPT = (
    "You are a Bluesky bot that tells people what the network is talking about. "
    "Answer the user's question using only the data provided below. "
    "If the data is empty, say that you have nothing on it yet. "
    "Keep the answer under {max_chars} characters, plain text, no hashtags."
)


class TrendingTopicsAnalyzer:
    """Heavy-hitter topics of the current hour."""

    def __init__(self, aggregator: TopicAggregator):
        self.aggregator = aggregator

    async def trending_topics(self) -> List[str]:
        return await self.aggregator.trending()


class PostSummarizer:
    """Texts of stored posts sharing a topic with the user's query."""

    def __init__(self, extractor: TopicExtractor, posts: PostRepository, max_posts: int = settings.SUMMARY_MAX_POSTS):
        self.extractor = extractor
        self.posts = posts
        self.max_posts = max_posts

    async def summarize_posts(self, query: str) -> List[str]:
        # Query topics are not added to the topic universe
        topics = await self.extractor.extract(query, remember=False)
        logger.info("Query topics", topics=topics)
        if not topics:
            return []
        return await self.posts.find_texts_by_topics(topics, limit=self.max_posts)


class BotRunner:
    def __init__(
        self,
        bluesky: BlueskyClient,
        router: SemanticRouter,
        cache: SemanticCache,
        trending: TrendingTopicsAnalyzer,
        summarizer: PostSummarizer,
        chat: ChatModel,
        processed: BloomFilter,
        handle: str = settings.BOT_HANDLE,
        interval: float = settings.BOT_INTERVAL_SECONDS,
        max_mentions: int = settings.BOT_MAX_MENTIONS,
        lookback_hours: int = settings.BOT_LOOKBACK_HOURS,
        max_chars: int = settings.REPLY_MAX_CHARS,
    ):
        self.bluesky = bluesky
        self.router = router
        self.cache = cache
        self.trending = trending
        self.summarizer = summarizer
        self.chat = chat
        self.processed = processed
        self.handle = handle
        self.interval = interval
        self.max_mentions = max_mentions
        self.lookback_hours = lookback_hours
        self.max_chars = max_chars
        self.stats: Counter = Counter()

    def strip_handle(self, text: str, handle: Optional[str] = None) -> str:
        handle = handle or self.handle
        if handle:
            text = re.sub(rf"@{re.escape(handle)}\b", " ", text, flags=re.IGNORECASE)
        return " ".join(text.split())

    async def process_user_request(self, text: str) -> str:
        """Route the query, gather the data each route needs and ask the LLM for a short answer."""
        routes = await self.router.match_route(text)

        sections = []
        if TRENDING_TOPICS in routes:
            topics = await self.trending.trending_topics()
            sections.append("Trending topics in the last hour: " + (", ".join(topics) if topics else "none"))
        if SUMMARIZATION in routes:
            texts = await self.summarizer.summarize_posts(text)
            if texts:
                sections.append("Posts about the requested topics:\n" + "\n".join(f"- {t}" for t in texts))
            else:
                sections.append("Posts about the requested topics: none")

        logger.info("Answering request", routes=sorted(routes), enrichment_sections=len(sections))
        messages = [system_message(ANSWER_PROMPT.format(max_chars=self.max_chars))]
        if sections:
            messages.append(user_message("Data:\n" + "\n\n".join(sections)))
        messages.append(user_message("Question: " + text))
        return (await self.chat.complete(messages)).strip()

    async def answer(self, text: str) -> str:
        cached = await self.cache.get(text)
        if cached is not None:
            return cached

        answer = await self.process_user_request(text)
        if answer:
            await self.cache.put(text, answer)
        return answer

    async def reply(self, session: Session, post: Post, answer: str) -> Tuple[int, int]:
        """Post the answer as a thread under the mention; returns (chunks posted, chunks total).

        The mention is marked processed as soon as the first chunk is up, so a
        thread cut short later is never posted a second time. Failure of the first
        chunk propagates and leaves the mention for the next tick.
        """
        chunks = split_into_chunks(f"@{post.author_handle} {answer}", self.max_chars)
        root = post.thread_root
        parent = post.ref
        posted = 0
        for chunk in chunks:
            try:
                parent = await self.bluesky.create_post(session, chunk, root=root, parent=parent)
            except Exception as e:
                if not posted:
                    raise
                logger.error(
                    "Reply thread cut short",
                    uri=post.uri,
                    posted=posted,
                    total=len(chunks),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                processing_errors_total.labels(stage="bot", error_type="partial_reply").inc()
                break

            posted += 1
            if posted == 1:
                await self.processed.add(post.uri)
        return posted, len(chunks)

    async def process_post(self, session: Session, post: Post) -> str:
        if post.author_did == session.did:
            return SELF

        if await self.processed.contains(post.uri):
            logger.debug("Mention already answered", uri=post.uri)
            return DUPLICATE

        text = self.strip_handle(post.text, self.handle or session.handle)
        if not text:
            await self.processed.add(post.uri)
            return EMPTY

        answer = await self.answer(text)
        if not answer:
            logger.warning("Empty answer, not replying", uri=post.uri)
            return EMPTY

        posted, total = await self.reply(session, post, answer)
        if posted < total:
            return PARTIAL
        logger.info("Replied to mention", uri=post.uri, author=post.author_handle, chunks=posted)
        return REPLIED

    async def tick(self) -> Counter:
        """One pass over recent mentions; a failing mention never stops the others."""
        outcomes: Counter = Counter()
        session = await self.bluesky.create_session()
        handle = self.handle or session.handle
        mentions = await self.bluesky.search_mentions(session, handle, self.lookback_hours, self.max_mentions)
        logger.info("Fetched mentions", count=len(mentions))

        for post in mentions:
            try:
                outcome = await self.process_post(session, post)
            except Exception as e:
                logger.error("Failed to answer mention", uri=post.uri, error=str(e), error_type=type(e).__name__)
                processing_errors_total.labels(stage="bot", error_type=type(e).__name__).inc()
                outcome = FAILED
            outcomes[outcome] += 1
            bot_replies_total.labels(outcome=outcome).inc()

        self.stats.update(outcomes)
        return outcomes

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick with a fixed delay between the end of one pass and the start of the next."""
        logger.info("Bot started", handle=self.handle, interval=self.interval)
        while not stop_event.is_set():
            try:
                outcomes = await self.tick()
                logger.info("Bot tick complete", **dict(outcomes))
            except Exception as e:
                logger.error("Bot tick failed", error=str(e), error_type=type(e).__name__)
                processing_errors_total.labels(stage="bot", error_type="tick").inc()

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Bot stopped")
