import asyncio
import random
import signal
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, List, Optional

import uvicorn
from redis.asyncio import Redis

from .bluesky import BlueskyClient
from .bot import BotRunner, PostSummarizer, TrendingTopicsAnalyzer
from .cache import SemanticCache
from .classifier import ZeroShotClassifier
from .config import settings
from .embeddings import OpenAIEmbedder, SentenceEmbedder
from .health import create_health_api
from .ingest import FirehoseIngestor
from .llm import ChatModel, create_openai_client
from .logging_setup import bind_stage, get_logger
from .metrics import redis_connected
from .router import SemanticRouter
from .sketches import BloomFilter, CountMinSketch, TopicUniverse, TopK
from .stages import EmbedStage, FilterStage, TopicStage
from .store import CACHE_SCHEMA, POSTS_SCHEMA, ROUTING_SCHEMA, DocumentStore, PostRepository
from .stream_log import StreamLog
from .topics import TopicAggregator, TopicExtractor, prompt_for_domain
from .worker import WorkerPool

logger = get_logger(__name__)

STAGES = ("ingest", "filter", "embed", "topics", "bot")

# Connections each stage must hold before it reports ready
READINESS = {
    "ingest": ("nats", "firehose"),
    "filter": ("nats", "redis"),
    "embed": ("nats", "redis"),
    "topics": ("nats", "redis"),
    "bot": ("redis",),
}

STATS_INTERVAL = 20


def build_aggregator(redis: Redis, mode: str = settings.TOPIC_AGGREGATOR) -> TopicAggregator:
    if mode not in ("topk", "cms", "both"):
        raise ValueError(f"Unknown topic aggregator: {mode}")
    topk = TopK(redis) if mode in ("topk", "both") else None
    cms = CountMinSketch(redis) if mode in ("cms", "both") else None
    return TopicAggregator(topk=topk, cms=cms)


class PipelineService:
    """Runs one pipeline stage (or the bot) as a process.

    Collaborators are created once at startup and released on shutdown; the
    stage itself runs as a background task next to the health server and the
    periodic stats logger.
    """

    def __init__(self, stage: str):
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        logger.info("Initializing pipeline service", service=settings.SERVICE_NAME, stage=stage)
        self.stage = stage

        # Web server for health checks
        app = create_health_api(READINESS[stage])
        config = uvicorn.Config(app, host="0.0.0.0", port=settings.HEALTH_CHECK_PORT, log_level="info")
        self.server = uvicorn.Server(config)

        # Lifecycle management
        self.stop_event = asyncio.Event()
        self.loop = asyncio.get_running_loop()
        self._tasks: List[asyncio.Task] = []
        self._runner_task: Optional[asyncio.Task] = None
        self._closers: List[Callable[[], Awaitable[None]]] = []

        # Collaborators, created by start()
        self.log: Optional[StreamLog] = None
        self.redis: Optional[Redis] = None
        self.redis_bytes: Optional[Redis] = None
        # CPU-bound inference gets its own threads so it never starves the I/O pool
        self.executor = ThreadPoolExecutor(max_workers=settings.INFERENCE_THREADS, thread_name_prefix="inference")
        self.outcomes: Counter = Counter()
        self._run: Optional[Callable[[], Awaitable[None]]] = None
        self._on_stop: List[Callable[[], Awaitable[None]]] = []
        self._stream: Optional[str] = None
        self._group: Optional[str] = None

    async def _connect_log(self, streams: Dict[str, str]) -> StreamLog:
        self.log = StreamLog(streams)
        await self.log.connect()
        self._closers.append(self.log.close)
        return self.log

    async def _connect_redis(self):
        logger.info("Connecting to Redis", url=settings.REDIS_URL)
        self.redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
        # Vector fields are raw float32 bytes, so documents use a non-decoding client
        self.redis_bytes = Redis.from_url(settings.REDIS_URL, decode_responses=False)
        await self.redis.ping()
        await self.redis_bytes.ping()
        redis_connected.set(1)
        self._closers.append(self._close_redis)

    async def _close_redis(self):
        for client in (self.redis, self.redis_bytes):
            if client is not None:
                await client.aclose()
        redis_connected.set(0)

    async def _bloom(self, name: str) -> BloomFilter:
        bloom = BloomFilter(self.redis, name)
        await bloom.ensure()
        return bloom

    async def _posts(self) -> PostRepository:
        store = DocumentStore(self.redis_bytes, POSTS_SCHEMA)
        await store.ensure_index()
        return PostRepository(store)

    def _chat(self) -> ChatModel:
        chat = ChatModel(create_openai_client())
        self._closers.append(chat.close)
        return chat

    def _extractor(self, chat: ChatModel) -> TopicExtractor:
        return TopicExtractor(chat, TopicUniverse(self.redis), prompt_for_domain(settings.TOPIC_DOMAIN))

    async def _build_ingest(self):
        log = await self._connect_log({settings.RAW_STREAM: settings.RAW_SUBJECT})
        ingestor = FirehoseIngestor(log, self.stop_event)
        # Closing the socket unblocks the receive loop on shutdown
        self._on_stop.append(ingestor.close)

        async def run():
            bind_stage("ingest")
            await ingestor.run()

        self._run = run

    async def _build_filter(self):
        log = await self._connect_log(
            {settings.RAW_STREAM: settings.RAW_SUBJECT, settings.FILTERED_STREAM: settings.FILTERED_SUBJECT}
        )
        await self._connect_redis()

        classifier = ZeroShotClassifier(executor=self.executor)
        await classifier.initialize()
        self._closers.append(self._sync_closer(classifier.close))

        handler = FilterStage(
            classifier,
            labels=settings.CANDIDATE_LABELS,
            threshold=settings.CLASSIFIER_THRESHOLD,
            multi_label=settings.MULTI_LABEL,
            dedup=await self._bloom(settings.FILTER_BLOOM),
            posts=await self._posts(),
            log=log,
            output_stream=settings.FILTERED_STREAM,
        )
        self._set_pool(log, settings.RAW_STREAM, settings.FILTER_GROUP, handler, settings.FILTER_WORKERS)

    async def _build_embed(self):
        log = await self._connect_log({settings.FILTERED_STREAM: settings.FILTERED_SUBJECT})
        await self._connect_redis()

        embedder = SentenceEmbedder(executor=self.executor)
        await embedder.initialize()
        self._closers.append(self._sync_closer(embedder.close))

        handler = EmbedStage(embedder, await self._bloom(settings.EMBED_BLOOM), await self._posts())
        self._set_pool(log, settings.FILTERED_STREAM, settings.EMBED_GROUP, handler, settings.EMBED_WORKERS)

    async def _build_topics(self):
        log = await self._connect_log({settings.FILTERED_STREAM: settings.FILTERED_SUBJECT})
        await self._connect_redis()

        handler = TopicStage(
            self._extractor(self._chat()),
            build_aggregator(self.redis),
            await self._bloom(settings.TOPIC_BLOOM),
            await self._posts(),
        )
        self._set_pool(log, settings.FILTERED_STREAM, settings.TOPIC_GROUP, handler, settings.TOPIC_WORKERS)

    async def _build_bot(self):
        await self._connect_redis()

        openai_client = create_openai_client()
        chat = ChatModel(openai_client)
        self._closers.append(chat.close)
        embedder = OpenAIEmbedder(openai_client)

        routing_store = DocumentStore(self.redis_bytes, ROUTING_SCHEMA)
        await routing_store.ensure_index()
        router = SemanticRouter(routing_store, embedder)
        await router.bootstrap()

        cache_store = DocumentStore(self.redis_bytes, CACHE_SCHEMA)
        await cache_store.ensure_index()

        bluesky = BlueskyClient()
        self._closers.append(bluesky.close)

        bot = BotRunner(
            bluesky=bluesky,
            router=router,
            cache=SemanticCache(cache_store, embedder),
            trending=TrendingTopicsAnalyzer(build_aggregator(self.redis)),
            summarizer=PostSummarizer(self._extractor(chat), await self._posts()),
            chat=chat,
            processed=await self._bloom(settings.BOT_BLOOM),
        )
        self.outcomes = bot.stats

        async def run():
            bind_stage("bot")
            await bot.run(self.stop_event)

        self._run = run

    def _set_pool(self, log: StreamLog, stream: str, group: str, handler, size: int):
        pool = WorkerPool(log, stream, group, self.stage, handler, size, self.stop_event)
        self.outcomes = pool.outcomes
        self._stream, self._group = stream, group
        self._run = pool.run

    @staticmethod
    def _sync_closer(close: Callable[[], None]) -> Callable[[], Awaitable[None]]:
        async def closer():
            close()
        return closer

    async def start(self):
        """Start the service components."""
        try:
            logger.info("Starting pipeline service", stage=self.stage)
            await getattr(self, f"_build_{self.stage}")()

            # Set up signal handlers
            for sig in (signal.SIGINT, signal.SIGTERM):
                self.loop.add_signal_handler(sig, self._handle_signal)

            # Start background tasks
            self._tasks = [
                asyncio.create_task(self._run_server()),
                asyncio.create_task(self._periodic_stats_logger()),
            ]
            self._runner_task = asyncio.create_task(self._run())
            self._runner_task.add_done_callback(self._runner_done)

            logger.info("Pipeline service started successfully", stage=self.stage)

        except Exception as e:
            logger.error("Failed to start service", stage=self.stage, error=str(e))
            raise

    def _handle_signal(self):
        """Handle shutdown signals."""
        logger.info("Received shutdown signal")
        self.stop_event.set()

    def _runner_done(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Stage stopped unexpectedly", stage=self.stage, error=str(task.exception()))
        self.stop_event.set()

    async def _run_server(self):
        """Run the health check server."""
        try:
            await self.server.serve()
        except Exception as e:
            logger.error("Health server error", error=str(e))

    def format_stats(self, rate: float, pending: Optional[int], backlog_change: int) -> str:
        total = sum(self.outcomes.values())
        stats_msg = (
            "\n" + "=" * 30
            + f"\n  {self.stage.capitalize()} Statistics"
            + "\n" + "=" * 30
            + "\n  Processing Rates:"
            + f"\n    Processed/sec:     {round(rate, 2)}"
        )
        if pending is not None:
            stats_msg += (
                "\n  Backlog Status:"
                + f"\n    Pending entries:   {pending}"
                + f"\n    Backlog change:    {backlog_change:+d}"
            )
        stats_msg += "\n  Outcomes:" + f"\n    Total processed:   {total}"
        for outcome, count in self.outcomes.most_common(6):
            stats_msg += f"\n    {outcome:17s}:  {count}"
        stats_msg += "\n" + "=" * 30
        return stats_msg

    async def _periodic_stats_logger(self):
        """Log periodic statistics."""
        last_total = 0
        last_pending = None

        while not self.stop_event.is_set():
            try:
                await asyncio.sleep(STATS_INTERVAL + random.uniform(0, 2))  # jitter so replicas don't log in lockstep

                total = sum(self.outcomes.values())
                rate = (total - last_total) / STATS_INTERVAL

                pending = None
                if self.log is not None and self._group:
                    pending = await self.log.pending_count(self._stream, self._group, self.stage)
                backlog_change = pending - last_pending if pending is not None and last_pending is not None else 0

                logger.info(self.format_stats(rate, pending, backlog_change))

                last_total = total
                last_pending = pending

            except Exception as e:
                logger.warning("Failed to log stats", error=str(e))

    async def run(self):
        """Start the service and wait for shutdown signal."""
        try:
            await self.start()
            await self.stop_event.wait()
        finally:
            await self._shutdown()

    async def _shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down pipeline service", stage=self.stage)
        self.stop_event.set()

        try:
            for hook in self._on_stop:
                await hook()

            # Workers finish the entry in hand, then leave their loops
            if self._runner_task is not None and not self._runner_task.done():
                done, _ = await asyncio.wait({self._runner_task}, timeout=10.0)
                if not done:
                    logger.warning("Stage did not stop in time, cancelling")
                    self._runner_task.cancel()

            logger.debug("Shutting down health check server")
            self.server.should_exit = True
            await asyncio.sleep(0.5)

            for task in self._tasks:
                if not task.done():
                    task.cancel()

            if self._tasks:
                await asyncio.wait_for(asyncio.gather(*self._tasks, return_exceptions=True), timeout=10.0)

        except asyncio.TimeoutError:
            logger.warning("Task cancellation timeout")
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))
        finally:
            for close in self._closers:
                try:
                    await close()
                except Exception as e:
                    logger.warning("Failed to release resource", error=str(e))
            self.executor.shutdown(wait=False)
            logger.info("Pipeline service shutdown complete", stage=self.stage)
