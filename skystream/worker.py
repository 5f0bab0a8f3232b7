"""Consumer-group worker runtime shared by the filter, embed and topic stages.

A worker repeatedly reads a small batch for its group, turns each entry back
into a :class:`PostEvent`, hands it to the stage handler and acks it once the
handler has committed its effects. Handlers that raise leave the entry
unacked, so the log redelivers it; handlers signal per-item model failures by
returning an outcome instead of raising.
"""

import asyncio
import time
from collections import Counter
from typing import Awaitable, Callable, List, Optional

from .config import settings
from .errors import EventParseError, NotConnectedError
from .logging_setup import bind_stage, get_logger
from .metrics import entries_processed_total, processing_duration_seconds, processing_errors_total
from .models import PostEvent
from .stream_log import LogEntry

logger = get_logger(__name__)

Handler = Callable[[PostEvent], Awaitable[str]]

UNPARSEABLE = "unparseable"


class StreamWorker:
    """One member of a consumer group."""

    def __init__(
        self,
        log,
        stream: str,
        group: str,
        consumer: str,
        handler: Handler,
        stage: str,
        stop_event: asyncio.Event,
        batch_size: int = settings.BATCH_SIZE,
        retry_delay: float = settings.RETRY_DELAY,
        max_backoff: float = 30.0,
        outcomes: Optional[Counter] = None,
    ):
        self.log = log
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.stage = stage
        self.stop_event = stop_event
        self.batch_size = batch_size
        self.retry_delay = retry_delay
        self.max_backoff = max_backoff
        self.outcomes = outcomes if outcomes is not None else Counter()

    async def run(self) -> None:
        bind_stage(self.stage, self.consumer)
        logger.info("Worker started", stream=self.stream, group=self.group)

        backoff = self.retry_delay
        while not self.stop_event.is_set():
            try:
                entries = await self.log.read_group(self.stream, self.group, self.consumer, self.batch_size)
                backoff = self.retry_delay
            except NotConnectedError:
                raise
            except Exception as e:
                logger.warning("Failed to read from log, backing off", error=str(e), delay=backoff)
                processing_errors_total.labels(stage=self.stage, error_type="log_read").inc()
                await self._pause(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue

            for index, entry in enumerate(entries):
                if self.stop_event.is_set():
                    await self._release_all(entries[index:])
                    break
                await self.process(entry)

        logger.info("Worker stopped")

    async def _pause(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def process(self, entry: LogEntry) -> Optional[str]:
        """Process one entry; returns the outcome, or None when it was left for redelivery."""
        start_time = time.time()

        try:
            event = PostEvent.from_fields(entry.fields)
        except EventParseError as e:
            logger.error("Dropping unparseable entry", entry_id=entry.entry_id, error=str(e))
            processing_errors_total.labels(stage=self.stage, error_type="entry_parse").inc()
            await self._ack(entry)
            self._count(UNPARSEABLE)
            return UNPARSEABLE

        try:
            outcome = await self.handler(event)
        except Exception as e:
            logger.error(
                "Failed to process entry, leaving it for redelivery",
                uri=event.uri,
                entry_id=entry.entry_id,
                deliveries=entry.deliveries,
                error=str(e),
                error_type=type(e).__name__,
            )
            processing_errors_total.labels(stage=self.stage, error_type="handler").inc()
            await self._release(entry)
            return None

        await self._ack(entry)
        self._count(outcome)
        processing_duration_seconds.labels(stage=self.stage).observe(time.time() - start_time)
        logger.debug("Entry processed", uri=event.uri, outcome=outcome)
        return outcome

    def _count(self, outcome: str) -> None:
        self.outcomes[outcome] += 1
        entries_processed_total.labels(stage=self.stage, outcome=outcome).inc()

    async def _ack(self, entry: LogEntry) -> None:
        try:
            await self.log.ack(entry)
        except Exception as e:
            # The entry comes back after ack_wait; downstream dedup absorbs the repeat
            logger.error("Failed to ack entry", entry_id=entry.entry_id, error=str(e))
            processing_errors_total.labels(stage=self.stage, error_type="ack").inc()

    async def _release(self, entry: LogEntry) -> None:
        try:
            await self.log.release(entry, delay=self.retry_delay)
        except Exception as e:
            logger.warning("Failed to release entry", entry_id=entry.entry_id, error=str(e))

    async def _release_all(self, entries: List[LogEntry]) -> None:
        for entry in entries:
            await self._release(entry)


class WorkerPool:
    """N workers sharing one consumer group, each with its own consumer identity."""

    def __init__(
        self,
        log,
        stream: str,
        group: str,
        stage: str,
        handler: Handler,
        size: int,
        stop_event: asyncio.Event,
        batch_size: int = settings.BATCH_SIZE,
    ):
        self.log = log
        self.stream = stream
        self.group = group
        self.stage = stage
        self.handler = handler
        self.size = size
        self.stop_event = stop_event
        self.batch_size = batch_size
        self.outcomes: Counter = Counter()
        self.workers = [
            StreamWorker(
                log,
                stream,
                group,
                f"{stage}-consumer-{i}",
                handler,
                stage,
                stop_event,
                batch_size=batch_size,
                outcomes=self.outcomes,
            )
            for i in range(size)
        ]

    async def run(self) -> None:
        await self.log.create_group(self.stream, self.group)
        logger.info("Starting worker pool", stage=self.stage, group=self.group, workers=self.size)
        await asyncio.gather(*(asyncio.create_task(worker.run()) for worker in self.workers))
