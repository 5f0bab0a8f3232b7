import asyncio
import json
from typing import Iterator, Optional, Union

import websockets
from websockets.exceptions import WebSocketException

from .config import settings
from .errors import EventParseError
from .logging_setup import get_logger
from .metrics import entries_processed_total, firehose_connected, processing_errors_total
from .models import PostEvent

logger = get_logger(__name__)


def backoff_delays(initial: float, cap: float) -> Iterator[float]:
    """2, 4, 8, ... seconds, never more than ``cap``."""
    delay = initial
    while True:
        yield min(delay, cap)
        delay = min(delay * 2, cap)


class FirehoseIngestor:
    """Single-instance consumer of the Jetstream firehose feeding the raw log.

    No deduplication happens here; replays and duplicates are absorbed by the
    downstream Bloom gates.
    """

    def __init__(
        self,
        log,
        stop_event: asyncio.Event,
        stream: str = settings.RAW_STREAM,
        url: str = settings.FIREHOSE_URL,
        initial_delay: float = settings.RECONNECT_INITIAL_DELAY,
        max_delay: float = settings.RECONNECT_MAX_DELAY,
        connect=websockets.connect,
    ):
        self.log = log
        self.stop_event = stop_event
        self.stream = stream
        self.url = url
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._connect = connect
        self._ws = None

    async def handle_message(self, message: Union[str, bytes]) -> Optional[int]:
        """Project one firehose message and append it; returns the raw log sequence."""
        try:
            event = PostEvent.from_jetstream(json.loads(message))
        except (ValueError, EventParseError) as e:
            logger.debug("Dropping firehose message", error=str(e))
            entries_processed_total.labels(stage="ingest", outcome="dropped").inc()
            return None

        try:
            seq = await self.log.append(self.stream, event.to_fields())
        except Exception as e:
            logger.error("Failed to append event to raw log", uri=event.uri, error=str(e))
            processing_errors_total.labels(stage="ingest", error_type="append").inc()
            return None

        entries_processed_total.labels(stage="ingest", outcome="appended").inc()
        return seq

    async def run(self) -> None:
        """Consume until shutdown, reconnecting with exponential backoff."""
        delays = backoff_delays(self.initial_delay, self.max_delay)

        while not self.stop_event.is_set():
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    firehose_connected.set(1)
                    delays = backoff_delays(self.initial_delay, self.max_delay)
                    logger.info("Connected to firehose", url=self.url)

                    async for message in ws:
                        await self.handle_message(message)
                        if self.stop_event.is_set():
                            break

                    if not self.stop_event.is_set():
                        logger.info("Firehose closed the connection")

            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning("Firehose connection error", error=str(e), error_type=type(e).__name__)
                processing_errors_total.labels(stage="ingest", error_type="websocket").inc()
            finally:
                self._ws = None
                firehose_connected.set(0)

            if self.stop_event.is_set():
                break

            delay = next(delays)
            logger.info("Reconnecting to firehose", delay=delay)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Firehose ingestor stopped")

    async def close(self) -> None:
        """Stop reconnecting and close the socket."""
        self.stop_event.set()
        if self._ws is not None:
            await self._ws.close()
