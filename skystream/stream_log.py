import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.errors import TimeoutError
from nats.js import JetStreamContext, api
from nats.js.api import (
    AckPolicy,
    ConsumerConfig,
    DeliverPolicy,
    DiscardPolicy,
    RetentionPolicy,
    StorageType,
    StreamConfig,
)
from nats.js.errors import NotFoundError

from .config import settings
from .errors import NotConnectedError
from .logging_setup import get_logger
from .metrics import entries_appended_total, message_queue_size, nats_connected, processing_errors_total

logger = get_logger(__name__)


@dataclass
class LogEntry:
    """One delivered entry: its stream sequence, decoded field map and delivery handle."""
    stream: str
    entry_id: int
    fields: Dict[str, str]
    deliveries: int = 1
    msg: Optional[Msg] = field(default=None, repr=False, compare=False)


class StreamLog:
    """Bounded append-only logs with consumer groups, backed by NATS JetStream.

    Each named log is a JetStream stream bound to one subject. A consumer group
    is a durable pull consumer on that stream; every worker of the group binds
    its own pull subscription to it, so JetStream spreads entries across them.
    Unacked entries are redelivered after ``ack_wait`` (at-least-once).
    """

    def __init__(self, streams: Optional[Dict[str, str]] = None):
        self.url = settings.NATS_URL
        # stream name -> subject
        self.streams = streams or {
            settings.RAW_STREAM: settings.RAW_SUBJECT,
            settings.FILTERED_STREAM: settings.FILTERED_SUBJECT,
        }
        self.max_msgs = settings.STREAM_MAX_MSGS
        self.stream_num_replicas = settings.NUM_STREAM_REPLICAS
        self.ack_wait_seconds = settings.ACK_WAIT_SECONDS
        self.max_deliver = settings.MAX_DELIVER
        self.max_ack_pending = settings.MAX_ACK_PENDING
        self.duplicate_window = settings.DUPLICATE_WINDOW_SECONDS
        self.fetch_timeout = settings.FETCH_TIMEOUT_SECONDS
        self.max_retries = settings.MAX_RETRIES

        self.nc: Optional[NATS] = None
        self.js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[Tuple[str, str, str], Any] = {}

    async def connect(self):
        """Connect to NATS and make sure every configured stream exists."""
        try:
            logger.info("Connecting to NATS", url=self.url)
            self.nc = NATS()
            await self.nc.connect(servers=[self.url])
            nats_connected.set(1)
            self.js = self.nc.jetstream()

            for stream, subject in self.streams.items():
                await self._ensure_stream(stream, subject)

            logger.info("NATS connection established", streams=list(self.streams))

        except Exception as e:
            logger.error("Failed to connect to NATS", error=str(e))
            nats_connected.set(0)
            processing_errors_total.labels(stage="log", error_type="nats_connection").inc()
            raise

    async def _ensure_stream(self, stream: str, subject: str):
        """Ensure the stream exists, create it if not."""
        try:
            await self.js.stream_info(stream)
            logger.info("Stream exists", stream=stream)
        except NotFoundError:
            logger.info("Stream not found, creating", stream=stream, subject=subject)
            stream_config = StreamConfig(
                name=stream,
                subjects=[subject],
                retention=RetentionPolicy.LIMITS,
                discard=DiscardPolicy.OLD,  # Exact count trimming: oldest entries go first
                max_msgs=self.max_msgs,
                max_msgs_per_subject=-1,
                max_bytes=-1,
                max_age=0,
                storage=StorageType.FILE,
                num_replicas=self.stream_num_replicas,
                duplicate_window=self.duplicate_window,  # De-duplication via Nats-Msg-Id
            )
            await self.js.add_stream(config=stream_config)
            logger.info("Stream created", stream=stream)

    def _require_js(self) -> JetStreamContext:
        if not self.js:
            raise NotConnectedError("NATS client not connected")
        return self.js

    async def close(self):
        """Close NATS connection."""
        try:
            logger.info("Closing NATS connection")
            nats_connected.set(0)

            for sub in self._subscriptions.values():
                await sub.unsubscribe()
            self._subscriptions.clear()

            if self.nc and self.nc.is_connected:
                await self.nc.drain()
                await self.nc.close()
        except Exception as e:
            logger.error("Error closing NATS connection", error=str(e))
        finally:
            self.nc = None
            self.js = None

    async def append(self, stream: str, fields: Dict[str, str], msg_id: Optional[str] = None) -> int:
        """Append a field map to a stream and return its assigned sequence.

        When ``msg_id`` is given JetStream drops repeats inside the duplicate window
        and returns the sequence of the stored original.
        """
        js = self._require_js()
        subject = self.streams[stream]
        payload = json.dumps(fields, ensure_ascii=False).encode("utf-8")
        headers = {api.Header.MSG_ID: msg_id} if msg_id else None

        attempt = 0
        while True:
            try:
                ack = await js.publish(subject, payload, timeout=5.0, stream=stream, headers=headers)
                if ack.duplicate:
                    logger.debug("Duplicate detected by JetStream, not stored", msg_id=msg_id, seq=ack.seq)
                else:
                    entries_appended_total.labels(stream=stream).inc()
                return ack.seq

            except TimeoutError:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("Publish timeout exceeded", stream=stream, attempts=attempt)
                    processing_errors_total.labels(stage="log", error_type="publish_timeout").inc()
                    raise

                await asyncio.sleep(settings.RETRY_DELAY * attempt)
                logger.warning("Publish timeout, retrying", stream=stream, attempt=attempt)

    async def create_group(self, stream: str, group: str):
        """Create a durable consumer group reading the stream from its start.

        Idempotent: an existing group is left untouched.
        """
        js = self._require_js()
        try:
            await js.consumer_info(stream, group)
            logger.info("Consumer group already exists", stream=stream, group=group)
            return
        except NotFoundError:
            pass

        consumer_config = ConsumerConfig(
            durable_name=group,
            deliver_policy=DeliverPolicy.ALL,
            ack_policy=AckPolicy.EXPLICIT,
            max_deliver=self.max_deliver,
            ack_wait=self.ack_wait_seconds,
            max_ack_pending=self.max_ack_pending,
            filter_subject=self.streams[stream],
        )
        await js.add_consumer(stream, config=consumer_config)
        logger.info(
            "Consumer group created",
            stream=stream,
            group=group,
            ack_wait=self.ack_wait_seconds,
            max_deliver=self.max_deliver,
        )

    async def read_group(self, stream: str, group: str, consumer: str, count: int) -> List[LogEntry]:
        """Fetch up to ``count`` undelivered entries for this group member.

        Returns an empty list when nothing arrives within the fetch timeout.
        Entries whose payload cannot be decoded are acked and dropped here.
        """
        js = self._require_js()
        key = (stream, group, consumer)
        sub = self._subscriptions.get(key)
        if sub is None:
            sub = await js.pull_subscribe_bind(durable=group, stream=stream)
            self._subscriptions[key] = sub

        try:
            msgs = await sub.fetch(batch=count, timeout=self.fetch_timeout)
        except TimeoutError:
            return []

        entries = []
        for msg in msgs:
            md = msg.metadata
            deliveries = md.num_delivered or 1
            if deliveries > 1:
                logger.warning(
                    "redelivered_message",
                    stream=stream,
                    group=group,
                    deliveries=deliveries,
                    stream_seq=md.sequence.stream if md.sequence else None,
                )

            try:
                fields = json.loads(msg.data.decode("utf-8"))
                if not isinstance(fields, dict):
                    raise ValueError("entry payload is not a JSON object")
            except (UnicodeDecodeError, ValueError) as e:
                logger.error(
                    "Failed to parse log entry",
                    error=str(e),
                    stream=stream,
                    message_content=msg.data.decode("utf-8", errors="replace")[:100],
                )
                processing_errors_total.labels(stage=group, error_type="json_parse").inc()
                await msg.ack()
                continue

            entries.append(
                LogEntry(
                    stream=stream,
                    entry_id=md.sequence.stream,
                    fields=fields,
                    deliveries=deliveries,
                    msg=msg,
                )
            )
        return entries

    async def ack(self, entry: LogEntry):
        """Mark the entry processed for its group."""
        await entry.msg.ack()

    async def release(self, entry: LogEntry, delay: Optional[float] = None):
        """Hand an unprocessed entry back for redelivery."""
        await entry.msg.nak(delay=delay)

    async def pending_count(self, stream: str, group: str, stage: Optional[str] = None) -> int:
        """Number of entries not yet delivered to the group."""
        try:
            if not self.js:
                return 0

            consumer_info = await self.js.consumer_info(stream, group)
            pending = consumer_info.num_pending
            message_queue_size.labels(stage=stage or group).set(pending)
            return pending

        except Exception as e:
            logger.warning("Failed to get pending message count", error=str(e))
            return 0
