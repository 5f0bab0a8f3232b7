"""Tests for the JetStream-backed log against an in-memory JetStream context."""

import asyncio
import json
from types import SimpleNamespace

import pytest
from nats.errors import TimeoutError
from nats.js import api
from nats.js.api import AckPolicy, DeliverPolicy
from nats.js.errors import NotFoundError

from skystream.errors import NotConnectedError
from skystream.stream_log import StreamLog

STREAMS = {"raw": "posts.raw", "filtered": "posts.filtered"}


class FakeMsg:
    def __init__(self, data: bytes, seq: int, delivered: int = 1):
        self.data = data
        self.metadata = SimpleNamespace(num_delivered=delivered, sequence=SimpleNamespace(stream=seq))
        self.acked = False
        self.nak_delay = None

    async def ack(self):
        self.acked = True

    async def nak(self, delay=None):
        self.nak_delay = delay


class FakeSubscription:
    def __init__(self, batches):
        self.batches = list(batches)
        self.unsubscribed = False

    async def fetch(self, batch=1, timeout=None):
        if not self.batches:
            raise TimeoutError
        return self.batches.pop(0)[:batch]

    async def unsubscribe(self):
        self.unsubscribed = True


class FakeJetStream:
    def __init__(self, batches=()):
        self.published = []
        self.consumers = {}
        self.seen_ids = {}
        self.subscription = FakeSubscription(batches)
        self.binds = []

    async def publish(self, subject, payload, timeout=None, stream=None, headers=None):
        msg_id = (headers or {}).get(api.Header.MSG_ID)
        if msg_id and msg_id in self.seen_ids:
            return SimpleNamespace(seq=self.seen_ids[msg_id], duplicate=True)
        self.published.append((stream, subject, json.loads(payload), headers))
        seq = len(self.published)
        if msg_id:
            self.seen_ids[msg_id] = seq
        return SimpleNamespace(seq=seq, duplicate=False)

    async def consumer_info(self, stream, group):
        if (stream, group) not in self.consumers:
            raise NotFoundError
        return SimpleNamespace(num_pending=42)

    async def add_consumer(self, stream, config=None):
        self.consumers[(stream, config.durable_name)] = config

    async def pull_subscribe_bind(self, durable=None, stream=None):
        self.binds.append((stream, durable))
        return self.subscription


def connected_log(js):
    log = StreamLog(STREAMS)
    log.js = js
    return log


def test_append_requires_connection():
    with pytest.raises(NotConnectedError):
        asyncio.run(StreamLog(STREAMS).append("raw", {"uri": "x"}))


class TestAppend:
    def test_publishes_json_to_stream_subject(self):
        js = FakeJetStream()
        seq = asyncio.run(connected_log(js).append("raw", {"uri": "at://a", "text": "héllo"}))

        assert seq == 1
        stream, subject, fields, headers = js.published[0]
        assert (stream, subject) == ("raw", "posts.raw")
        assert fields == {"uri": "at://a", "text": "héllo"}
        assert headers is None

    def test_msg_id_deduplicates(self):
        js = FakeJetStream()
        log = connected_log(js)

        async def scenario():
            first = await log.append("filtered", {"uri": "at://a"}, msg_id="at://a")
            second = await log.append("filtered", {"uri": "at://a"}, msg_id="at://a")
            return first, second

        assert asyncio.run(scenario()) == (1, 1)
        assert len(js.published) == 1
        assert js.published[0][3] == {api.Header.MSG_ID: "at://a"}


class TestGroups:
    def test_create_group_once(self):
        js = FakeJetStream()
        log = connected_log(js)

        async def scenario():
            await log.create_group("raw", "filter-group")
            first = js.consumers[("raw", "filter-group")]
            await log.create_group("raw", "filter-group")
            return first

        config = asyncio.run(scenario())
        assert js.consumers[("raw", "filter-group")] is config
        assert config.deliver_policy == DeliverPolicy.ALL
        assert config.ack_policy == AckPolicy.EXPLICIT
        assert config.filter_subject == "posts.raw"

    def test_read_group_decodes_entries(self):
        good = FakeMsg(json.dumps({"uri": "at://a"}).encode(), seq=7, delivered=3)
        bad = FakeMsg(b"not json", seq=8)
        js = FakeJetStream([[good, bad]])
        log = connected_log(js)

        entries = asyncio.run(log.read_group("raw", "filter-group", "filter-consumer-0", 5))

        assert len(entries) == 1
        assert entries[0].entry_id == 7
        assert entries[0].fields == {"uri": "at://a"}
        assert entries[0].deliveries == 3
        assert bad.acked
        assert not good.acked

    def test_read_group_timeout_is_empty(self):
        log = connected_log(FakeJetStream())
        assert asyncio.run(log.read_group("raw", "filter-group", "c", 5)) == []

    def test_subscription_reused_per_consumer(self):
        js = FakeJetStream()
        log = connected_log(js)

        async def scenario():
            await log.read_group("raw", "filter-group", "c0", 5)
            await log.read_group("raw", "filter-group", "c0", 5)
            await log.read_group("raw", "filter-group", "c1", 5)

        asyncio.run(scenario())
        assert js.binds == [("raw", "filter-group"), ("raw", "filter-group")]

    def test_ack_and_release(self):
        msg = FakeMsg(json.dumps({"uri": "at://a"}).encode(), seq=1)
        log = connected_log(FakeJetStream([[msg]]))

        async def scenario():
            entry = (await log.read_group("raw", "g", "c", 1))[0]
            await log.release(entry, delay=2.0)
            await log.ack(entry)

        asyncio.run(scenario())
        assert msg.nak_delay == 2.0
        assert msg.acked

    def test_pending_count(self):
        js = FakeJetStream()
        js.consumers[("raw", "filter-group")] = object()
        assert asyncio.run(connected_log(js).pending_count("raw", "filter-group", "filter")) == 42
