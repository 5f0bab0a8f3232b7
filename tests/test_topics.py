"""Tests for topic parsing, extraction and hourly aggregation."""

import asyncio
from datetime import datetime, timezone

import pytest

from fakes import FakeCMS, FakeTopicUniverse, FakeTopK, StubChat
from skystream.topics import (
    AI_TOPICS_PROMPT,
    POLITICS_TOPICS_PROMPT,
    TopicAggregator,
    TopicExtractor,
    build_topic_messages,
    parse_topics,
    prompt_for_domain,
)

NOW = datetime(2025, 5, 1, 14, 37, tzinfo=timezone.utc)


class TestParseTopics:
    def test_quoted_list(self):
        assert parse_topics('"Machine Learning, AI Ethics, LLMs"') == ["Machine Learning", "AI Ethics", "LLMs"]

    def test_individually_quoted(self):
        assert parse_topics('"Elections", "Healthcare Policy"') == ["Elections", "Healthcare Policy"]

    def test_curly_quotes(self):
        assert parse_topics("“Generative AI”, “AI Regulation”") == ["Generative AI", "AI Regulation"]

    def test_empty_answer(self):
        assert parse_topics('""') == []
        assert parse_topics("") == []
        assert parse_topics(None) == []

    def test_drops_empties_and_repeats(self):
        assert parse_topics('"AI, , AI , Robotics,"') == ["AI", "Robotics"]


class TestPrompts:
    def test_domains(self):
        assert prompt_for_domain("ai") is AI_TOPICS_PROMPT
        assert prompt_for_domain("Politics") is POLITICS_TOPICS_PROMPT

    def test_unknown_domain(self):
        with pytest.raises(ValueError):
            prompt_for_domain("sports")

    def test_messages_carry_existing_topics(self):
        messages = build_topic_messages("system", "a post", {"LLMs", "AI Ethics"})
        assert messages[0] == {"role": "system", "content": "system"}
        assert messages[1]["content"] == "Existing topics: AI Ethics, LLMs"
        assert messages[2]["content"] == "Post: a post"


class TestTopicExtractor:
    def test_extract_remembers_topics(self):
        universe = FakeTopicUniverse({"LLMs"})
        chat = StubChat('"LLMs, Open Source AI"')
        extractor = TopicExtractor(chat, universe, AI_TOPICS_PROMPT)

        topics = asyncio.run(extractor.extract("Llama weights are out"))

        assert topics == ["LLMs", "Open Source AI"]
        assert universe.topics == {"LLMs", "Open Source AI"}
        assert "Existing topics: LLMs" in chat.calls[0][1]["content"]

    def test_extract_without_remembering(self):
        universe = FakeTopicUniverse()
        extractor = TopicExtractor(StubChat('"Robotics"'), universe)

        assert asyncio.run(extractor.extract("robots!", remember=False)) == ["Robotics"]
        assert universe.topics == set()


class TestTopicAggregator:
    def test_record_counts_each_topic_once(self):
        topk = FakeTopK()
        aggregator = TopicAggregator(topk=topk, clock=lambda: NOW)

        counts = asyncio.run(aggregator.record(["AI", "LLMs", "AI"]))

        assert counts == {"AI": 1, "LLMs": 1}
        assert topk.counts["topics-topk:2025-05-01T14:00"] == {"AI": 1, "LLMs": 1}

    def test_bucket_created_once(self):
        topk = FakeTopK()
        aggregator = TopicAggregator(topk=topk, clock=lambda: NOW)

        async def scenario():
            await aggregator.record(["AI"])
            await aggregator.record(["AI"])

        asyncio.run(scenario())
        assert topk.ensured == ["topics-topk:2025-05-01T14:00"]
        assert topk.counts["topics-topk:2025-05-01T14:00"]["AI"] == 2

    def test_count_min_sketch(self):
        cms = FakeCMS()
        aggregator = TopicAggregator(cms=cms, clock=lambda: NOW)

        asyncio.run(aggregator.record(["Elections"]))

        assert asyncio.run(cms.query("topics-cms:2025-05-01T14:00", "Elections")) == 1
        assert asyncio.run(aggregator.trending()) == []

    def test_empty_topics_touch_nothing(self):
        topk = FakeTopK()
        aggregator = TopicAggregator(topk=topk, clock=lambda: NOW)
        assert asyncio.run(aggregator.record([])) == {}
        assert topk.ensured == []

    def test_trending_reads_current_hour(self):
        topk = FakeTopK()
        aggregator = TopicAggregator(topk=topk, clock=lambda: NOW)

        async def scenario():
            await aggregator.record(["AI", "LLMs"])
            await aggregator.record(["AI"])
            return await aggregator.trending()

        assert asyncio.run(scenario()) == ["AI", "LLMs"]

    def test_needs_a_counter(self):
        with pytest.raises(ValueError):
            TopicAggregator()
