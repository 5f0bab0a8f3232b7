"""Tests for reply chunking and the XRPC client, against a mocked transport."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from skystream.bluesky import BlueskyClient, Post, PostRef, Session, iso_timestamp, split_into_chunks

SESSION = Session(access_jwt="access", refresh_jwt="refresh", handle="bot.bsky.social", did="did:plc:bot")


def post_view(uri, text="hello", handle="alice.bsky.social", reply=None):
    record = {"text": text, "createdAt": "2025-05-01T14:00:00.000Z"}
    if reply:
        record["reply"] = reply
    return {
        "uri": uri,
        "cid": "cid-" + uri[-1],
        "author": {"did": "did:plc:alice", "handle": handle, "displayName": "Alice"},
        "record": record,
    }


def make_client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport, base_url="https://bsky.test")
    return BlueskyClient(identifier="bot.bsky.social", password="app-password", client=http, retry_delay=0, **kwargs)


class TestSplitIntoChunks:
    def test_exact_limit_is_one_chunk(self):
        text = ("x" * 99 + " ") * 2 + "x" * 100
        assert len(text) == 300
        assert split_into_chunks(text, 300) == [text]

    def test_one_over_limit_splits(self):
        text = ("x" * 99 + " ") * 2 + "x" * 101
        assert len(text) == 301
        chunks = split_into_chunks(text, 300)
        assert len(chunks) >= 2
        assert all(len(chunk) <= 300 for chunk in chunks)

    def test_never_splits_words(self):
        words = [f"word{i}" for i in range(200)]
        chunks = split_into_chunks(" ".join(words), 50)
        assert all(len(chunk) <= 50 for chunk in chunks)
        assert " ".join(chunks).split() == words

    def test_overlong_word_is_hard_wrapped(self):
        url = "https://example.com/" + "a" * 630
        chunks = split_into_chunks(f"see {url} now", 300)
        assert all(len(chunk) <= 300 for chunk in chunks)
        assert "".join(" ".join(chunks).split()) == f"see{url}now"
        assert chunks[0] == "see"
        assert chunks[-1].endswith(" now")

    def test_collapses_whitespace(self):
        assert split_into_chunks("  a\n\nb\tc  ", 300) == ["a b c"]

    def test_empty(self):
        assert split_into_chunks("", 300) == []


class TestPost:
    def test_from_view(self):
        post = Post.from_view(post_view("at://did:plc:alice/app.bsky.feed.post/1", text="@bot hi"))
        assert post.author_handle == "alice.bsky.social"
        assert post.text == "@bot hi"
        assert post.thread_root == post.ref == PostRef("at://did:plc:alice/app.bsky.feed.post/1", "cid-1")

    def test_thread_root_of_reply(self):
        reply = {
            "root": {"uri": "at://did:plc:bob/app.bsky.feed.post/0", "cid": "cid-root"},
            "parent": {"uri": "at://did:plc:bob/app.bsky.feed.post/9", "cid": "cid-parent"},
        }
        post = Post.from_view(post_view("at://did:plc:alice/app.bsky.feed.post/1", reply=reply))
        assert post.thread_root == PostRef("at://did:plc:bob/app.bsky.feed.post/0", "cid-root")


def test_iso_timestamp_is_utc_zulu():
    moment = datetime(2025, 5, 1, 13, 0, 5, 123456, tzinfo=timezone.utc)
    assert iso_timestamp(moment) == "2025-05-01T13:00:05.123Z"


class TestClient:
    def test_create_session(self):
        def handler(request):
            assert request.url.path == "/xrpc/com.atproto.server.createSession"
            assert json.loads(request.content) == {"identifier": "bot.bsky.social", "password": "app-password"}
            return httpx.Response(
                200, json={"accessJwt": "a", "refreshJwt": "r", "handle": "bot.bsky.social", "did": "did:plc:bot"}
            )

        session = asyncio.run(make_client(handler).create_session())
        assert session == Session("a", "r", "bot.bsky.social", "did:plc:bot")

    def test_search_follows_cursor(self):
        requests = []

        def handler(request):
            requests.append(request)
            cursor = request.url.params.get("cursor")
            if cursor is None:
                return httpx.Response(200, json={"cursor": "p2", "posts": [post_view("at://a/app.bsky.feed.post/1")]})
            return httpx.Response(200, json={"posts": [post_view("at://a/app.bsky.feed.post/2")]})

        since = datetime(2025, 5, 1, 13, 0, tzinfo=timezone.utc)
        posts = asyncio.run(make_client(handler).search_posts(SESSION, "@bot.bsky.social", since))

        assert [p.uri for p in posts] == ["at://a/app.bsky.feed.post/1", "at://a/app.bsky.feed.post/2"]
        first = requests[0]
        assert first.headers["Authorization"] == "Bearer access"
        assert first.url.params["q"] == "@bot.bsky.social"
        assert first.url.params["sort"] == "latest"
        assert first.url.params["limit"] == "100"
        assert first.url.params["since"] == "2025-05-01T13:00:00.000Z"
        assert requests[1].url.params["cursor"] == "p2"

    def test_search_stops_at_cap(self):
        calls = []

        def handler(request):
            calls.append(request)
            views = [post_view(f"at://a/app.bsky.feed.post/{i}") for i in range(10)]
            return httpx.Response(200, json={"cursor": "more", "posts": views})

        since = datetime(2025, 5, 1, tzinfo=timezone.utc)
        posts = asyncio.run(make_client(handler).search_posts(SESSION, "q", since, max_posts=15))

        assert len(posts) == 15
        assert len(calls) == 2

    def test_create_reply(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"uri": "at://did:plc:bot/app.bsky.feed.post/new", "cid": "cid-new"})

        root = PostRef("at://root", "cid-root")
        parent = PostRef("at://parent", "cid-parent")
        ref = asyncio.run(make_client(handler).create_post(SESSION, "@alice hi", root=root, parent=parent))

        assert ref == PostRef("at://did:plc:bot/app.bsky.feed.post/new", "cid-new")
        body = bodies[0]
        assert body["repo"] == "did:plc:bot"
        assert body["collection"] == "app.bsky.feed.post"
        record = body["record"]
        assert record["$type"] == "app.bsky.feed.post"
        assert record["text"] == "@alice hi"
        assert record["createdAt"].endswith("Z")
        assert record["reply"] == {
            "root": {"uri": "at://root", "cid": "cid-root"},
            "parent": {"uri": "at://parent", "cid": "cid-parent"},
        }

    def test_top_level_post_has_no_reply(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"uri": "at://x", "cid": "c"})

        asyncio.run(make_client(handler).create_post(SESSION, "hello"))
        assert "reply" not in bodies[0]["record"]

    def test_server_error_retried_once(self):
        statuses = iter([503, 200])

        def handler(request):
            status = next(statuses)
            if status != 200:
                return httpx.Response(status, json={"error": "Unavailable"})
            return httpx.Response(200, json={"accessJwt": "a", "did": "did:plc:bot"})

        session = asyncio.run(make_client(handler).create_session())
        assert session.access_jwt == "a"

    def test_gives_up_after_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(make_client(handler).create_session())
        assert len(calls) == 2

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": "AuthenticationRequired"})

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(make_client(handler).create_session())
        assert len(calls) == 1

    def test_transport_error_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"accessJwt": "a", "did": "did:plc:bot"})

        assert asyncio.run(make_client(handler).create_session()).did == "did:plc:bot"
        assert len(attempts) == 2
