"""Minimal Bluesky (AT Protocol) XRPC client for the bot: sessions, search and replies."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from .config import settings
from .logging_setup import get_logger
from .models import POST_COLLECTION

logger = get_logger(__name__)

SEARCH_PAGE_SIZE = 100


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def split_into_chunks(text: str, max_length: int = settings.REPLY_MAX_CHARS) -> List[str]:
    """Pack whitespace-delimited words into chunks of at most ``max_length`` characters.

    Words are kept whole, except a single word longer than ``max_length`` (a
    long URL, say), which is hard-wrapped into ``max_length`` pieces.
    """
    words = []
    for word in text.split():
        if len(word) > max_length:
            logger.warning("Hard-wrapping over-long word", length=len(word), max_length=max_length)
            words.extend(word[i:i + max_length] for i in range(0, len(word), max_length))
        else:
            words.append(word)

    chunks = []
    current = ""
    for word in words:
        if current and len(current) + 1 + len(word) > max_length:
            chunks.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        chunks.append(current)
    return chunks


@dataclass(frozen=True)
class Session:
    access_jwt: str
    refresh_jwt: str
    handle: str
    did: str


@dataclass(frozen=True)
class PostRef:
    uri: str
    cid: str

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PostRef"]:
        if not data or not data.get("uri"):
            return None
        return cls(uri=data["uri"], cid=data.get("cid", ""))

    def to_dict(self) -> Dict[str, str]:
        return {"uri": self.uri, "cid": self.cid}


@dataclass(frozen=True)
class Post:
    """A post view returned by search."""

    uri: str
    cid: str
    author_did: str
    author_handle: str
    text: str
    created_at: str = ""
    reply_root: Optional[PostRef] = None

    @classmethod
    def from_view(cls, view: Dict[str, Any]) -> "Post":
        author = view.get("author") or {}
        record = view.get("record") or {}
        reply = record.get("reply") or {}
        return cls(
            uri=view.get("uri", ""),
            cid=view.get("cid", ""),
            author_did=author.get("did", ""),
            author_handle=author.get("handle", ""),
            text=record.get("text", ""),
            created_at=record.get("createdAt", ""),
            reply_root=PostRef.from_dict(reply.get("root")),
        )

    @property
    def ref(self) -> PostRef:
        return PostRef(uri=self.uri, cid=self.cid)

    @property
    def thread_root(self) -> PostRef:
        """Root of the thread this post belongs to; the post itself when it is not a reply."""
        return self.reply_root or self.ref


class BlueskyClient:
    def __init__(
        self,
        host: str = settings.BSKY_HOST,
        identifier: str = settings.BSKY_IDENTIFIER,
        password: str = settings.BSKY_PASSWORD,
        client: Optional[httpx.AsyncClient] = None,
        retries: int = 1,
        retry_delay: float = settings.RETRY_DELAY,
    ):
        self.identifier = identifier
        self.password = password
        self.retries = retries
        self.retry_delay = retry_delay
        self.client = client or httpx.AsyncClient(
            base_url=host,
            headers={"Content-Type": "application/json"},
            timeout=30.0,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """One request with a single retry on transport errors and 5xx responses."""
        for attempt in range(self.retries + 1):
            try:
                response = await self.client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500 or attempt >= self.retries:
                    raise
                error = e
            except httpx.TransportError as e:
                if attempt >= self.retries:
                    raise
                error = e

            logger.warning("Bluesky request failed, retrying", path=path, attempt=attempt + 1, error=str(error))
            await asyncio.sleep(self.retry_delay)

    async def create_session(self) -> Session:
        data = await self._request(
            "POST",
            "/xrpc/com.atproto.server.createSession",
            json={"identifier": self.identifier, "password": self.password},
        )
        return Session(
            access_jwt=data["accessJwt"],
            refresh_jwt=data.get("refreshJwt", ""),
            handle=data.get("handle", ""),
            did=data["did"],
        )

    async def search_posts(
        self,
        session: Session,
        term: str,
        since: datetime,
        max_posts: Optional[int] = None,
    ) -> List[Post]:
        """Latest posts matching ``term`` since ``since``, following cursors until exhausted or capped."""
        posts: List[Post] = []
        cursor = None
        since_time = iso_timestamp(since)
        logger.info("Searching posts", term=term, since=since_time)

        while True:
            params = {"q": term, "sort": "latest", "limit": SEARCH_PAGE_SIZE, "since": since_time}
            if cursor:
                params["cursor"] = cursor

            data = await self._request(
                "GET",
                "/xrpc/app.bsky.feed.searchPosts",
                params=params,
                headers={"Authorization": f"Bearer {session.access_jwt}"},
            )
            page = data.get("posts") or []
            posts.extend(Post.from_view(view) for view in page)
            cursor = data.get("cursor")

            if max_posts is not None and len(posts) >= max_posts:
                posts = posts[:max_posts]
                break
            if not page or not cursor:
                break

        logger.info("Finished searching posts", term=term, total=len(posts))
        return posts

    async def search_mentions(
        self, session: Session, handle: str, lookback_hours: int, max_posts: int
    ) -> List[Post]:
        since = datetime.now(timezone.utc) - timedelta(hours=lookback_hours)
        return await self.search_posts(session, f"@{handle}", since, max_posts=max_posts)

    async def create_post(
        self,
        session: Session,
        text: str,
        root: Optional[PostRef] = None,
        parent: Optional[PostRef] = None,
    ) -> PostRef:
        """Create a post, as a reply when ``parent`` is given; returns the new post's reference."""
        record: Dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": text,
            "createdAt": iso_timestamp(),
        }
        if parent is not None:
            record["reply"] = {"root": (root or parent).to_dict(), "parent": parent.to_dict()}

        data = await self._request(
            "POST",
            "/xrpc/com.atproto.repo.createRecord",
            json={"repo": session.did, "collection": POST_COLLECTION, "record": record},
            headers={"Authorization": f"Bearer {session.access_jwt}"},
        )
        logger.info("Post created", uri=data.get("uri"), reply=parent is not None)
        return PostRef(uri=data["uri"], cid=data.get("cid", ""))

    async def close(self) -> None:
        await self.client.aclose()
