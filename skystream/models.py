"""Record types that flow through the pipeline and their wire projections."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, TypedDict

import numpy as np

from .errors import EventParseError

POST_COLLECTION = "app.bsky.feed.post"
OPERATIONS = ("create", "update", "delete")


class JetstreamCommit(TypedDict, total=False):
    """The `commit` object of a Jetstream firehose message."""
    rev: str
    operation: str
    collection: str
    rkey: str
    cid: str
    record: Dict[str, Any]


class JetstreamEvent(TypedDict, total=False):
    """Top-level Jetstream firehose message."""
    did: str
    time_us: int
    kind: str
    commit: JetstreamCommit


def build_post_uri(did: str, rkey: str) -> str:
    return f"at://{did}/{POST_COLLECTION}/{rkey}"


def _object(value: Any, what: str) -> Dict[str, Any]:
    """A nested JSON object; absent or null reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EventParseError(f"{what} is not an object: {type(value).__name__}")
    return value


def _string(container: Dict[str, Any], key: str) -> str:
    """A string member; absent or null reads as empty."""
    value = container.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise EventParseError(f"{key} is not a string: {type(value).__name__}")
    return value


def encode_langs(langs: Optional[List[str]]) -> str:
    """Encode a language list the way it is carried on the logs: ``[en, fr]``."""
    return "[" + ", ".join(langs or []) + "]"


def decode_langs(value: Optional[str]) -> List[str]:
    """Inverse of :func:`encode_langs`; empty items are dropped."""
    if not value:
        return []
    stripped = value.replace("[", "").replace("]", "")
    return [lang for lang in stripped.split(", ") if lang.strip()]


@dataclass(frozen=True)
class PostEvent:
    """Canonical projection of a firehose post event.

    ``uri`` is the natural key and the document identity downstream.
    """
    uri: str
    did: str
    rkey: str
    text: str
    time_us: int
    operation: str
    parent_uri: str = ""
    root_uri: str = ""
    langs: List[str] = field(default_factory=list)
    created_at: str = ""
    cid: str = ""

    @property
    def is_trivial(self) -> bool:
        """Blank text or a delete; such events never leave the filter stage."""
        return not self.text or not self.text.strip() or self.operation == "delete"

    @classmethod
    def from_jetstream(cls, data: Dict[str, Any]) -> "PostEvent":
        """Project a decoded Jetstream message, ignoring every field outside the projection."""
        if not isinstance(data, dict):
            raise EventParseError("firehose message is not a JSON object")

        commit = data.get("commit")
        if not isinstance(commit, dict):
            raise EventParseError(f"firehose message of kind {data.get('kind')!r} has no commit")

        did = _string(data, "did")
        rkey = _string(commit, "rkey")
        if not did or not rkey:
            raise EventParseError("commit is missing did or rkey")

        collection = commit.get("collection")
        if collection and collection != POST_COLLECTION:
            raise EventParseError(f"unexpected collection {collection!r}")

        try:
            time_us = int(data.get("time_us") or 0)
        except (TypeError, ValueError) as e:
            raise EventParseError(f"invalid time_us: {data.get('time_us')!r}") from e

        record = _object(commit.get("record"), "record")
        reply = _object(record.get("reply"), "record.reply")
        parent = _object(reply.get("parent"), "reply.parent")
        root = _object(reply.get("root"), "reply.root")
        langs = record.get("langs") or []
        if not isinstance(langs, list):
            raise EventParseError(f"langs is not a list: {type(langs).__name__}")

        return cls(
            uri=build_post_uri(did, rkey),
            did=did,
            rkey=rkey,
            text=_string(record, "text"),
            time_us=time_us,
            operation=_string(commit, "operation"),
            parent_uri=_string(parent, "uri"),
            root_uri=_string(root, "uri"),
            langs=[str(lang) for lang in langs],
            created_at=_string(record, "createdAt"),
            cid=_string(commit, "cid"),
        )

    def to_fields(self) -> Dict[str, str]:
        """Flat string map carried as a log entry."""
        return {
            "uri": self.uri,
            "did": self.did,
            "rkey": self.rkey,
            "text": self.text,
            "timeUs": str(self.time_us),
            "operation": self.operation,
            "parentUri": self.parent_uri,
            "rootUri": self.root_uri,
            "langs": encode_langs(self.langs),
            "createdAt": self.created_at,
            "cid": self.cid,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "PostEvent":
        uri = _string(fields, "uri")
        if not uri:
            raise EventParseError("log entry has no uri")
        try:
            time_us = int(fields.get("timeUs") or 0)
        except (TypeError, ValueError) as e:
            raise EventParseError(f"invalid timeUs: {fields.get('timeUs')!r}") from e

        return cls(
            uri=uri,
            did=_string(fields, "did"),
            rkey=_string(fields, "rkey"),
            text=_string(fields, "text"),
            time_us=time_us,
            operation=_string(fields, "operation"),
            parent_uri=_string(fields, "parentUri"),
            root_uri=_string(fields, "rootUri"),
            langs=decode_langs(_string(fields, "langs")),
            created_at=_string(fields, "createdAt"),
            cid=_string(fields, "cid"),
        )


@dataclass(frozen=True)
class FilteredDocument:
    """A post that passed the filter stage, persisted with ``id == uri``."""
    event: PostEvent
    text_embedding: Optional[np.ndarray] = None
    topics: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.event.uri

    @classmethod
    def from_event(cls, event: PostEvent) -> "FilteredDocument":
        return cls(event=event)

    def with_topics(self, topics: List[str]) -> "FilteredDocument":
        return replace(self, topics=list(topics))


@dataclass(frozen=True)
class RoutingReference:
    """Labelled example phrase for the semantic router.

    ``threshold`` is the largest cosine distance still accepted as a match.
    """
    text: str
    route: str
    threshold: float
    embedding: Optional[np.ndarray] = None


@dataclass(frozen=True)
class CacheEntry:
    post: str
    answer: str
    embedding: Optional[np.ndarray] = None
