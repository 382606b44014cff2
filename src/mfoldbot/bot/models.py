"""Records exchanged between the poll loop, the orchestrators and the service adapters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class Verdict(str, Enum):
    """Outcome requested by a resolution reply, named as the market service expects."""

    YES = "YES"
    NO = "NO"
    CANCEL = "CANCEL"


@dataclass(frozen=True)
class PostRef:
    uri: str
    cid: str

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["PostRef"]:
        data = _as_dict(payload)
        uri = normalize_str(data.get("uri")).strip()
        cid = normalize_str(data.get("cid")).strip()
        if not uri or not cid:
            return None
        return cls(uri=uri, cid=cid)

    def to_payload(self) -> Dict[str, str]:
        return {"uri": self.uri, "cid": self.cid}


@dataclass(frozen=True)
class ReplyLink:
    root: PostRef
    parent: PostRef


@dataclass(frozen=True)
class Notification:
    uri: str
    cid: str
    author_handle: str
    reason: str
    is_read: bool
    indexed_at: str
    text: str
    reply: Optional[ReplyLink] = None

    @property
    def ref(self) -> PostRef:
        return PostRef(uri=self.uri, cid=self.cid)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Notification":
        record = _as_dict(payload.get("record"))
        reply_data = _as_dict(record.get("reply"))
        parent = PostRef.from_payload(reply_data.get("parent"))
        root = PostRef.from_payload(reply_data.get("root")) or parent
        reply = ReplyLink(root=root, parent=parent) if parent and root else None
        return cls(
            uri=normalize_str(payload.get("uri")),
            cid=normalize_str(payload.get("cid")),
            author_handle=normalize_str(_as_dict(payload.get("author")).get("handle")),
            reason=normalize_str(payload.get("reason")).strip().lower(),
            is_read=bool(payload.get("isRead")),
            indexed_at=normalize_str(payload.get("indexedAt")),
            text=normalize_str(record.get("text")),
            reply=reply,
        )


@dataclass(frozen=True)
class Post:
    uri: str
    cid: str
    author_handle: str
    text: str
    created_at: str

    @property
    def ref(self) -> PostRef:
        return PostRef(uri=self.uri, cid=self.cid)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Post":
        record = _as_dict(payload.get("record"))
        return cls(
            uri=normalize_str(payload.get("uri")),
            cid=normalize_str(payload.get("cid")),
            author_handle=normalize_str(_as_dict(payload.get("author")).get("handle")),
            text=normalize_str(record.get("text")),
            created_at=normalize_str(record.get("createdAt")),
        )


@dataclass(frozen=True)
class MarketRequest:
    question: str
    close_time: int
    initial_prob: int
    description: str
    outcome_type: str = "BINARY"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "outcomeType": self.outcome_type,
            "question": self.question,
            "descriptionMarkdown": self.description,
            "closeTime": self.close_time,
            "initialProb": self.initial_prob,
        }


@dataclass(frozen=True)
class Market:
    id: str
    slug: str
    url: str
    question: str
    text_description: str
    is_resolved: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Market":
        return cls(
            id=normalize_str(payload.get("id")),
            slug=normalize_str(payload.get("slug")),
            url=normalize_str(payload.get("url")),
            question=normalize_str(payload.get("question")),
            text_description=normalize_str(payload.get("textDescription")),
            is_resolved=bool(payload.get("isResolved")),
        )
