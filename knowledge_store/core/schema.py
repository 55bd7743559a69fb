"""
Record types returned by the store, and the canonical timestamp format.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Fixed-width, so lexical order in SQLite equals chronological order
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the stored UTC format."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back to an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class Account:
    id: int
    name: str
    source: str
    external_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Account":
        return cls(
            id=row["id"],
            name=row["name"],
            source=row["source"],
            external_id=row["external_id"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class Channel:
    id: int
    external_id: str
    kind: str  # platform tag: 'discord', 'telegram', ...
    name: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Channel":
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            kind=row["kind"],
            name=row["name"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class Message:
    id: int
    channel_id: int
    account_id: int
    role: str
    content: str
    reply_to_id: Optional[int]
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "Message":
        return cls(
            id=row["id"],
            channel_id=row["channel_id"],
            account_id=row["account_id"],
            role=row["role"],
            content=row["content"],
            reply_to_id=row["reply_to_id"],
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class Document:
    """A standalone knowledge artifact keyed by a caller-supplied id."""
    doc_id: str
    content: Any

    @classmethod
    def from_row(cls, row) -> "Document":
        return cls(doc_id=row["doc_id"], content=json.loads(row["content"]))

    def serialized(self) -> str:
        return json.dumps(self.content, sort_keys=True)

    def text(self) -> str:
        """The text that gets embedded: the payload itself when it is a string."""
        if isinstance(self.content, str):
            return self.content
        return self.serialized()


@dataclass
class SearchHit:
    distance: float
    id: Any  # doc_id for documents, message id for messages
    record: Any
