from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]
ROLES: tuple[str, ...] = ("system", "user", "assistant", "tool")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Thread:
    thread_id: str
    account_id: str
    created_at: str
    updated_at: str
    title: str | None = None
    # opaque to the core; stored and passed through
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "Thread":
        return cls(
            thread_id=obj["thread_id"],
            account_id=obj["account_id"],
            created_at=obj["created_at"],
            updated_at=obj["updated_at"],
            title=obj.get("title"),
            metadata=obj.get("metadata"),
        )


@dataclass
class Message:
    message_id: str
    thread_id: str
    role: Role
    content: str
    created_at: str
    updated_at: str
    metadata: dict[str, Any] | None = None
    # insertion sequence assigned by the store
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "Message":
        return cls(
            message_id=obj["message_id"],
            thread_id=obj["thread_id"],
            role=obj["role"],
            content=obj["content"],
            created_at=obj["created_at"],
            updated_at=obj["updated_at"],
            metadata=obj.get("metadata"),
            seq=int(obj.get("seq", 0)),
        )

    def to_ai(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.metadata:
            d["metadata"] = self.metadata
        return d


@dataclass
class ThreadConfig:
    account_id: str = "anonymous"
    thread_id: str | None = None
    title: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class ThreadStats:
    message_count: int
    user_messages: int
    assistant_messages: int
    system_messages: int
    tool_messages: int
    total_characters: int
    created_at: str
    last_activity: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

