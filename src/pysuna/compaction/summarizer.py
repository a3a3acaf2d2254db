from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from ..threads.models import Message

SUMMARY_PREFIX = "Previous conversation summary: "
SUMMARY_TYPE = "summary"


@dataclass
class SummaryResult:
    text: str
    metadata: dict[str, Any]


def describe(messages: list[Message], topic_chars: int = 100) -> str:
    """Short derived description of what `messages` covered.

    No model call; counts roles and quotes the start of each user message.
    """
    users = [m for m in messages if m.role == "user"]
    assistants = [m for m in messages if m.role == "assistant"]
    topics = "; ".join(m.content[:topic_chars] for m in users)
    return (
        f"Conversation covered {len(users)} user messages and "
        f"{len(assistants)} assistant responses. Main topics: {topics}"
    )


def summarize(
    messages: list[Message],
    *,
    already_summarized: Iterable[str] = (),
    topic_chars: int = 100,
) -> SummaryResult:
    # ids accumulate so the newest summary alone defines what is hidden
    ids = list(already_summarized)
    seen = set(ids)
    ids.extend(m.message_id for m in messages if m.message_id not in seen)
    return SummaryResult(
        text=SUMMARY_PREFIX + describe(messages, topic_chars),
        metadata={
            "type": SUMMARY_TYPE,
            "original_message_count": len(messages),
            "summarized_message_ids": ids,
        },
    )


def is_summary(message: Message) -> bool:
    return message.role == "system" and (message.metadata or {}).get("type") == SUMMARY_TYPE


def hidden_ids(messages: list[Message]) -> set[str]:
    """Ids superseded by the newest summary in `messages`."""
    for m in reversed(messages):
        if is_summary(m):
            return set((m.metadata or {}).get("summarized_message_ids") or ())
    return set()


def visible(messages: list[Message]) -> list[Message]:
    hidden = hidden_ids(messages)
    return [m for m in messages if m.message_id not in hidden]
