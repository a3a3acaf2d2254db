from __future__ import annotations

from dataclasses import dataclass

from ..config.models import CompactionConfig


@dataclass(frozen=True)
class CompactionPolicy:
    """Knobs for keeping the model-facing history within a reasonable size."""

    # Messages left untouched at the end of a thread when summarizing.
    keep_recent: int = 10

    # True: physically delete summarized messages. False: keep them on disk
    # and hide them from the model-facing view.
    archive_summarized: bool = False

    # Summarize automatically once the visible history exceeds this.
    summarize_when_over: int = 60

    # Characters of each user message quoted in the summary's topic list.
    topic_chars: int = 100

    @classmethod
    def from_config(cls, cfg: CompactionConfig) -> "CompactionPolicy":
        return cls(
            keep_recent=cfg.keep_recent,
            archive_summarized=cfg.archive_summarized,
            summarize_when_over=cfg.summarize_when_over,
        )
