#!/usr/bin/env python3
"""
Data model for the channel digest pipeline.

Channels and messages flow from the fetcher to the summarizer; topic
summaries and per-channel reports flow out to the publisher. The page
variants are the decoded shapes of a single message-source response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union


DEFAULT_SYSTEM_PROMPT = (
    "I will provide the chat log for a channel on a Discord server covering a recent time window. "
    "It will be provided in JSON format, sorted by date from oldest to newest. "
    "Each entry includes the `content` of the message, the `author` that sent the message, "
    "and the `timestamp` it was sent at. "
    "The chat topics will vary, with some conversations happening in parallel and interleaving. "
    "Identify the topics discussed over the whole window and answer only with a JSON array of objects. "
    "Each object must contain a `topicName` and a `shortSummary`."
)


DEFAULT_TEMPERATURE = 0.2


@dataclass(frozen=True)
class Channel:
    """A chat channel to summarize."""

    name: str
    id: str


@dataclass(frozen=True)
class Message:
    """A single chat message, identified by its opaque id."""

    id: str
    content: str
    author: str
    timestamp: datetime

    def to_prompt_dict(self) -> Dict[str, str]:
        return {
            "content": self.content,
            "author": self.author,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class TopicSummary:
    topic_name: str
    short_summary: str

    def to_dict(self) -> Dict[str, str]:
        return {"topicName": self.topic_name, "shortSummary": self.short_summary}


@dataclass
class ChannelReport:
    """Final output unit for one channel.

    `error` is set when the channel could not be summarized; `topics` is then empty.
    """

    channel: Channel
    topics: List[TopicSummary] = field(default_factory=list)
    message_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": {"name": self.channel.name, "id": self.channel.id},
            "messageCount": self.message_count,
            "topics": [t.to_dict() for t in self.topics],
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Message source page variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MessagePage:
    """A successful page, newest message first. Empty means end of history."""

    messages: List[Message]


@dataclass(frozen=True)
class RateLimited:
    """The source asked us to wait `retry_after` seconds before retrying."""

    retry_after: float
    is_global: bool = False


@dataclass(frozen=True)
class SourceError:
    """Any other failure: HTTP error status, transport error or undecodable body."""

    status: Optional[int]
    message: str


PageResult = Union[MessagePage, RateLimited, SourceError]


@dataclass
class FetchCursor:
    """Pagination state for one channel fetch.

    Lives only while the fetch runs. `accumulated` only ever grows.
    """

    channel: Channel
    cutoff: datetime
    before_id: Optional[str] = None
    accumulated: List[Message] = field(default_factory=list)

    def advance(self, page: MessagePage) -> bool:
        """Consume a non-empty page; return True if another page is needed.

        The whole page is kept even when it crosses the cutoff.
        """
        self.accumulated.extend(page.messages)
        oldest = page.messages[-1]
        if oldest.timestamp > self.cutoff:
            self.before_id = oldest.id
            return True
        return False


@dataclass
class DigestSettings:
    """Everything one pipeline run needs, passed in explicitly."""

    channels: List[Channel]
    lookback_days: int = 7
    page_size: int = 100
    model: str = "gpt-4-turbo"
    temperature: float = DEFAULT_TEMPERATURE
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    rate_limit_margin: float = 0.1
    # 0 keeps retrying rate-limited page requests indefinitely
    max_rate_limit_retries: int = 0


__all__ = [
    "Channel",
    "Message",
    "TopicSummary",
    "ChannelReport",
    "MessagePage",
    "RateLimited",
    "SourceError",
    "PageResult",
    "FetchCursor",
    "DigestSettings",
    "DEFAULT_SYSTEM_PROMPT",
    "DEFAULT_TEMPERATURE",
]
