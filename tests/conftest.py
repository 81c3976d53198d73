import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

# Keep test runs offline and quiet; must happen before project modules import config/telemetry
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_TIMESTAMPS", "false")
os.environ.setdefault("DISCORD_API_TOKEN", "test-discord-token")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-0000000000000000000000")

from models import Message, MessagePage, RateLimited, SourceError  # noqa: E402

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_history(count: int, start: datetime = NOW, step: timedelta = timedelta(minutes=1)) -> List[Message]:
    """`count` messages, newest first, one `step` apart, ids descending."""
    return [
        Message(
            id=str(10_000 + count - i),
            content=f"message {i}",
            author=f"user{i % 3}",
            timestamp=start - i * step,
        )
        for i in range(count)
    ]


class FakeSource:
    """Serves a static newest-first history the way the Discord endpoint pages it.

    `script` holds results returned before consulting the history (e.g. a RateLimited),
    consumed one per request.
    """

    def __init__(self, history: List[Message], script: Optional[list] = None):
        self.history = history
        self.script = list(script or [])
        self.calls: List[Optional[str]] = []

    async def __call__(self, channel_id, token, limit=100, before=None, session=None):
        self.calls.append(before)
        if self.script:
            return self.script.pop(0)
        start = 0
        if before is not None:
            ids = [m.id for m in self.history]
            start = ids.index(before) + 1
        return MessagePage(messages=self.history[start:start + limit])


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace the fetcher's sleep with a recorder."""
    import fetcher as fetcher_module

    delays: List[float] = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(fetcher_module, "sleep", fake_sleep)
    return delays


__all__ = ["NOW", "make_history", "FakeSource", "RateLimited", "SourceError"]
