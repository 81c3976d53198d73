from datetime import datetime, timezone

import pytest
from aiohttp import ClientConnectionError

from discord_api import (
    DEFAULT_RATE_LIMIT_WAIT,
    RATE_LIMIT_MESSAGE,
    decode_error,
    decode_page,
    list_messages,
    normalize_message,
)
from models import MessagePage, RateLimited, SourceError


def raw_message(msg_id="1", content="hello", timestamp="2024-03-01T10:00:00.000000+00:00", **author):
    return {
        "id": msg_id,
        "content": content,
        "timestamp": timestamp,
        "author": author or {"username": "alice"},
    }


class FakeResponse:
    def __init__(self, status, body, headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "params": params})
        if self.error is not None:
            raise self.error
        return self.response


# ---------------------------------------------------------------------------
# normalize_message / decode_page
# ---------------------------------------------------------------------------

def test_normalize_message_prefers_global_name():
    msg = normalize_message(raw_message(global_name="Alice A.", username="alice"))
    assert msg.author == "Alice A."
    assert msg.id == "1"
    assert msg.timestamp == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_normalize_message_falls_back_to_username_and_handles_z_suffix():
    msg = normalize_message(raw_message(timestamp="2024-03-01T10:00:00Z", global_name=None, username="bob"))
    assert msg.author == "bob"
    assert msg.timestamp.tzinfo is not None


def test_normalize_message_rejects_missing_timestamp():
    with pytest.raises(ValueError):
        normalize_message({"id": "1", "content": "x", "author": {"username": "a"}})


def test_decode_page_skips_invalid_entries():
    result = decode_page([
        raw_message("3"),
        {"content": "no id"},
        raw_message("2", timestamp="not a date"),
        raw_message("1"),
    ])
    assert isinstance(result, MessagePage)
    assert [m.id for m in result.messages] == ["3", "1"]


def test_decode_page_empty_list_is_end_of_history():
    assert decode_page([]) == MessagePage(messages=[])


def test_decode_page_non_list_is_source_error():
    result = decode_page({"unexpected": True})
    assert isinstance(result, SourceError)


# ---------------------------------------------------------------------------
# decode_error
# ---------------------------------------------------------------------------

def test_decode_error_rate_limit_from_body():
    result = decode_error(429, {"message": RATE_LIMIT_MESSAGE, "retry_after": 2.5, "global": True})
    assert result == RateLimited(retry_after=2.5, is_global=True)


def test_decode_error_rate_limit_from_header():
    result = decode_error(429, None, {"Retry-After": "3"})
    assert result == RateLimited(retry_after=3.0)


def test_decode_error_rate_limit_default_wait():
    assert decode_error(429, {}) == RateLimited(retry_after=DEFAULT_RATE_LIMIT_WAIT)


def test_decode_error_detects_rate_limit_message_on_other_status():
    result = decode_error(400, {"message": RATE_LIMIT_MESSAGE, "retry_after": 1})
    assert isinstance(result, RateLimited)
    assert result.retry_after == 1.0


def test_decode_error_other_status_is_source_error():
    assert decode_error(403, {"message": "Missing Access", "code": 50001}) == SourceError(
        status=403, message="Missing Access"
    )
    assert decode_error(502, None) == SourceError(status=502, message="HTTP 502")


# ---------------------------------------------------------------------------
# list_messages
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_messages_sends_bot_token_and_cursor():
    session = FakeSession(FakeResponse(200, [raw_message("9")]))

    result = await list_messages("42", "secret", limit=50, before="100", session=session, base_url="https://example.test/api/")

    assert isinstance(result, MessagePage)
    assert [m.id for m in result.messages] == ["9"]
    request = session.requests[0]
    assert request["url"] == "https://example.test/api/channels/42/messages"
    assert request["headers"]["Authorization"] == "Bot secret"
    assert request["params"] == {"limit": "50", "before": "100"}


@pytest.mark.asyncio
async def test_list_messages_first_page_has_no_before_param():
    session = FakeSession(FakeResponse(200, []))
    await list_messages("42", "secret", session=session)
    assert "before" not in session.requests[0]["params"]


@pytest.mark.asyncio
async def test_list_messages_decodes_rate_limit():
    session = FakeSession(FakeResponse(429, {"message": RATE_LIMIT_MESSAGE, "retry_after": 0.75, "global": False}))
    result = await list_messages("42", "secret", session=session)
    assert result == RateLimited(retry_after=0.75)


@pytest.mark.asyncio
async def test_list_messages_undecodable_body_on_error_status():
    session = FakeSession(FakeResponse(500, ValueError("not json")))
    result = await list_messages("42", "secret", session=session)
    assert result == SourceError(status=500, message="HTTP 500")


@pytest.mark.asyncio
async def test_list_messages_transport_error_becomes_source_error():
    session = FakeSession(error=ClientConnectionError("connection reset"))
    result = await list_messages("42", "secret", session=session)
    assert isinstance(result, SourceError)
    assert result.status is None
    assert "connection reset" in result.message
