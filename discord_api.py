#!/usr/bin/env python3
"""
Discord channel history client.

Fetches one page of a channel's message history from the Discord REST API
and decodes the response into exactly one page variant: a MessagePage,
a RateLimited signal carrying the server's retry delay, or a SourceError.
Nothing here raises for HTTP or transport failures; the fetcher decides
what to do with each variant.
"""

from asyncio import TimeoutError
from json import JSONDecodeError
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout, ContentTypeError

from config import get_logger, config
from models import Message, MessagePage, RateLimited, SourceError, PageResult
from telemetry import trace_span
from utils import parse_iso8601, parse_retry_after

logger = get_logger("discord")

HTTP_TOO_MANY_REQUESTS = 429
RATE_LIMIT_MESSAGE = "You are being rate limited."
# Used when a 429 carries neither a retry_after field nor a Retry-After header
DEFAULT_RATE_LIMIT_WAIT = 5.0


def _author_name(author: Any) -> str:
    if not isinstance(author, dict):
        return "unknown"
    return author.get("global_name") or author.get("username") or "unknown"


def normalize_message(raw: Dict[str, Any]) -> Message:
    """Convert a raw Discord message object into a Message.

    Raises:
        ValueError: if the object lacks a usable id or timestamp
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Message entry must be an object, got {type(raw).__name__}")
    msg_id = raw.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, (str, int)) or str(msg_id) == "":
        raise ValueError(f"Message entry has no valid id: {msg_id!r}")
    content = raw.get("content")
    return Message(
        id=str(msg_id),
        content=content if isinstance(content, str) else "",
        author=_author_name(raw.get("author")),
        timestamp=parse_iso8601(raw.get("timestamp")),
    )


def decode_page(data: Any) -> PageResult:
    """Decode a successful response body into a MessagePage.

    Entries that fail validation are skipped; a body that is not a list is a SourceError.
    """
    if not isinstance(data, list):
        return SourceError(status=None, message=f"Unexpected response format: {type(data).__name__}")
    messages: List[Message] = []
    for raw in data:
        try:
            messages.append(normalize_message(raw))
        except ValueError as e:
            logger.warning(f"Skipping undecodable message: {e}")
    return MessagePage(messages=messages)


def _is_rate_limited(status: int, data: Any) -> bool:
    if status == HTTP_TOO_MANY_REQUESTS:
        return True
    return isinstance(data, dict) and data.get("message") == RATE_LIMIT_MESSAGE


def decode_error(status: int, data: Any, headers: Optional[Dict[str, str]] = None) -> PageResult:
    """Decode an unsuccessful response into RateLimited or SourceError."""
    if _is_rate_limited(status, data):
        retry_after = None
        is_global = False
        if isinstance(data, dict):
            retry_after = parse_retry_after(data.get("retry_after"))
            is_global = bool(data.get("global", False))
        if retry_after is None and headers:
            retry_after = parse_retry_after(headers.get("Retry-After"))
        if retry_after is None:
            retry_after = DEFAULT_RATE_LIMIT_WAIT
        return RateLimited(retry_after=retry_after, is_global=is_global)

    message = None
    if isinstance(data, dict):
        message = data.get("message")
    return SourceError(status=status, message=str(message) if message else f"HTTP {status}")


async def _read_json(resp) -> Any:
    try:
        return await resp.json(content_type=None)
    except (ContentTypeError, JSONDecodeError, ValueError):
        return None


@trace_span(
    "discord.list_messages",
    tracer_name="fetcher",
    attr_from_args=lambda channel_id, token, limit=100, before=None, **kwargs: {
        "discord.channel_id": str(channel_id),
        "discord.before": before or "",
        "discord.limit": int(limit),
    },
)
async def list_messages(
    channel_id: str,
    token: str,
    limit: int = 100,
    before: Optional[str] = None,
    session: Optional[ClientSession] = None,
    base_url: Optional[str] = None,
) -> PageResult:
    """Fetch one page of messages, newest first, strictly older than `before`.

    Args:
        channel_id: Discord channel snowflake
        token:      Bot token, sent as `Authorization: Bot <token>`
        limit:      Page size (Discord caps it at 100)
        before:     Only return messages older than this message id
        session:    Optional shared aiohttp ClientSession to reuse
        base_url:   API base URL override (defaults to config.DISCORD_API_BASE)

    Returns:
        MessagePage, RateLimited or SourceError
    """
    url = f"{(base_url or config.DISCORD_API_BASE).rstrip('/')}/channels/{channel_id}/messages"
    headers = {
        "Authorization": f"Bot {token}",
        "User-Agent": config.USER_AGENT,
        "Accept": "application/json",
    }
    params = {"limit": str(limit)}
    if before:
        params["before"] = before

    timeout = ClientTimeout(total=max(int(config.HTTP_TIMEOUT), 1))

    async def _execute(client: ClientSession) -> PageResult:
        async with client.get(url, headers=headers, params=params, timeout=timeout) as resp:
            data = await _read_json(resp)
            if 200 <= resp.status < 300:
                return decode_page(data)
            return decode_error(resp.status, data, dict(resp.headers or {}))

    try:
        if session is None:
            async with ClientSession(timeout=timeout) as owned_session:
                return await _execute(owned_session)
        return await _execute(session)
    except TimeoutError:
        return SourceError(status=None, message=f"Timed out after {config.HTTP_TIMEOUT}s")
    except ClientError as e:
        return SourceError(status=None, message=f"Network error: {e}")


__all__ = ["list_messages", "normalize_message", "decode_page", "decode_error", "RATE_LIMIT_MESSAGE"]
