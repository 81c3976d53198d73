#!/usr/bin/env python3
"""
Paginated channel history fetcher.

Walks a channel's message history backwards, one page at a time, until a
page reaches past the cutoff, the history runs out, or the source fails.
Rate-limit responses are retried in place after the server-specified delay
plus a small safety margin; they never advance the cursor.

fetch() never raises for source failures: whatever was accumulated before
the failure is returned, since partial history still makes a useful digest.
"""

from asyncio import sleep
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from discord_api import list_messages
from models import Channel, FetchCursor, Message, MessagePage, RateLimited, SourceError, PageResult
from telemetry import trace_span
from utils import rate_limit_delay

logger = get_logger("fetcher")

PageRequester = Callable[..., Awaitable[PageResult]]


class ChannelFetcher:
    """Fetches every message newer than a cutoff for one channel at a time.

    Each fetch() call owns its own cursor, so one fetcher can serve several
    channels concurrently; pages within one fetch are strictly sequential.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        session: Optional[ClientSession] = None,
        page_size: int = 100,
        rate_limit_margin: float = 0.1,
        max_rate_limit_retries: int = 0,
        requester: Optional[PageRequester] = None,
    ) -> None:
        """
        Args:
            token: Discord bot token (defaults to config.DISCORD_API_TOKEN)
            session: Shared aiohttp session; one is created per request if omitted
            page_size: Messages requested per page
            rate_limit_margin: Seconds added to every server-specified retry delay
            max_rate_limit_retries: Consecutive rate-limit retries allowed for one
                page before giving up; 0 retries indefinitely
            requester: Page request function, defaults to discord_api.list_messages
        """
        self.token = token if token is not None else config.DISCORD_API_TOKEN
        self.session = session
        self.page_size = page_size
        self.rate_limit_margin = rate_limit_margin
        self.max_rate_limit_retries = max_rate_limit_retries
        self._request_page = requester or list_messages

    async def _next_page(self, cursor: FetchCursor) -> PageResult:
        logger.info(
            f"[{cursor.channel.name}] Fetching {self.page_size} messages, "
            f"prior to message ID: {cursor.before_id or '<nil>'}..."
        )
        return await self._request_page(
            cursor.channel.id,
            self.token,
            limit=self.page_size,
            before=cursor.before_id,
            session=self.session,
        )

    @trace_span(
        "fetch_channel",
        tracer_name="fetcher",
        attr_from_args=lambda self, channel, cutoff: {
            "channel.name": channel.name,
            "channel.id": channel.id,
            "fetch.cutoff": cutoff.isoformat(),
        },
    )
    async def fetch(self, channel: Channel, cutoff: datetime) -> List[Message]:
        """Return every message newer than `cutoff`, plus the rest of the page that crossed it."""
        cursor = FetchCursor(channel=channel, cutoff=cutoff)
        rate_limit_retries = 0

        while True:
            result = await self._next_page(cursor)

            if isinstance(result, RateLimited):
                rate_limit_retries += 1
                if self.max_rate_limit_retries and rate_limit_retries > self.max_rate_limit_retries:
                    logger.warning(
                        f"[{channel.name}] Still rate limited after {self.max_rate_limit_retries} retries, "
                        f"returning the {len(cursor.accumulated)} messages collected."
                    )
                    break
                wait_time = rate_limit_delay(result.retry_after, self.rate_limit_margin)
                logger.info(
                    f"[{channel.name}] API rate limit detected"
                    f"{' (global)' if result.is_global else ''}, waiting {wait_time:.2f}s..."
                )
                await sleep(wait_time)
                continue

            if isinstance(result, SourceError):
                logger.warning(
                    f"[{channel.name}] An API error occurred ({result.message}), "
                    f"returning the {len(cursor.accumulated)} messages collected."
                )
                break

            rate_limit_retries = 0
            page: MessagePage = result
            if not page.messages:
                logger.info(f"[{channel.name}] Reached the start of the channel history.")
                break

            logger.info(f"[{channel.name}] Fetched {len(page.messages)} messages...")
            if not cursor.advance(page):
                break

        logger.info(f"[{channel.name}] Complete! Collected {len(cursor.accumulated)} messages!")
        return cursor.accumulated


__all__ = ["ChannelFetcher"]
