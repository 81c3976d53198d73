#!/usr/bin/env python3
"""
Channel Digest Orchestrator

Runs the two-stage digest pipeline for every configured channel:
1. Fetch the channel's recent history (paginated, rate-limit aware)
2. Summarize the fetched messages into topics

Channels run concurrently; reports come back in configuration order. A
channel whose summary fails is reported with its error instead of failing
the whole batch.

Supports single-run mode, an HTTP trigger and a time-of-day schedule.
"""

import asyncio
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import argparse

from aiohttp import ClientSession

from config import config, get_logger
from errors import DigestError
from fetcher import ChannelFetcher
from models import Channel, ChannelReport, DigestSettings, Message
from publisher import render_json, render_markdown_list, write_reports
from summarizer import TopicSummarizer, load_system_prompt
from telemetry import init_telemetry, trace_span
from utils import format_duration, mask_secret

logger = get_logger("orchestrator")
init_telemetry("channel-digest")


def validate_configuration(settings: Optional[DigestSettings] = None) -> List[str]:
    """Return a list of configuration problems (empty when runnable)."""
    errors = []
    if not config.DISCORD_API_TOKEN or not config.DISCORD_API_TOKEN.strip():
        errors.append("DISCORD_API_TOKEN environment variable not set")
    if not config.OPENAI_API_KEY or not config.OPENAI_API_KEY.strip():
        errors.append("OPENAI_API_KEY environment variable not set")
    if config.AZURE_ENDPOINT and not config.OPENAI_API_VERSION:
        errors.append("OPENAI_API_VERSION must be set when AZURE_ENDPOINT is used")
    channels = settings.channels if settings is not None else config.CHANNELS
    if not channels:
        errors.append(f"No channels configured in {config.CHANNELS_CONFIG_PATH}")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    if not errors:
        logger.info(
            "Config: channels=%d, model=%s, discord_token=%s, openai_key=%s",
            len(channels),
            config.OPENAI_MODEL,
            mask_secret(config.DISCORD_API_TOKEN),
            mask_secret(config.OPENAI_API_KEY),
        )
    return errors


class DigestOrchestrator:
    """Runs fetch-then-summarize for every channel in a DigestSettings."""

    def __init__(
        self,
        settings: DigestSettings,
        fetcher: Optional[ChannelFetcher] = None,
        summarizer: Optional[TopicSummarizer] = None,
        channel_timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            settings: Channels, window and model settings for the run
            fetcher: Fetcher to use; one sharing a fresh aiohttp session is built per run if omitted
            summarizer: Summarizer to use; built from settings if omitted
            channel_timeout: Deadline in seconds for one channel's pipeline
                (defaults to PIPELINE_TIMEOUT; 0 or None means no deadline)
        """
        self.settings = settings
        self.fetcher = fetcher
        self.summarizer = summarizer or TopicSummarizer(
            model=settings.model,
            temperature=settings.temperature,
            system_prompt=settings.system_prompt,
        )
        self.channel_timeout = channel_timeout if channel_timeout is not None else config.PIPELINE_TIMEOUT

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.settings.lookback_days)

    def _build_fetcher(self, session: ClientSession) -> ChannelFetcher:
        return ChannelFetcher(
            session=session,
            page_size=self.settings.page_size,
            rate_limit_margin=self.settings.rate_limit_margin,
            max_rate_limit_retries=self.settings.max_rate_limit_retries,
        )

    @trace_span(
        "pipeline.channel",
        tracer_name="orchestrator",
        attr_from_args=lambda self, fetcher, channel, cutoff: {"channel.name": channel.name, "channel.id": channel.id},
    )
    async def run_channel(self, fetcher: ChannelFetcher, channel: Channel, cutoff: datetime) -> ChannelReport:
        """Fetch, then summarize, one channel. Summary failures land on the report."""
        messages: List[Message] = await fetcher.fetch(channel, cutoff)
        report = ChannelReport(channel=channel, message_count=len(messages))
        try:
            report.topics = await self.summarizer.summarize(messages)
        except DigestError as e:
            logger.error(f"[{channel.name}] Summary failed: {e}")
            report.error = str(e)
        return report

    async def _run_with_deadline(self, fetcher: ChannelFetcher, channel: Channel, cutoff: datetime) -> ChannelReport:
        if not self.channel_timeout:
            return await self.run_channel(fetcher, channel, cutoff)
        try:
            return await asyncio.wait_for(self.run_channel(fetcher, channel, cutoff), timeout=self.channel_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{channel.name}] Pipeline timed out after {self.channel_timeout}s")
            return ChannelReport(channel=channel, error=f"Timed out after {self.channel_timeout}s")

    async def _run_all(self, fetcher: ChannelFetcher, cutoff: datetime) -> List[ChannelReport]:
        channels = self.settings.channels
        results = await asyncio.gather(
            *(self._run_with_deadline(fetcher, channel, cutoff) for channel in channels),
            return_exceptions=True,
        )
        reports: List[ChannelReport] = []
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"[{channel.name}] Unexpected pipeline error: {result!r}")
                reports.append(ChannelReport(channel=channel, error=f"Unexpected error: {result}"))
            else:
                reports.append(result)
        return reports

    @trace_span(
        "pipeline.run",
        tracer_name="orchestrator",
        attr_from_args=lambda self, now=None: {
            "pipeline.channels": len(self.settings.channels),
            "pipeline.lookback_days": self.settings.lookback_days,
        },
    )
    async def run(self, now: Optional[datetime] = None) -> List[ChannelReport]:
        """Run the pipeline for every channel; reports follow configuration order."""
        cutoff = self.cutoff(now)
        logger.info(
            f"🚀 Digesting {len(self.settings.channels)} channel(s) since {cutoff.isoformat()} "
            f"({self.settings.lookback_days} days)"
        )
        start_time = time.time()
        if self.fetcher is not None:
            reports = await self._run_all(self.fetcher, cutoff)
        else:
            async with ClientSession() as session:
                reports = await self._run_all(self._build_fetcher(session), cutoff)
        failed = sum(1 for r in reports if not r.ok)
        logger.info(
            f"🎉 Digest completed in {format_duration(time.time() - start_time)} "
            f"({len(reports) - failed} ok, {failed} failed)"
        )
        return reports


def build_settings(days: Optional[int] = None, only: Optional[List[str]] = None) -> DigestSettings:
    """Settings for a run from the loaded configuration and prompt.yaml."""
    return config.build_settings(lookback_days=days, only=only, system_prompt=load_system_prompt())


async def run_once(days: Optional[int] = None, only: Optional[List[str]] = None) -> List[ChannelReport]:
    orchestrator = DigestOrchestrator(build_settings(days, only))
    return await orchestrator.run()


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Channel Digest')
    parser.add_argument('mode', choices=['run', 'serve', 'scheduled', 'schedule-status', 'channels'],
                        help='Operation mode')
    parser.add_argument('--days', type=int,
                        help='Lookback window in days (default from channels.yaml / LOOKBACK_DAYS)')
    parser.add_argument('--channel', action='append', dest='channels', metavar='NAME_OR_ID',
                        help='Only digest this channel (repeatable)')
    parser.add_argument('--json', action='store_true',
                        help='Print JSON instead of Markdown (run mode)')
    parser.add_argument('--output', type=str,
                        help='Also write digest.md/digest.json into this directory (run mode)')

    args = parser.parse_args()

    if args.days is not None and args.days < 1:
        parser.error("--days must be at least 1")

    try:
        if args.mode == 'channels':
            for channel in config.CHANNELS:
                print(f"{channel.name}\t{channel.id}")
            return

        if args.mode == 'schedule-status':
            from scheduler import create_scheduler
            create_scheduler().print_schedule_status()
            return

        settings = build_settings(args.days, args.channels)
        problems = validate_configuration(settings)
        if problems:
            for problem in problems:
                logger.error(problem)
            logger.error("Please set required values in your .env file, secrets file or channels.yaml")
            sys.exit(1)

        if args.mode == 'run':
            reports = asyncio.run(DigestOrchestrator(settings).run())
            if args.output:
                write_reports(reports, args.output)
            if args.json:
                print(render_json(reports))
            else:
                print("\n\n".join(render_markdown_list(reports)))
            sys.exit(0 if any(r.ok for r in reports) else 1)

        elif args.mode == 'serve':
            from server import run_server
            run_server(args.days, args.channels)

        elif args.mode == 'scheduled':
            from scheduler import create_scheduler
            asyncio.run(create_scheduler().run_scheduled_pipeline(args.days, args.channels))

    except KeyboardInterrupt:
        logger.info("👋 Channel digest shutting down")
    except (OSError, RuntimeError, ValueError) as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
