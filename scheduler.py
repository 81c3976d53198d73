#!/usr/bin/env python3
"""
Digest scheduler.

Runs the digest pipeline at fixed times of day defined in channels.yaml and
writes the reports to PUBLIC_DIR after each run. Supported formats:

    schedule:
      - time: "06:30"
      - "18:00"

or

    schedule:
      timezone: Europe/Lisbon
      times: ["06:30", "18:00"]

SCHEDULER_TIMEZONE sets the default timezone (UTC when unset or invalid).
"""

import asyncio
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("scheduler")

# Pause after a failed run before computing the next run time
ERROR_BACKOFF_SECONDS = 60


class ScheduleEntry:
    """A single time of day at which the digest runs."""

    def __init__(self, time_str: str):
        """
        Raises:
            ValueError: If the time is not in H:MM / HH:MM format
        """
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    @staticmethod
    def _parse_time(time_str: str) -> time:
        parts = time_str.split(':')
        if len(parts) != 2:
            raise ValueError(f"Time must be in HH:MM format, got: {time_str}")
        try:
            hour, minute = int(parts[0]), int(parts[1])
        except ValueError:
            raise ValueError(f"Invalid time format '{time_str}'")
        if not (0 <= hour <= 23):
            raise ValueError(f"Hour must be 0-23, got: {hour}")
        if not (0 <= minute <= 59):
            raise ValueError(f"Minute must be 0-59, got: {minute}")
        return time(hour=hour, minute=minute)

    def next_occurrence(self, from_time: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> datetime:
        """Next occurrence strictly after `from_time`, computed in `tz` and returned in UTC."""
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate_local = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=1)
        return candidate_local.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def _resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    if not name:
        return None
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{name}'")
        return None


def parse_schedule(raw: Any) -> Dict[str, Any]:
    """Parse the `schedule` section into entries and an optional timezone name."""
    tz_name = None
    if isinstance(raw, dict):
        tz_name = raw.get('timezone') or raw.get('tz')
        raw = raw.get('times') or []
    if not isinstance(raw, list):
        if raw is not None:
            logger.error("Schedule must be a list of times; ignoring")
        raw = []

    entries: List[ScheduleEntry] = []
    for item in raw:
        value = item.get('time') if isinstance(item, dict) else item
        if value is None:
            logger.warning(f"Invalid schedule entry format: {item}")
            continue
        try:
            entries.append(ScheduleEntry(value))
        except ValueError as e:
            logger.error(f"Failed to parse schedule entry {item}: {e}")
    return {"entries": entries, "timezone": tz_name}


class DigestScheduler:
    """Sleeps until the next scheduled time, runs the digest, repeats."""

    def __init__(self, schedule: Any = None, timezone_name: Optional[str] = None):
        parsed = parse_schedule(schedule)
        self.schedule_entries: List[ScheduleEntry] = parsed["entries"]
        self.schedule_timezone_name = parsed["timezone"] or timezone_name or "UTC"
        self.schedule_timezone = _resolve_timezone(self.schedule_timezone_name)
        if self.schedule_timezone is None:
            self.schedule_timezone_name = "UTC"
            self.schedule_timezone = timezone.utc
        if self.schedule_entries:
            times_str = ", ".join(entry.time_str for entry in self.schedule_entries)
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): {times_str}")

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest next scheduled run in UTC, or None when nothing is scheduled."""
        if not self.schedule_entries:
            return None
        from_time = from_time or datetime.now(timezone.utc)
        return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = (next_run - now).total_seconds() if next_run else None
        return {
            'current_time': now.isoformat(),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
            'schedule_active': bool(self.schedule_entries),
        }

    def print_schedule_status(self):
        status = self.get_schedule_status()
        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        if status['schedule_active']:
            print(f"🎯 Scheduled times: {', '.join(status['schedule_times'])}")
            print(f"⏭️ Next run: {status['next_run_time']} (in {status['minutes_until_next_run']:.1f} minutes)")
        else:
            print("❌ No schedule configured")

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float):
        await asyncio.sleep(sleep_time)

    async def run_digest(self, days: Optional[int] = None, only: Optional[List[str]] = None):
        """Run one digest and publish the reports to PUBLIC_DIR."""
        from main import run_once
        from publisher import write_reports

        # Pick up channels.yaml edits between runs
        config.reload_channels()
        reports = await run_once(days, only)
        write_reports(reports)
        return reports

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_scheduled_pipeline(self, days: Optional[int] = None, only: Optional[List[str]] = None):
        if not self.schedule_entries:
            logger.error("No schedule configured - cannot run in scheduled mode")
            logger.info("Please add a 'schedule' section with times to channels.yaml")
            return

        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("🎬 Running digest immediately on startup (SCHEDULER_RUN_IMMEDIATELY=true)")
            try:
                await self.run_digest(days, only)
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                return
            except Exception as e:
                logger.error(f"💥 Error in startup digest run: {e}")

        while True:
            try:
                next_time = self.get_next_run_time()
                # Small buffer so we never wake up just before the mark
                sleep_time = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds() + 1)
                logger.info(f"😴 Sleeping {sleep_time / 60:.1f} minutes until next run ({self.schedule_timezone_name})")
                await self._sleep_until(next_time, sleep_time)

                logger.info("⏰ Starting scheduled digest run")
                reports = await self.run_digest(days, only)
                failed = sum(1 for r in reports if not r.ok)
                logger.info(f"✅ Scheduled digest finished ({len(reports) - failed} ok, {failed} failed)")
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduled digest run: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)


def create_scheduler() -> DigestScheduler:
    """Build a scheduler from channels.yaml and SCHEDULER_TIMEZONE."""
    data = config._safe_read_yaml(config.CHANNELS_CONFIG_PATH, 1024 * 1024, 'channels')
    schedule = data.get('schedule') if isinstance(data, dict) else None
    return DigestScheduler(schedule, timezone_name=config.SCHEDULER_TIMEZONE)


__all__ = ["ScheduleEntry", "DigestScheduler", "parse_schedule", "create_scheduler"]
