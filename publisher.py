#!/usr/bin/env python3
"""
Report publisher for channel digests.

Renders per-channel reports as Markdown (one section per channel, one
bullet per topic) or JSON, and writes them to the public directory.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
import json
import shutil
import tempfile

from config import config, get_logger
from models import ChannelReport
from telemetry import trace_span

logger = get_logger("publisher")


def render_markdown(report: ChannelReport) -> str:
    """Render one channel report as a Markdown section."""
    lines = [f"## <#{report.channel.id}>"]
    if report.error:
        lines.append(f"_Summary unavailable: {report.error}_")
    elif not report.topics:
        lines.append("_No activity._")
    else:
        lines.extend(f"- **{t.topic_name}:** {t.short_summary}" for t in report.topics)
    return "\n".join(lines)


def render_markdown_list(reports: Sequence[ChannelReport]) -> List[str]:
    """One Markdown string per channel, in report order."""
    return [render_markdown(r) for r in reports]


def render_json(reports: Sequence[ChannelReport], indent: Optional[int] = 2) -> str:
    return json.dumps([r.to_dict() for r in reports], ensure_ascii=False, indent=indent)


def _atomic_write(output_file: Path, content: str) -> None:
    """Write via a temporary file in the same directory, then move into place."""
    with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', suffix=output_file.suffix,
                                     dir=output_file.parent, delete=False) as tf:
        tf.write(content)
        temp_path = tf.name
    shutil.move(temp_path, output_file)


@trace_span(
    "publisher.write_reports",
    tracer_name="publisher",
    attr_from_args=lambda reports, output_dir=None: {"reports.count": len(reports)},
)
def write_reports(reports: Sequence[ChannelReport], output_dir: Optional[str] = None) -> Tuple[Path, Path]:
    """Write digest.md and digest.json into `output_dir` (defaults to PUBLIC_DIR).

    Returns:
        Paths of the Markdown and JSON files
    """
    out = Path(output_dir or config.PUBLIC_DIR)
    out.mkdir(parents=True, exist_ok=True)

    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    markdown = f"# Channel digest ({generated})\n\n" + "\n\n".join(render_markdown_list(reports)) + "\n"

    md_path = out / "digest.md"
    json_path = out / "digest.json"
    _atomic_write(md_path, markdown)
    _atomic_write(json_path, render_json(reports) + "\n")
    logger.info(f"Wrote {len(reports)} channel reports to {md_path} and {json_path}")
    return md_path, json_path


__all__ = ["render_markdown", "render_markdown_list", "render_json", "write_reports"]
