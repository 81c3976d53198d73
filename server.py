#!/usr/bin/env python3
"""
HTTP trigger for the channel digest.

GET /             JSON array with one Markdown section per channel
GET /digest.json  structured reports
GET /health       liveness probe

Each digest request runs the whole pipeline and answers once every channel
has been fetched and summarized. `?days=N` overrides the lookback window.
"""

from typing import Callable, List, Optional

from aiohttp import web

from config import config, get_logger
from main import DigestOrchestrator, build_settings
from models import ChannelReport, DigestSettings
from publisher import render_markdown_list

logger = get_logger("server")

OrchestratorFactory = Callable[[DigestSettings], DigestOrchestrator]

ORCHESTRATOR_FACTORY = web.AppKey("orchestrator_factory", object)
SETTINGS_FACTORY = web.AppKey("settings_factory", object)


def _parse_days(request: web.Request) -> Optional[int]:
    raw = request.query.get("days")
    if raw is None:
        return None
    try:
        days = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(text="days must be a positive integer")
    if days < 1:
        raise web.HTTPBadRequest(text="days must be a positive integer")
    return days


async def _run_digest(request: web.Request) -> List[ChannelReport]:
    days = _parse_days(request)
    settings = request.app[SETTINGS_FACTORY](days)
    orchestrator = request.app[ORCHESTRATOR_FACTORY](settings)
    logger.info(f"Digest requested by {request.remote} ({settings.lookback_days} days)")
    return await orchestrator.run()


async def handle_markdown(request: web.Request) -> web.Response:
    reports = await _run_digest(request)
    return web.json_response(render_markdown_list(reports))


async def handle_json(request: web.Request) -> web.Response:
    reports = await _run_digest(request)
    return web.json_response([r.to_dict() for r in reports])


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "channels": len(config.CHANNELS)})


def create_app(
    days: Optional[int] = None,
    only: Optional[List[str]] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        days: Default lookback window for requests without `?days=`
        only: Restrict digests to these channel names or ids
        orchestrator_factory: Builds the orchestrator for a request's settings
    """
    app = web.Application()
    app[SETTINGS_FACTORY] = lambda requested_days: build_settings(requested_days or days, only)
    app[ORCHESTRATOR_FACTORY] = orchestrator_factory or DigestOrchestrator
    app.router.add_get("/", handle_markdown)
    app.router.add_get("/digest.json", handle_json)
    app.router.add_get("/health", handle_health)
    return app


def run_server(days: Optional[int] = None, only: Optional[List[str]] = None) -> None:
    """Serve the digest over HTTP until interrupted."""
    logger.info(f"🌐 Serving channel digest on {config.SERVER_HOST}:{config.SERVER_PORT}")
    web.run_app(create_app(days, only), host=config.SERVER_HOST, port=config.SERVER_PORT, print=None)


__all__ = ["create_app", "run_server"]
