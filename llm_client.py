#!/usr/bin/env python3
"""Async OpenAI helper providing `chat_completion` with optional retry and normalized
per-choice content extraction. Raises `ServiceUnavailable` when the service cannot
produce a reply and `MalformedResponse` when the reply has no choices."""
from __future__ import annotations
from typing import List, Dict, Any, Optional
from asyncio import sleep

from openai import AsyncOpenAI, AsyncAzureOpenAI, OpenAIError

from config import config, get_logger
from errors import ServiceUnavailable, MalformedResponse
from telemetry import trace_span

logger = get_logger("llm_client")

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async OpenAI client if configuration is present.

    An Azure endpoint, when configured, selects the Azure client; OPENAI_MODEL is
    then used as the deployment name. SDK-level retries are disabled so that a
    call maps to exactly one request unless SUMMARIZER_MAX_RETRIES says otherwise.
    """
    global _client
    if _client is not None:
        return _client
    if not config.OPENAI_API_KEY:
        logger.debug("Missing OPENAI_API_KEY; client will not initialize")
        return None
    if config.AZURE_ENDPOINT:
        if not config.OPENAI_API_VERSION:
            logger.error("AZURE_ENDPOINT is set but OPENAI_API_VERSION is missing")
            return None
        _client = AsyncAzureOpenAI(
            api_key=config.OPENAI_API_KEY,
            api_version=config.OPENAI_API_VERSION,
            azure_endpoint=f"https://{config.AZURE_ENDPOINT}",
            max_retries=0,
            timeout=config.SUMMARIZER_HTTP_TIMEOUT,
        )
    else:
        _client = AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL or None,
            max_retries=0,
            timeout=config.SUMMARIZER_HTTP_TIMEOUT,
        )
    return _client


def _extract_text(choice: Any) -> str:
    """Return the text content of one choice ("" when it has none)."""
    message = getattr(choice, "message", None)
    if message is None and isinstance(choice, dict):
        message = choice.get("message")
    if message is None:
        return ""
    content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            txt = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if isinstance(txt, str) and txt.strip():
                texts.append(txt.strip())
        return "\n".join(texts).strip()
    return ""


def _error_details(e: OpenAIError) -> Dict[str, Any]:
    details: Dict[str, Any] = {"type": type(e).__name__}
    status = getattr(e, "status_code", None)
    if status is not None:
        details["status"] = status
    body = getattr(e, "body", None)
    if body:
        details["body"] = body
    return details


@trace_span(
    "openai.chat_completion",
    tracer_name="summarizer",
    attr_from_args=lambda messages=None, **kwargs: {
        "llm.purpose": kwargs.get("purpose", "generic"),
        "llm.model": kwargs.get("model") or config.OPENAI_MODEL,
        "llm.messages": len(messages or []),
    },
)
async def chat_completion(
    messages: List[Dict[str, str]],
    *,
    purpose: str = "generic",
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    retries: Optional[int] = None,
    client_override: Optional[Any] = None,
) -> List[str]:
    """Execute a chat completion and return the text of every choice, in order.

    Raises:
        ServiceUnavailable: no client is configured, or the service kept failing
            after the configured retries
        MalformedResponse: the reply contained no choices
    """
    client = client_override or _get_client()
    if client is None:
        raise ServiceUnavailable("Completion client not configured (OPENAI_API_KEY missing)")

    remaining = retries if retries is not None else config.SUMMARIZER_MAX_RETRIES
    model_name = model or config.OPENAI_MODEL
    params: Dict[str, Any] = {
        "model": model_name,
        "messages": messages,
    }
    if temperature is not None:
        params["temperature"] = temperature

    attempt = 0
    while True:
        try:
            resp = await client.chat.completions.create(**params)
            break
        except OpenAIError as e:
            attempt += 1
            if attempt > remaining:
                logger.error("%s request failed after %d attempt(s): %s", purpose, attempt, e)
                raise ServiceUnavailable(f"Completion service unavailable: {e}", details=_error_details(e)) from e
            delay = config.SUMMARIZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s transient OpenAI error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await sleep(delay)

    choices = getattr(resp, "choices", None) or []
    if not choices:
        logger.error("No choices in %s response: %s", purpose, resp)
        raise MalformedResponse(f"No choices in {purpose} response")

    texts = [_extract_text(ch) for ch in choices]
    logger.debug("%s response: %d choice(s), %d chars", purpose, len(texts), sum(len(t) for t in texts))
    return texts


__all__ = ["chat_completion"]
