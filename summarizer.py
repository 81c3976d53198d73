#!/usr/bin/env python3
"""
AI-powered topic summarizer for chat channels.

Sends a channel's accumulated messages to the completion service together
with a fixed instruction prompt, and reconciles the reply (one or more
choices, each expected to hold a JSON array of topics) into a flat list of
TopicSummary objects.
"""

from json import dumps, loads, JSONDecoder, JSONDecodeError
from typing import Any, Dict, List, Optional, Sequence
import re
import yaml

from config import config, get_logger
from errors import MalformedResponse
from llm_client import chat_completion as ai_chat_completion
from models import DEFAULT_SYSTEM_PROMPT, DEFAULT_TEMPERATURE, Message, TopicSummary
from telemetry import trace_span
from utils import RateLimiter

logger = get_logger("summarizer")

CODE_FENCE_PATTERN = re.compile(r'^```[a-zA-Z0-9_-]*\s*(.*?)\s*```$', re.DOTALL)
JSON_START_PATTERN = re.compile(r'[\[{]')
TRAILING_COMMA_OBJECT = re.compile(r',\s*}')
TRAILING_COMMA_ARRAY = re.compile(r',\s*]')

_DECODER = JSONDecoder()


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, str]:
    """Load prompts from prompt.yaml; an unreadable file yields an empty mapping."""
    prompt_path = prompt_path or config.PROMPT_CONFIG_PATH
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts if isinstance(prompts, dict) else {}
    except FileNotFoundError:
        logger.warning(f"Prompt configuration file not found at {prompt_path}; using built-in prompt")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {prompt_path}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


def load_system_prompt(prompt_path: Optional[str] = None) -> str:
    """Return the `topics` prompt from prompt.yaml, or the built-in default."""
    prompt = load_prompts(prompt_path).get('topics')
    if isinstance(prompt, str) and prompt.strip():
        return prompt.strip()
    return DEFAULT_SYSTEM_PROMPT


def serialize_messages(messages: Sequence[Message]) -> str:
    """Render messages oldest-first as the JSON user-turn payload."""
    ordered = sorted(messages, key=lambda m: m.timestamp)
    return dumps([m.to_prompt_dict() for m in ordered], ensure_ascii=False)


def _clean_json(text: str) -> str:
    cleaned = text.strip()
    fenced = CODE_FENCE_PATTERN.match(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    cleaned = TRAILING_COMMA_OBJECT.sub('}', cleaned)
    return TRAILING_COMMA_ARRAY.sub(']', cleaned)


def _looks_like_topics(data: Any) -> bool:
    if isinstance(data, list):
        return all(isinstance(item, dict) for item in data)
    return isinstance(data, dict) and (isinstance(data.get('topics'), list) or 'topicName' in data)


def _decode_embedded(text: str) -> Any:
    """Return the first topic-shaped JSON value in `text`, scanning left to right.

    Bracketed prose such as "[summary]" or a footnote "[1]" is skipped.

    Raises:
        JSONDecodeError: if no such value is found
    """
    for match in JSON_START_PATTERN.finditer(text):
        try:
            data, _ = _DECODER.raw_decode(text, match.start())
        except JSONDecodeError:
            continue
        if _looks_like_topics(data):
            return data
    raise JSONDecodeError("No JSON array of topics found", text, 0)


def _to_topic(item: Any, index: int) -> TopicSummary:
    if not isinstance(item, dict):
        raise MalformedResponse(f"Topic #{index} is not an object", details={"item": item})
    name = item.get('topicName')
    summary = item.get('shortSummary')
    if not isinstance(name, str) or not isinstance(summary, str):
        raise MalformedResponse(f"Topic #{index} lacks topicName/shortSummary", details={"item": item})
    return TopicSummary(topic_name=name.strip(), short_summary=summary.strip())


def parse_topics(text: str) -> List[TopicSummary]:
    """Parse one choice's content into topics.

    Accepts a bare JSON array, a fenced code block, an array embedded in prose,
    or an object wrapping the array under `topics`.

    Raises:
        MalformedResponse: if the content cannot be read as a list of topics
    """
    if not text or not text.strip():
        raise MalformedResponse("Empty completion content")
    try:
        data = loads(text)
    except JSONDecodeError:
        cleaned = _clean_json(text)
        try:
            data = loads(cleaned)
        except JSONDecodeError:
            data = None
        if data is None:
            # The array may sit anywhere inside surrounding prose
            try:
                data = _decode_embedded(cleaned)
            except JSONDecodeError as e:
                logger.debug(f"Problematic JSON was: {cleaned}")
                raise MalformedResponse(f"Completion content is not valid JSON: {e}",
                                        details={"content": text[:500]}) from e

    if isinstance(data, dict):
        if isinstance(data.get('topics'), list):
            data = data['topics']
        elif 'topicName' in data:
            data = [data]
    if not isinstance(data, list):
        raise MalformedResponse(f"Expected a JSON array of topics, got {type(data).__name__}",
                                details={"content": text[:500]})
    return [_to_topic(item, i) for i, item in enumerate(data)]


def reconcile_choices(choices: Sequence[str]) -> List[TopicSummary]:
    """Parse every choice and flatten the topics in choice order.

    A single unparseable choice fails the whole reconciliation.
    """
    topics: List[TopicSummary] = []
    for i, text in enumerate(choices):
        try:
            topics.extend(parse_topics(text))
        except MalformedResponse as e:
            logger.warning(f"Choice {i} could not be parsed: {e}")
            raise
    return topics


class TopicSummarizer:
    """Summarizes one channel's messages into a list of topics."""

    def __init__(
        self,
        model: Optional[str] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        rate_limiter: Optional[RateLimiter] = None,
        client_override: Optional[Any] = None,
    ) -> None:
        self.model = model or config.OPENAI_MODEL
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.rate_limiter = rate_limiter or RateLimiter(config.SUMMARIZER_REQUESTS_PER_MINUTE)
        self.client_override = client_override

    def build_messages(self, messages: Sequence[Message]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": serialize_messages(messages)},
        ]

    @trace_span(
        "summarize",
        tracer_name="summarizer",
        attr_from_args=lambda self, messages: {"messages.count": len(messages) if messages is not None else 0},
    )
    async def summarize(self, messages: Sequence[Message]) -> List[TopicSummary]:
        """Return the topics discussed in `messages`.

        Raises:
            ServiceUnavailable: the completion service failed
            MalformedResponse: a choice could not be parsed
        """
        if not messages:
            logger.info("No messages to summarize; skipping completion call")
            return []

        logger.info(f"Getting summary for {len(messages)} messages from {self.model}...")
        await self.rate_limiter.acquire()
        choices = await ai_chat_completion(
            self.build_messages(messages),
            purpose="topics",
            model=self.model,
            temperature=self.temperature,
            client_override=self.client_override,
        )
        topics = reconcile_choices(choices)
        logger.info(f"Summarized {len(messages)} messages into {len(topics)} topics across {len(choices)} choice(s)")
        return topics


__all__ = [
    "TopicSummarizer",
    "load_prompts",
    "load_system_prompt",
    "serialize_messages",
    "parse_topics",
    "reconcile_choices",
]
