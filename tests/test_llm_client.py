import pytest
from openai import OpenAIError

import llm_client
from errors import MalformedResponse, ServiceUnavailable
from llm_client import chat_completion


class FakeMessage:
    def __init__(self, content):
        self.content = content


class FakeChoice:
    def __init__(self, content):
        self.message = FakeMessage(content)
        self.finish_reason = "stop"


class FakeResp:
    def __init__(self, choices):
        self.choices = choices


class FakeClient:
    """Replays `outcomes` (responses or exceptions), one per create() call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.chat = self
        self.completions = self

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def no_backoff(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(llm_client, "sleep", fake_sleep)
    return delays


PROMPT = [{"role": "user", "content": "test"}]


@pytest.mark.asyncio
async def test_returns_every_choice_in_order():
    client = FakeClient(FakeResp([FakeChoice(" first "), FakeChoice("second")]))
    result = await chat_completion(PROMPT, purpose="test", retries=0, client_override=client)
    assert result == ["first", "second"]


@pytest.mark.asyncio
async def test_passes_model_and_temperature():
    client = FakeClient(FakeResp([FakeChoice("[]")]))
    await chat_completion(PROMPT, model="gpt-test", temperature=0.2, retries=0, client_override=client)
    assert client.calls[0]["model"] == "gpt-test"
    assert client.calls[0]["temperature"] == 0.2
    assert client.calls[0]["messages"] == PROMPT


@pytest.mark.asyncio
async def test_omits_temperature_when_not_given():
    client = FakeClient(FakeResp([FakeChoice("[]")]))
    await chat_completion(PROMPT, retries=0, client_override=client)
    assert "temperature" not in client.calls[0]


@pytest.mark.asyncio
async def test_joins_list_of_parts_content():
    parts = [{"type": "text", "text": "[{\"topicName\": "}, {"type": "reasoning", "text": ""}, {"type": "text", "text": "\"a\"}]"}]
    client = FakeClient(FakeResp([FakeChoice(parts)]))
    result = await chat_completion(PROMPT, retries=0, client_override=client)
    assert result == ['[{"topicName":\n"a"}]']


@pytest.mark.asyncio
async def test_missing_content_becomes_empty_string():
    client = FakeClient(FakeResp([FakeChoice(None)]))
    assert await chat_completion(PROMPT, retries=0, client_override=client) == [""]


@pytest.mark.asyncio
async def test_no_choices_is_malformed():
    client = FakeClient(FakeResp([]))
    with pytest.raises(MalformedResponse):
        await chat_completion(PROMPT, purpose="topics", retries=0, client_override=client)


@pytest.mark.asyncio
async def test_service_error_without_retries_is_unavailable(no_backoff):
    client = FakeClient(OpenAIError("upstream 503"))
    with pytest.raises(ServiceUnavailable) as excinfo:
        await chat_completion(PROMPT, retries=0, client_override=client)
    assert "upstream 503" in str(excinfo.value)
    assert excinfo.value.details["type"] == "OpenAIError"
    assert len(client.calls) == 1
    assert no_backoff == []


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff(monkeypatch, no_backoff):
    monkeypatch.setattr(llm_client.config, "SUMMARIZER_RETRY_DELAY_BASE", 1.0)
    client = FakeClient(OpenAIError("busy"), OpenAIError("busy"), FakeResp([FakeChoice("ok")]))
    result = await chat_completion(PROMPT, retries=2, client_override=client)
    assert result == ["ok"]
    assert len(client.calls) == 3
    assert no_backoff == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retries_exhausted_raises_unavailable(no_backoff):
    client = FakeClient(OpenAIError("busy"), OpenAIError("still busy"))
    with pytest.raises(ServiceUnavailable):
        await chat_completion(PROMPT, retries=1, client_override=client)
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_missing_client_is_unavailable(monkeypatch):
    monkeypatch.setattr(llm_client, "_get_client", lambda: None)
    with pytest.raises(ServiceUnavailable):
        await chat_completion(PROMPT, retries=0)
