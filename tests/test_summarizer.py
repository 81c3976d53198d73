import json
from datetime import timedelta

import pytest

from conftest import NOW, make_history
from errors import MalformedResponse, ServiceUnavailable
from models import DEFAULT_SYSTEM_PROMPT, TopicSummary
from summarizer import (
    TopicSummarizer,
    load_system_prompt,
    parse_topics,
    reconcile_choices,
    serialize_messages,
)


class FakeMessage:
    def __init__(self, content):
        self.content = content


class FakeChoice:
    def __init__(self, content):
        self.message = FakeMessage(content)


class FakeResp:
    def __init__(self, contents):
        self.choices = [FakeChoice(c) for c in contents]


class FakeClient:
    def __init__(self, contents=None, error=None):
        self.contents = contents or []
        self.error = error
        self.calls = []
        self.chat = self
        self.completions = self

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return FakeResp(self.contents)


def topics_json(*names):
    return json.dumps([{"topicName": n, "shortSummary": f"about {n}"} for n in names])


def summarizer_for(client, **kwargs):
    return TopicSummarizer(model="gpt-test", client_override=client, **kwargs)


# ---------------------------------------------------------------------------
# parse_topics / reconcile_choices
# ---------------------------------------------------------------------------

def test_parse_plain_array():
    assert parse_topics(topics_json("A")) == [TopicSummary("A", "about A")]


def test_parse_fenced_block_with_trailing_comma():
    text = '```json\n[{"topicName": "A", "shortSummary": "x"},]\n```'
    assert parse_topics(text) == [TopicSummary("A", "x")]


def test_parse_array_embedded_in_prose():
    text = 'Here are the topics:\n[{"topicName": "A", "shortSummary": "x"}]\nHope this helps!'
    assert parse_topics(text) == [TopicSummary("A", "x")]


@pytest.mark.parametrize("text", [
    '[{"topicName": "A", "shortSummary": "x"}]\n\nLet me know if you need more detail.',
    '```json\n[{"topicName": "A", "shortSummary": "x"}]\n```\nThat covers the week.',
    'Topics [summary]: [{"topicName": "A", "shortSummary": "x"}]',
    'As noted in [1], the channel covered: [{"topicName": "A", "shortSummary": "x"}] [2]',
])
def test_parse_array_with_surrounding_prose_and_brackets(text):
    assert parse_topics(text) == [TopicSummary("A", "x")]


def test_parse_topics_wrapper_object():
    text = json.dumps({"topics": [{"topicName": "A", "shortSummary": "x"}]})
    assert parse_topics(text) == [TopicSummary("A", "x")]


def test_parse_empty_array_is_no_topics():
    assert parse_topics("[]") == []


@pytest.mark.parametrize("text", [
    "",
    "no json here at all",
    '{"summary": "not a list"}',
    '[{"topicName": "A"}]',
    '["just a string"]',
])
def test_parse_rejects_unusable_content(text):
    with pytest.raises(MalformedResponse):
        parse_topics(text)


def test_reconcile_flattens_in_choice_order():
    topics = reconcile_choices([topics_json("A", "B"), topics_json("C")])
    assert [t.topic_name for t in topics] == ["A", "B", "C"]


def test_reconcile_one_bad_choice_fails_all():
    with pytest.raises(MalformedResponse):
        reconcile_choices([topics_json("A"), "sorry, I can't do that"])


# ---------------------------------------------------------------------------
# TopicSummarizer
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_summarize_two_choices():
    client = FakeClient([topics_json("A", "B"), topics_json("C")])
    topics = await summarizer_for(client).summarize(make_history(5))
    assert topics == [
        TopicSummary("A", "about A"),
        TopicSummary("B", "about B"),
        TopicSummary("C", "about C"),
    ]


@pytest.mark.asyncio
async def test_summarize_result_length_is_sum_of_choice_lengths():
    counts = [3, 0, 2, 4]
    contents = [topics_json(*[f"t{i}-{j}" for j in range(k)]) for i, k in enumerate(counts)]
    topics = await summarizer_for(FakeClient(contents)).summarize(make_history(3))
    assert len(topics) == sum(counts)


@pytest.mark.asyncio
async def test_summarize_sends_prompt_then_history_oldest_first():
    client = FakeClient([topics_json("A")])
    history = make_history(3)
    await summarizer_for(client, system_prompt="PROMPT", temperature=0.2).summarize(history)

    request = client.calls[0]
    assert request["model"] == "gpt-test"
    assert request["temperature"] == 0.2
    system, user = request["messages"]
    assert system == {"role": "system", "content": "PROMPT"}
    assert user["role"] == "user"
    payload = json.loads(user["content"])
    assert [entry["content"] for entry in payload] == ["message 2", "message 1", "message 0"]
    assert set(payload[0]) == {"content", "author", "timestamp"}


@pytest.mark.asyncio
async def test_summarize_empty_history_skips_completion():
    client = FakeClient([topics_json("A")])
    assert await summarizer_for(client).summarize([]) == []
    assert client.calls == []


@pytest.mark.asyncio
async def test_summarize_malformed_choice_raises():
    client = FakeClient([topics_json("A"), "not json"])
    with pytest.raises(MalformedResponse):
        await summarizer_for(client).summarize(make_history(2))


@pytest.mark.asyncio
async def test_summarize_service_failure_raises_unavailable():
    from openai import OpenAIError

    client = FakeClient(error=OpenAIError("503 Service Unavailable"))
    with pytest.raises(ServiceUnavailable):
        await summarizer_for(client).summarize(make_history(2))


# ---------------------------------------------------------------------------
# prompt and serialization helpers
# ---------------------------------------------------------------------------

def test_serialize_messages_orders_oldest_first():
    history = make_history(4, start=NOW, step=timedelta(hours=1))
    shuffled = [history[2], history[0], history[3], history[1]]
    payload = json.loads(serialize_messages(shuffled))
    assert [entry["content"] for entry in payload] == ["message 3", "message 2", "message 1", "message 0"]
    assert payload[-1]["timestamp"] == NOW.isoformat()


def test_load_system_prompt_reads_topics_key(tmp_path):
    prompt_file = tmp_path / "prompt.yaml"
    prompt_file.write_text("topics: |\n  Summarize these.\n", encoding="utf-8")
    assert load_system_prompt(str(prompt_file)) == "Summarize these."


def test_load_system_prompt_falls_back_to_default(tmp_path):
    assert load_system_prompt(str(tmp_path / "missing.yaml")) == DEFAULT_SYSTEM_PROMPT
    empty = tmp_path / "empty.yaml"
    empty.write_text("other: value\n", encoding="utf-8")
    assert load_system_prompt(str(empty)) == DEFAULT_SYSTEM_PROMPT
