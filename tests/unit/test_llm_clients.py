from types import SimpleNamespace

import openai
import pytest

from codeagent.schemas.llm import CodeStep, TextResponse
from codeagent.utils.llm_clients import (
    LLMResponseError,
    LLMTransportError,
    OpenAIChatClient,
    ScriptedLLMClient,
    parse_structured,
)


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_parse_structured_accepts_raw_fenced_and_chatty_json():
    raw = '{"thought": "t", "code": "1"}'
    fenced = 'Here you go:\n```json\n{"thought": "t", "code": "1"}\n```'
    chatty = 'Sure! {"thought": "t", "code": "1"} Hope that helps.'

    for text in (raw, fenced, chatty):
        assert parse_structured(text, CodeStep) == CodeStep(thought="t", code="1")


def test_parse_structured_rejects_bad_input():
    with pytest.raises(LLMResponseError):
        parse_structured("", CodeStep)
    with pytest.raises(LLMResponseError):
        parse_structured("not json at all", CodeStep)
    with pytest.raises(LLMResponseError):
        parse_structured('{"thought": "missing code"}', CodeStep)


def test_scripted_client_replays_in_order_and_records_calls():
    client = ScriptedLLMClient(
        [
            CodeStep(thought="a", code="1"),
            {"thought": "b", "code": "2"},
            '{"answer": "done"}',
            lambda messages, model: CodeStep(thought="c", code=str(len(messages))),
        ]
    )
    messages = [{"role": "user", "content": "hi"}]

    assert client.complete("m", messages, CodeStep).code == "1"
    assert client.complete("m", messages, CodeStep).thought == "b"
    assert client.complete("m", messages, TextResponse).answer == "done"
    assert client.complete("m", messages, CodeStep).code == "1"
    assert len(client.calls) == 4
    assert client.calls[2].response_model is TextResponse
    assert client.remaining == 0


def test_scripted_client_raises_scripted_errors_and_when_exhausted():
    client = ScriptedLLMClient([LLMResponseError("garbled"), {"wrong": "shape"}])

    with pytest.raises(LLMResponseError, match="garbled"):
        client.complete("m", [], CodeStep)
    with pytest.raises(LLMResponseError):
        client.complete("m", [], CodeStep)
    with pytest.raises(LLMTransportError):
        client.complete("m", [], CodeStep)


def test_openai_client_requests_json_and_embeds_schema():
    completions = FakeCompletions(content='```json\n{"thought": "t", "code": "x = 1"}\n```')
    client = OpenAIChatClient(api_key="k", client=fake_openai(completions))

    step = client.complete(
        "some-model",
        [{"role": "system", "content": "You are an agent."}, {"role": "user", "content": "task"}],
        CodeStep,
        temperature=0.2,
    )

    assert step.code == "x = 1"
    assert completions.kwargs["model"] == "some-model"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["temperature"] == 0.2
    system = completions.kwargs["messages"][0]
    assert system["role"] == "system"
    assert system["content"].startswith("You are an agent.")
    assert '"thought"' in system["content"]


def test_openai_client_maps_sdk_errors_to_transport_errors():
    completions = FakeCompletions(error=openai.OpenAIError("connection refused"))
    client = OpenAIChatClient(api_key="k", client=fake_openai(completions))

    with pytest.raises(LLMTransportError, match="connection refused"):
        client.complete("m", [{"role": "user", "content": "x"}], CodeStep)


def test_openai_client_without_key_fails_as_transport_error(monkeypatch):
    monkeypatch.delenv("HF_TOKEN", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = OpenAIChatClient()

    with pytest.raises(LLMTransportError, match="API key required"):
        client.complete("m", [{"role": "user", "content": "x"}], CodeStep)


def test_openai_client_empty_content_is_a_response_error():
    client = OpenAIChatClient(api_key="k", client=fake_openai(FakeCompletions(content=None)))

    with pytest.raises(LLMResponseError):
        client.complete("m", [{"role": "user", "content": "x"}], CodeStep)
