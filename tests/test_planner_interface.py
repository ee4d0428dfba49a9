"""Tests for the model backends (no network access)."""

import asyncio
import json
from types import SimpleNamespace
from typing import (
    Dict,
    List,
    Literal,
    Optional,
)

import httpx
import pytest
from pydantic import BaseModel

from veritype.agent.agent_loop import Agent
from veritype.agent.planner_interface import (
    AnthropicModel,
    FunctionModel,
    OpenAIModel,
    TGIModel,
    as_response,
    load_model,
)
from veritype.core.schema import (
    CandidateOutput,
    Correction,
    PromptMessage,
    ToolCallsResponse,
    ToolReturn,
    tool_call,
)
from veritype.core.shape import SchemaDescriptor
from veritype.tools import ToolRegistry


class Person(BaseModel):
    name: str
    age: int


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


PERSON = SchemaDescriptor.for_type(Person)
TEXT = SchemaDescriptor.for_type(str)
MANIFEST = ToolRegistry([add]).manifest()

HISTORY = [
    PromptMessage(role="system", content="Be terse."),
    PromptMessage(content="What is 1 + 2?"),
    ToolCallsResponse(calls=[tool_call("add", call_id="c1", a=1, b=2)]),
    ToolReturn(call_id="c1", name="add", content=3),
    CandidateOutput(payload={"name": "Ada"}),
    Correction(content="Add the age."),
]


class FakeCreate:
    """Async ``create`` stand-in that records its keyword arguments."""

    def __init__(self, response):
        self.response = response
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


# ---------------------------------------------------------------------------
# Registry / FunctionModel
# ---------------------------------------------------------------------------
def test_load_model_by_name():
    assert isinstance(load_model("tgi", endpoint="http://localhost/generate"), TGIModel)
    assert isinstance(load_model("OpenAI", client=object()), OpenAIModel)
    with pytest.raises(ValueError, match="not registered"):
        load_model("nope")


def test_as_response_normalisation():
    call = tool_call("add", a=1, b=2)
    assert as_response(call) == ToolCallsResponse(calls=[call])
    assert as_response([call, call]).calls == [call, call]
    assert as_response({"x": 1}) == CandidateOutput(payload={"x": 1})
    assert as_response([]) == CandidateOutput(payload=[])


def test_function_model_accepts_async_callables():
    async def respond(history, manifest, output_schema):
        return f"{len(history)} message(s), {output_schema.name}"

    response = asyncio.run(FunctionModel(respond).send(HISTORY[:2], [], TEXT))
    assert response == CandidateOutput(payload="2 message(s), str")


def test_output_instructions():
    assert "plain text" in FunctionModel(print).output_instructions(TEXT)
    instructions = FunctionModel(print).output_instructions(PERSON)
    assert json.dumps(PERSON.to_json_schema()) in instructions


# ---------------------------------------------------------------------------
# TGI
# ---------------------------------------------------------------------------
def test_tgi_prompt_and_parsing():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"generated_text": '{"answer": {"name": "Ada", "age": 36}}'})

    model = TGIModel("http://tgi.test/generate", transport=httpx.MockTransport(handler))
    response = asyncio.run(model.send(HISTORY, MANIFEST, PERSON))

    assert response == CandidateOutput(payload={"name": "Ada", "age": 36})
    assert seen["url"] == "http://tgi.test/generate"
    prompt = seen["body"]["inputs"]
    assert "Be terse." in prompt
    assert "- add(a: integer, b: integer): Add two integers." in prompt
    assert "The answer must have this shape: Person{name: string, age: integer}" in prompt
    assert "Tool add returned: 3" in prompt
    assert "User: Add the age." in prompt
    assert prompt.endswith("Assistant:")
    assert seen["body"]["parameters"]["max_new_tokens"] == 512


def test_tgi_malformed_tool_call_gets_corrected():
    """An empty tool name costs one tool retry instead of failing the run."""
    replies = iter(['{"tool": "", "args": {}}', '{"answer": "done"}'])
    prompts = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["inputs"])
        return httpx.Response(200, json={"generated_text": next(replies)})

    model = TGIModel("http://tgi.test/generate", transport=httpx.MockTransport(handler))
    result = Agent(model, tools=[add]).run_sync("Finish up")

    assert result.output == "done"
    assert result.tool_retries == 1
    rejected = result.turns[0].tool_returns[0]
    assert rejected.is_error
    assert "Available tools: add" in rejected.content
    assert "Tool  failed:" in prompts[1]


def test_tgi_http_error_propagates():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    model = TGIModel("http://tgi.test/generate", transport=transport)
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(model.send(HISTORY[:2], [], TEXT))


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------
def _openai(message):
    fake = FakeCreate(SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    client = SimpleNamespace(chat=SimpleNamespace(completions=fake))
    return OpenAIModel("gpt-test", client=client), fake


def test_openai_history_conversion():
    messages = OpenAIModel._convert(HISTORY)
    assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant", "user"]
    assert messages[1]["tool_calls"][0]["function"] == {
        "name": "add",
        "arguments": '{"a": 1, "b": 2}',
    }
    assert messages[2] == {"role": "tool", "tool_call_id": "c1", "content": "3"}


def test_openai_tool_calls():
    message = SimpleNamespace(
        content=None,
        tool_calls=[
            SimpleNamespace(id="c9", function=SimpleNamespace(name="add", arguments='{"a": 1}'))
        ],
    )
    model, fake = _openai(message)
    response = asyncio.run(model.send(HISTORY[:2], MANIFEST, PERSON))

    assert isinstance(response, ToolCallsResponse)
    assert (response.calls[0].call_id, response.calls[0].args) == ("c9", '{"a": 1}')
    assert fake.kwargs["model"] == "gpt-test"
    assert fake.kwargs["messages"][0]["role"] == "system"
    assert fake.kwargs["tools"][0]["function"]["name"] == "add"
    assert fake.kwargs["response_format"] == {"type": "json_object"}


def test_openai_text_output():
    model, fake = _openai(SimpleNamespace(content="Hi!", tool_calls=None))
    response = asyncio.run(model.send(HISTORY[:2], [], TEXT))
    assert response == CandidateOutput(payload="Hi!")
    assert "tools" not in fake.kwargs
    assert "response_format" not in fake.kwargs


@pytest.mark.parametrize("output_type", [List[int], int, Literal["yes", "no"]])
def test_openai_json_mode_only_for_objects(output_type):
    model, fake = _openai(SimpleNamespace(content="[1, 2]", tool_calls=None))
    schema = SchemaDescriptor.for_type(output_type)
    asyncio.run(model.send(HISTORY[:2], [], schema))
    assert "response_format" not in fake.kwargs


def test_openai_json_mode_for_optional_mapping():
    model, fake = _openai(SimpleNamespace(content="{}", tool_calls=None))
    asyncio.run(model.send(HISTORY[:2], [], SchemaDescriptor.for_type(Optional[Dict[str, int]])))
    assert fake.kwargs["response_format"] == {"type": "json_object"}


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------
def test_anthropic_history_conversion():
    messages = AnthropicModel._convert(HISTORY)
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]
    assert messages[1]["content"][0] == {
        "type": "tool_use",
        "id": "c1",
        "name": "add",
        "input": {"a": 1, "b": 2},
    }
    assert messages[2]["content"][0]["type"] == "tool_result"
    assert messages[2]["content"][0]["is_error"] is False


def test_anthropic_tool_use_blocks():
    content = [
        SimpleNamespace(type="text", text="Adding."),
        SimpleNamespace(type="tool_use", id="tu1", name="add", input={"a": 1, "b": 2}),
    ]
    fake = FakeCreate(SimpleNamespace(content=content))
    model = AnthropicModel("claude-test", client=SimpleNamespace(messages=fake))

    response = asyncio.run(model.send(HISTORY[:2], MANIFEST, PERSON))

    assert isinstance(response, ToolCallsResponse)
    assert response.text == "Adding."
    assert response.calls[0].call_id == "tu1"
    assert fake.kwargs["system"].startswith("Be terse.")
    assert fake.kwargs["tools"][0]["input_schema"]["required"] == ["a", "b"]
    assert [m["role"] for m in fake.kwargs["messages"]] == ["user"]
