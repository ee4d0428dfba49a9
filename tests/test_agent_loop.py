"""End-to-end tests for the agent orchestration loop."""

import asyncio

import pytest
from pydantic import BaseModel

from veritype.agent.agent_loop import (
    Agent,
    CancellationToken,
)
from veritype.agent.planner_interface import FunctionModel
from veritype.agent.run_state import RunPhase
from veritype.core.schema import (
    Correction,
    PromptMessage,
    ToolReturn,
    tool_call,
)
from veritype.core.validator import (
    Violation,
    ViolationReason,
)
from veritype.exceptions import (
    DerivationError,
    ModelUnavailable,
    RunCancelled,
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
    ValidationRetriesExceeded,
)


class Person(BaseModel):
    name: str
    age: int


class Answer(BaseModel):
    message: str


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


def boom() -> None:
    raise RuntimeError("tool exploded")


def _corrections(state):
    return [item for turn in state.turns for item in turn.feedback if isinstance(item, Correction)]


# ---------------------------------------------------------------------------
# Output validation
# ---------------------------------------------------------------------------
def test_missing_field_is_corrected_once(scripted_model):
    """A candidate missing ``age`` gets one correction and the second candidate is accepted."""
    model = scripted_model([{"name": "Ada"}, {"name": "Ada", "age": 36}])
    agent = Agent(model, output_type=Person, max_output_retries=2)

    result = agent.run_sync("Who wrote the first program?")

    assert result.output == Person(name="Ada", age=36)
    assert result.output_retries == 1
    assert len(result.turns) == 2
    (correction,) = _corrections(result.state)
    assert correction.violations == [
        Violation(("age",), ViolationReason.MISSING_FIELD, "field required")
    ]
    assert result.state.phase is RunPhase.DONE


def test_correction_is_sent_back_to_model(scripted_model):
    model = scripted_model(["not-json", '{"message": "fixed"}'])
    agent = Agent(model, output_type=Answer, max_output_retries=1)

    result = agent.run_sync("Say something")

    assert result.output.message == "fixed"
    last = model.histories[1][-1]
    assert isinstance(last, Correction)
    assert "Validation error" in last.content
    assert "Return valid JSON only." in last.content


@pytest.mark.parametrize("retries", [0, 1, 3])
def test_retries_are_bounded(retries):
    """With a budget of k the model is called k + 1 times and k corrections are sent."""
    calls = []

    def always_wrong(history, manifest, output_schema):
        calls.append(len(history))
        return {"name": "Ada"}

    agent = Agent(FunctionModel(always_wrong), output_type=Person, max_output_retries=retries)
    with pytest.raises(ValidationRetriesExceeded) as excinfo:
        agent.run_sync("Who?")

    state = excinfo.value.state
    assert len(calls) == retries + 1
    assert len(_corrections(state)) == retries
    assert state.phase is RunPhase.EXHAUSTED
    assert excinfo.value.diagnostics["retries"] == retries
    assert state.error is excinfo.value


def test_text_output_needs_no_json(scripted_model):
    agent = Agent(scripted_model(["Hello, Ada."]))
    assert agent.run_sync("Greet Ada").output == "Hello, Ada."


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
def test_tool_result_feeds_next_turn(scripted_model):
    model = scripted_model([tool_call("add", a=2, b=3), {"message": "5"}])
    agent = Agent(model, output_type=Answer, tools=[add])

    result = agent.run_sync("What is 2 + 3?")

    assert result.output == Answer(message="5")
    second_history = model.histories[1]
    assert isinstance(second_history[-1], ToolReturn)
    assert second_history[-1].content == 5
    assert [schema.name for schema in model.manifests[0]] == ["add"]


def test_bad_arguments_use_tool_budget(scripted_model):
    model = scripted_model(
        [tool_call("add", a="two", b=3), tool_call("add", a=2, b=3), {"message": "5"}]
    )
    agent = Agent(model, output_type=Answer, tools=[add], max_output_retries=0)

    result = agent.run_sync("What is 2 + 3?")

    assert result.tool_retries == 1
    assert result.output_retries == 0
    rejected = result.turns[0].tool_returns[0]
    assert rejected.is_error
    assert "Invalid arguments for tool 'add'" in rejected.content


def test_bad_arguments_exhaust_tool_budget():
    agent = Agent(
        FunctionModel(lambda *_: tool_call("add", a="x", b=1)),
        output_type=Answer,
        tools=[add],
        max_tool_retries=1,
    )
    with pytest.raises(ToolArgumentError) as excinfo:
        agent.run_sync("Add")
    assert len(excinfo.value.state.turns) == 2


def test_unknown_tool_is_reported_as_such():
    """An unknown tool exhausts the tool budget without touching the output budget."""
    agent = Agent(
        FunctionModel(lambda *_: tool_call("nope")),
        output_type=Answer,
        tools=[add],
        max_output_retries=5,
        max_tool_retries=2,
    )
    with pytest.raises(UnknownToolError) as excinfo:
        agent.run_sync("Use a tool")

    state = excinfo.value.state
    assert excinfo.value.tool_name == "nope"
    assert len(state.turns) == 3
    assert state.output_retries == 0
    assert state.phase is RunPhase.EXHAUSTED
    assert all(turn.tool_returns[0].is_error for turn in state.turns)


def test_failing_tool_does_not_hide_sibling_results(scripted_model):
    model = scripted_model([[tool_call("boom"), tool_call("add", a=1, b=1)]])
    agent = Agent(model, output_type=Answer, tools=[add, boom])

    with pytest.raises(ToolExecutionError) as excinfo:
        agent.run_sync("Go")

    assert excinfo.value.tool_name == "boom"
    returns = excinfo.value.state.turns[0].tool_returns
    assert [(r.name, r.is_error) for r in returns] == [("boom", True), ("add", False)]
    assert returns[1].content == 2
    assert excinfo.value.state.phase is RunPhase.FAILED


def test_tool_failure_can_be_reflected(scripted_model):
    model = scripted_model([tool_call("boom"), {"message": "gave up on the tool"}])
    agent = Agent(model, output_type=Answer, tools=[boom], max_tool_error_retries=1)

    result = agent.run_sync("Go")

    assert result.output.message == "gave up on the tool"
    assert result.state.tool_error_retries == 1
    assert "tool exploded" in result.turns[0].tool_returns[0].content


def test_registry_is_frozen_after_first_run(scripted_model):
    agent = Agent(scripted_model(["ok"]), tools=[add])
    agent.run_sync("Hi")
    with pytest.raises(RuntimeError):
        agent.tool(boom)


# ---------------------------------------------------------------------------
# Deps, instructions, concurrency
# ---------------------------------------------------------------------------
def test_instructions_may_depend_on_deps(scripted_model):
    model = scripted_model(["ok"])
    agent = Agent(model, instructions=lambda deps: f"Address the user as {deps}.")
    agent.run_sync("Hi", deps="Captain")
    first = model.histories[0][0]
    assert isinstance(first, PromptMessage)
    assert first.role == "system"
    assert first.content == "Address the user as Captain."


def test_concurrent_runs_are_isolated():
    """Two runs on one agent interleave without seeing each other's turns or deps."""

    async def respond(history, manifest, output_schema):
        await asyncio.sleep(0.01)
        last = history[-1]
        if isinstance(last, ToolReturn):
            return last.content
        return tool_call("whoami")

    agent = Agent(FunctionModel(respond))

    @agent.tool
    async def whoami(deps: str) -> str:
        await asyncio.sleep(0.01)
        return deps

    async def main():
        return await asyncio.gather(agent.run("a", deps="alice"), agent.run("b", deps="bob"))

    first, second = asyncio.run(main())
    assert (first.output, second.output) == ("alice", "bob")
    assert len(first.turns) == len(second.turns) == 2
    assert first.state.run_id != second.state.run_id
    assert first.state.prompt[-1].content == "a"


# ---------------------------------------------------------------------------
# Failures of the run itself
# ---------------------------------------------------------------------------
def test_model_exception_becomes_model_unavailable():
    def broken(*_):
        raise ConnectionError("connection refused")

    agent = Agent(FunctionModel(broken))
    with pytest.raises(ModelUnavailable) as excinfo:
        agent.run_sync("Hi")

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert excinfo.value.state.phase is RunPhase.FAILED
    assert excinfo.value.state.turns == []


def test_model_timeout():
    async def hang(*_):
        await asyncio.sleep(1)
        return "late"

    agent = Agent(FunctionModel(hang), model_timeout=0.05)
    with pytest.raises(ModelUnavailable, match="timed out"):
        agent.run_sync("Hi")


def test_cancel_before_first_call(scripted_model):
    model = scripted_model(["never"])
    token = CancellationToken()
    token.cancel()

    with pytest.raises(RunCancelled) as excinfo:
        Agent(model).run_sync("Hi", cancel=token)

    assert model.call_count == 0
    assert excinfo.value.state.phase is RunPhase.CANCELLED


def test_cancel_before_dispatch():
    """Cancelling while the model answers keeps the committed turn but runs no tool."""
    token = CancellationToken()
    ran = []

    def respond(*_):
        token.cancel()
        return tool_call("record")

    def record() -> None:
        ran.append(True)

    agent = Agent(FunctionModel(respond), tools=[record])
    with pytest.raises(RunCancelled) as excinfo:
        agent.run_sync("Hi", cancel=token)

    assert ran == []
    assert len(excinfo.value.state.turns) == 1
    assert excinfo.value.state.turns[0].feedback == []


def test_zero_schema_depth_is_honoured(scripted_model):
    """An explicit depth of 0 is a limit, not a request for the default."""
    with pytest.raises(DerivationError):
        Agent(scripted_model([]), output_type=Person, schema_max_depth=0)
