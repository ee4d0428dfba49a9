"""Tests for concurrent tool execution."""

import asyncio
import time

import pytest

from veritype.agent.tool_executor import (
    execute_tool,
    execute_tool_calls,
)
from veritype.core.schema import tool_call
from veritype.exceptions import (
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
)
from veritype.tools import ToolRegistry


async def slow(value: str, delay: float) -> str:
    await asyncio.sleep(delay)
    return value


def double(x: int) -> int:
    return x * 2


def fail() -> None:
    raise RuntimeError("kaput")


@pytest.fixture
def registry():
    return ToolRegistry([slow, double, fail])


def test_execute_valid_tool(registry):
    """Test executing a valid tool."""
    outcome = asyncio.run(execute_tool(registry, tool_call("double", x=21), None))
    assert outcome.ok
    assert outcome.value == 42


def test_execute_missing_tool(registry):
    """Test executing a non-existent tool."""
    outcome = asyncio.run(execute_tool(registry, tool_call("missing_tool"), None))
    assert not outcome.ok
    assert isinstance(outcome.error, UnknownToolError)


def test_execute_tool_with_bad_args(registry):
    """Test executing a tool with wrong argument types."""
    outcome = asyncio.run(execute_tool(registry, tool_call("double", x="two"), None))
    assert isinstance(outcome.error, ToolArgumentError)


def test_execute_failing_tool(registry):
    outcome = asyncio.run(execute_tool(registry, tool_call("fail"), None))
    assert isinstance(outcome.error, ToolExecutionError)
    assert "kaput" in outcome.error.reason


def test_timeout_becomes_execution_error(registry):
    call = tool_call("slow", value="late", delay=1.0)
    outcome = asyncio.run(execute_tool(registry, call, None, timeout=0.05))
    assert isinstance(outcome.error, ToolExecutionError)
    assert "timed out" in outcome.error.reason


def test_outcomes_follow_request_order(registry):
    """The slowest call comes first in the request and stays first in the outcomes."""
    calls = [
        tool_call("slow", value="first", delay=0.2),
        tool_call("fail"),
        tool_call("slow", value="third", delay=0.01),
    ]
    start = time.perf_counter()
    outcomes = asyncio.run(execute_tool_calls(registry, calls, None))
    elapsed = time.perf_counter() - start

    assert [o.call.call_id for o in outcomes] == [c.call_id for c in calls]
    assert outcomes[0].value == "first"
    assert isinstance(outcomes[1].error, ToolExecutionError)
    assert outcomes[2].value == "third"
    # Calls run concurrently, not back to back
    assert elapsed < 0.4
