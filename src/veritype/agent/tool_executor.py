"""Dispatches tool calls through a :class:`ToolRegistry` and wraps errors."""

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    List,
    Optional,
    Sequence,
    Union,
)

from veritype.core.schema import ToolCallRequest
from veritype.exceptions import (
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
)
from veritype.tools import ToolRegistry

logger = logging.getLogger(__name__)

ToolFailure = Union[ToolArgumentError, UnknownToolError, ToolExecutionError]


@dataclass(frozen=True)
class ToolOutcome:
    """Result of one requested call: either a value or the error it produced."""

    call: ToolCallRequest
    value: Any = None
    error: Optional[ToolFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def execute_tool(
    registry: ToolRegistry,
    call: ToolCallRequest,
    deps: Any,
    timeout: Optional[float] = None,
) -> ToolOutcome:
    """
    Look up *call.name* in *registry* and invoke it with *call.args*.

    Never raises for tool-level problems: unknown names, bad arguments, failures and timeouts are
    returned as the outcome's ``error``.
    """
    try:
        dispatch = registry.dispatch(call.name, call.args, deps)
        if timeout is None:
            result = await dispatch
        else:
            result = await asyncio.wait_for(dispatch, timeout)
    except (ToolArgumentError, UnknownToolError, ToolExecutionError) as exc:
        logger.info("Tool call '%s' (%s) failed: %s", call.name, call.call_id, exc)
        return ToolOutcome(call=call, error=exc)
    except asyncio.TimeoutError:
        logger.warning("Tool '%s' timed out after %ss", call.name, timeout)
        return ToolOutcome(
            call=call, error=ToolExecutionError(call.name, f"timed out after {timeout}s")
        )
    logger.debug("Tool '%s' returned: %s", call.name, result.value)
    return ToolOutcome(call=call, value=result.value)


async def execute_tool_calls(
    registry: ToolRegistry,
    calls: Sequence[ToolCallRequest],
    deps: Any,
    timeout: Optional[float] = None,
) -> List[ToolOutcome]:
    """Run *calls* concurrently; outcomes come back in request order."""
    logger.info("Dispatching %d tool call(s): %s", len(calls), [call.name for call in calls])
    return list(
        await asyncio.gather(*(execute_tool(registry, call, deps, timeout) for call in calls))
    )
