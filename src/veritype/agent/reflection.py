"""
Bounded reflection: turn validation failures into corrective turns.

The controller owns no state of its own; it advances a :class:`RunState` along the transition
table in :mod:`veritype.agent.run_state` and raises the terminal error when a budget runs out.
Output validation and tool negotiation use independent counters, so a long tool exchange never
eats into the budget for fixing the final output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    List,
    Sequence,
)

from pydantic_core import (
    PydanticSerializationError,
    to_jsonable_python,
)

from veritype.agent.run_state import (
    RunPhase,
    RunState,
)
from veritype.core.schema import (
    Correction,
    ToolReturn,
    Turn,
)
from veritype.core.shape import SchemaDescriptor
from veritype.core.validator import (
    Invalid,
    ValidationOutcome,
    Violation,
    ViolationReason,
)
from veritype.exceptions import (
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
    ValidationRetriesExceeded,
)

if TYPE_CHECKING:
    from veritype.agent.tool_executor import ToolOutcome

logger = logging.getLogger(__name__)

_REASON_TEXT = {
    ViolationReason.MISSING_FIELD: "missing required field",
    ViolationReason.TYPE_MISMATCH: "wrong type",
    ViolationReason.UNKNOWN_VARIANT: "not an allowed value",
    ViolationReason.CONSTRAINT_FAILED: "constraint failed",
    ViolationReason.INVALID_JSON: "not valid JSON",
}


@dataclass(frozen=True)
class RetryLimits:
    """Retry budgets for one run.  ``max_tool_error_retries=0`` means tool failures are final."""

    max_output_retries: int = 2
    max_tool_retries: int = 2
    max_tool_error_retries: int = 0

    def __post_init__(self) -> None:
        for name in ("max_output_retries", "max_tool_retries", "max_tool_error_retries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")


def describe_violations(violations: Sequence[Violation]) -> str:
    lines = []
    for violation in violations:
        line = f"- {violation.location}: {_REASON_TEXT[violation.reason]}"
        if violation.message:
            line += f" ({violation.message})"
        lines.append(line)
    return "\n".join(lines)


def _render_value(value: Any) -> Any:
    try:
        return to_jsonable_python(value)
    except PydanticSerializationError:
        return str(value)


class ReflectionController:
    """Advances a run after each model response and composes corrective feedback."""

    def __init__(self, limits: RetryLimits, output_schema: SchemaDescriptor) -> None:
        self.limits = limits
        self.output_schema = output_schema

    # -- message composition ------------------------------------------------
    def compose_correction(self, violations: Sequence[Violation]) -> str:
        return (
            f"Previous response did not match the schema for {self.output_schema.name}.\n"
            f"Validation error:\n{describe_violations(violations)}\n"
            f"Expected: {self.output_schema.render()}\n"
            "Return valid JSON only."
        )

    @staticmethod
    def compose_tool_feedback(outcome: "ToolOutcome") -> str:
        error = outcome.error
        if error is None:
            raise ValueError(f"Tool call '{outcome.call.name}' did not fail")
        if isinstance(error, UnknownToolError):
            available = ", ".join(error.available) or "none"
            return (
                f"Tool '{error.tool_name}' does not exist. Available tools: {available}. "
                "Call one of them or answer directly."
            )
        if isinstance(error, ToolArgumentError):
            return (
                f"Invalid arguments for tool '{error.tool_name}':\n"
                f"{describe_violations(error.violations)}\n"
                "Call the tool again with corrected arguments."
            )
        return error.message

    # -- transitions --------------------------------------------------------
    def on_candidate(self, state: RunState, turn: Turn, outcome: ValidationOutcome) -> RunPhase:
        """
        Handle a validated candidate output.  *state* must be in ``VALIDATING``.

        Returns ``DONE`` or ``AWAITING_MODEL``; raises :class:`ValidationRetriesExceeded` once
        the output budget is spent.
        """
        if not isinstance(outcome, Invalid):
            state.result = outcome.value
            state.move_to(RunPhase.DONE)
            return state.phase

        state.last_violations = outcome.violations
        if state.output_retries >= self.limits.max_output_retries:
            state.move_to(RunPhase.EXHAUSTED)
            logger.warning(
                "Run %s: output still invalid after %d retries", state.run_id, state.output_retries
            )
            raise ValidationRetriesExceeded(outcome.violations, state.output_retries)

        state.move_to(RunPhase.CORRECTING)
        turn.feedback.append(
            Correction(
                content=self.compose_correction(outcome.violations),
                violations=list(outcome.violations),
            )
        )
        state.output_retries += 1
        logger.info(
            "Run %s: output invalid (%d violation(s)), correction %d/%d",
            state.run_id,
            len(outcome.violations),
            state.output_retries,
            self.limits.max_output_retries,
        )
        state.move_to(RunPhase.AWAITING_MODEL)
        return state.phase

    def on_dispatched(
        self, state: RunState, turn: Turn, outcomes: Sequence["ToolOutcome"]
    ) -> RunPhase:
        """
        Record a dispatched batch of tool calls.  *state* must be in ``DISPATCHING``.

        Every outcome is appended in request order before any error is raised, so successful
        calls stay visible in the history even when a sibling failed.
        """
        for outcome in outcomes:
            if outcome.ok:
                content, is_error = _render_value(outcome.value), False
            else:
                content, is_error = self.compose_tool_feedback(outcome), True
            turn.feedback.append(
                ToolReturn(
                    call_id=outcome.call.call_id,
                    name=outcome.call.name,
                    content=content,
                    is_error=is_error,
                )
            )

        failed: List[ToolExecutionError] = [
            o.error for o in outcomes if isinstance(o.error, ToolExecutionError)
        ]
        rejected = [
            o.error
            for o in outcomes
            if isinstance(o.error, (ToolArgumentError, UnknownToolError))
        ]

        if failed:
            if state.tool_error_retries >= self.limits.max_tool_error_retries:
                state.move_to(RunPhase.FAILED)
                raise failed[0]
            state.tool_error_retries += 1

        if rejected:
            if state.tool_retries >= self.limits.max_tool_retries:
                state.move_to(RunPhase.EXHAUSTED)
                raise rejected[0]
            state.tool_retries += 1
            logger.info(
                "Run %s: %d tool call(s) rejected, tool retry %d/%d",
                state.run_id,
                len(rejected),
                state.tool_retries,
                self.limits.max_tool_retries,
            )

        state.move_to(RunPhase.AWAITING_MODEL)
        return state.phase
