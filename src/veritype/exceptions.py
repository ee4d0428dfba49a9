"""
Error taxonomy for veritype.

Every failure that reaches a caller is an :class:`AgentError` subclass with a discriminating
``kind`` and a JSON-friendly ``diagnostics`` mapping.  Errors raised during a run also carry the
run's ``state`` so the caller can inspect the turns that were committed before the failure.
"""

from __future__ import annotations

from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
)

if TYPE_CHECKING:
    from veritype.agent.run_state import RunState
    from veritype.core.validator import Violation


class AgentErrorKind(str, Enum):
    """Discriminator for :class:`AgentError` subclasses."""

    DERIVATION = "derivation"
    VALIDATION_RETRIES_EXCEEDED = "validation_retries_exceeded"
    TOOL_ARGUMENT = "tool_argument"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_EXECUTION = "tool_execution"
    MODEL_UNAVAILABLE = "model_unavailable"
    RUN_CANCELLED = "run_cancelled"
    DUPLICATE_TOOL = "duplicate_tool"


class AgentError(Exception):
    """Base class for every error raised by the runtime."""

    kind: ClassVar[AgentErrorKind]

    def __init__(
        self,
        message: str,
        *,
        diagnostics: Optional[Mapping[str, Any]] = None,
        state: Optional["RunState"] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})
        self.state = state

    def attach(self, state: "RunState") -> "AgentError":
        """Attach *state* unless another run state was attached first."""
        if self.state is None:
            self.state = state
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable view used by the HTTP API."""
        return {"kind": self.kind.value, "message": self.message, "diagnostics": self.diagnostics}


def _violation_dicts(violations: Sequence["Violation"]) -> List[Dict[str, Any]]:
    return [violation.as_dict() for violation in violations]


class DerivationError(AgentError):
    """A type shape could not be derived (unsupported type, nesting too deep, recursion)."""

    kind = AgentErrorKind.DERIVATION


class DuplicateToolError(AgentError):
    """A tool name was registered twice."""

    kind = AgentErrorKind.DUPLICATE_TOOL

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is already registered.", diagnostics={"tool": name})
        self.tool_name = name


class ValidationRetriesExceeded(AgentError):
    """The model never produced a valid output within the retry budget."""

    kind = AgentErrorKind.VALIDATION_RETRIES_EXCEEDED

    def __init__(self, violations: Sequence["Violation"], retries: int) -> None:
        self.violations = tuple(violations)
        self.retries = retries
        summary = "; ".join(str(v) for v in self.violations) or "unknown validation error"
        super().__init__(
            f"validation failed after {retries + 1} attempts: {summary}",
            diagnostics={
                "retries": retries,
                "attempts": retries + 1,
                "violations": _violation_dicts(self.violations),
            },
        )


class ToolArgumentError(AgentError):
    """Tool arguments failed schema validation."""

    kind = AgentErrorKind.TOOL_ARGUMENT

    def __init__(self, tool_name: str, violations: Sequence["Violation"]) -> None:
        self.tool_name = tool_name
        self.violations = tuple(violations)
        summary = "; ".join(str(v) for v in self.violations)
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': {summary}",
            diagnostics={"tool": tool_name, "violations": _violation_dicts(self.violations)},
        )


class UnknownToolError(AgentError):
    """The model asked for a tool that is not registered."""

    kind = AgentErrorKind.UNKNOWN_TOOL

    def __init__(self, tool_name: str, available: Sequence[str] = ()) -> None:
        self.tool_name = tool_name
        self.available = tuple(available)
        super().__init__(
            f"Tool '{tool_name}' is not registered.",
            diagnostics={"tool": tool_name, "available": list(self.available)},
        )


class ToolExecutionError(AgentError):
    """Raised when a registered tool runs and fails (or times out)."""

    kind = AgentErrorKind.TOOL_EXECUTION

    def __init__(self, tool_name: str, reason: str) -> None:
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Tool '{tool_name}' raised an error: {reason}",
            diagnostics={"tool": tool_name, "error": reason},
        )


class ModelUnavailable(AgentError):
    """Transport-level failure of the model backend."""

    kind = AgentErrorKind.MODEL_UNAVAILABLE


class RunCancelled(AgentError):
    """The run honoured a cancellation request."""

    kind = AgentErrorKind.RUN_CANCELLED
