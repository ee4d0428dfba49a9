"""
veritype: a typed runtime for LLM agents.

Agents send a prompt and tool manifest to a model backend, validate the model's answer against a
schema derived from a Python type, and feed validation errors back to the model until the answer
fits or the retry budget is spent.
"""

from veritype.agent.agent_loop import (
    Agent,
    CancellationToken,
    RunResult,
)
from veritype.agent.planner_interface import (
    FunctionModel,
    ModelClient,
    load_model,
    register_model,
)
from veritype.agent.reflection import RetryLimits
from veritype.agent.run_state import (
    RunPhase,
    RunState,
)
from veritype.core.schema import (
    CandidateOutput,
    ToolCallRequest,
    ToolCallsResponse,
    tool_call,
)
from veritype.core.shape import (
    SchemaDescriptor,
    derive_shape,
)
from veritype.core.validator import (
    Invalid,
    Valid,
    Violation,
    ViolationReason,
    validate,
)
from veritype.exceptions import (
    AgentError,
    AgentErrorKind,
    DerivationError,
    DuplicateToolError,
    ModelUnavailable,
    RunCancelled,
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
    ValidationRetriesExceeded,
)
from veritype.tools import (
    ToolRegistry,
    ToolSpec,
    tool_from_function,
)

__all__ = [
    "Agent",
    "AgentError",
    "AgentErrorKind",
    "CancellationToken",
    "CandidateOutput",
    "DerivationError",
    "DuplicateToolError",
    "FunctionModel",
    "Invalid",
    "ModelClient",
    "ModelUnavailable",
    "RetryLimits",
    "RunCancelled",
    "RunPhase",
    "RunResult",
    "RunState",
    "SchemaDescriptor",
    "ToolArgumentError",
    "ToolCallRequest",
    "ToolCallsResponse",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolSpec",
    "UnknownToolError",
    "Valid",
    "ValidationRetriesExceeded",
    "Violation",
    "ViolationReason",
    "derive_shape",
    "load_model",
    "register_model",
    "tool_call",
    "tool_from_function",
    "validate",
]
