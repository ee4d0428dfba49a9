"""
Schema definitions for agent <-> model <-> tool messages.

These data models serve as the contract between the model backends, the orchestration loop, and
individual tools.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

import uuid
from typing import (
    Annotated,
    Any,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    Field,
)

from veritype.core.validator import Violation


def _call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Model responses
# ---------------------------------------------------------------------------
class ToolCallRequest(BaseModel):
    """A call that the model wants the agent to execute."""

    name: str = Field(..., description="Registered tool name")
    args: Any = Field(
        default_factory=dict, description="Raw arguments: a mapping or a JSON-encoded string"
    )
    call_id: str = Field(default_factory=_call_id, description="Backend call identifier")


class ToolCallsResponse(BaseModel):
    """The model asked for one or more tool calls."""

    kind: Literal["tool_calls"] = "tool_calls"
    calls: List[ToolCallRequest] = Field(..., min_length=1)
    text: Optional[str] = None  # Optional commentary emitted alongside the calls


class CandidateOutput(BaseModel):
    """The model's proposed final output, not yet validated."""

    kind: Literal["output"] = "output"
    payload: Any


ModelResponse = Annotated[Union[ToolCallsResponse, CandidateOutput], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Conversation messages
# ---------------------------------------------------------------------------
class PromptMessage(BaseModel):
    """System instructions or the user prompt that opens a run."""

    kind: Literal["prompt"] = "prompt"
    role: Literal["system", "user"] = "user"
    content: str


class ToolReturn(BaseModel):
    """Result (or failure feedback) of one tool call, keyed by the call it answers."""

    kind: Literal["tool_return"] = "tool_return"
    call_id: str
    name: str
    content: Any
    is_error: bool = False


class Correction(BaseModel):
    """Corrective feedback sent after an output failed validation."""

    kind: Literal["correction"] = "correction"
    content: str
    violations: List[Violation] = Field(default_factory=list)


Feedback = Annotated[Union[ToolReturn, Correction], Field(discriminator="kind")]

Message = Annotated[
    Union[PromptMessage, ToolCallsResponse, CandidateOutput, ToolReturn, Correction],
    Field(discriminator="kind"),
]


class Turn(BaseModel):
    """A single exchange with the model: its response plus the feedback appended after it."""

    index: int
    response: ModelResponse
    feedback: List[Feedback] = Field(default_factory=list)

    def messages(self) -> List[Message]:
        return [self.response, *self.feedback]

    @property
    def tool_returns(self) -> List[ToolReturn]:
        return [item for item in self.feedback if isinstance(item, ToolReturn)]


def tool_call(name: str, call_id: Optional[str] = None, **args: Any) -> ToolCallRequest:
    """Shorthand for building a :class:`ToolCallRequest`."""
    if call_id is None:
        return ToolCallRequest(name=name, args=args)
    return ToolCallRequest(name=name, args=args, call_id=call_id)
