"""
Pydantic models for veritype API requests and responses.
This module defines the request and response schemas used by the veritype API.
"""

from typing import (
    Any,
    Dict,
    List,
)

from pydantic import (
    BaseModel,
    Field,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class RunRequest(BaseModel):
    """Incoming prompt for one agent run."""

    prompt: str = Field(..., description="User prompt for the agent")


class ToolResultItem(BaseModel):
    """Successful tool call made during a run."""

    call_id: str
    name: str
    content: Any


class RunResponse(BaseModel):
    """API response returned to the caller after a successful run."""

    run_id: str
    output: Any
    turns: int
    output_retries: int
    tool_retries: int
    tool_results: List[ToolResultItem] = Field(default_factory=list)


class SchemaResponse(BaseModel):
    """Output schema and tool manifest of the served agent."""

    output: Dict[str, Any]
    tools: List[Dict[str, Any]]


class ErrorDetail(BaseModel):
    """Body of ``detail`` for failed runs."""

    kind: str
    message: str
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
