"""
Parser for model replies that arrive as plain text (no native tool-calling API).

The text protocol asks the model for exactly one JSON object, one of:

    {"tool": "<name>", "args": { ... }}
    {"tool_calls": [{"name": "<name>", "args": { ... }}, ...]}
    {"answer": <final output>}

Anything else that decodes is treated as the final output itself, and text that does not decode
at all (after a Python-literal fallback for single-quoted dicts) is handed on verbatim so that the
validator can reject or accept it.
"""

import ast
import json
import logging
from typing import (
    Any,
    List,
    Mapping,
)

from veritype.core.schema import (
    CandidateOutput,
    ModelResponse,
    ToolCallRequest,
    ToolCallsResponse,
)
from veritype.core.validator import extract_json

logger = logging.getLogger(__name__)


def _loads(text: str) -> Any:
    cleaned = extract_json(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    try:
        # Smaller models often answer with Python dict syntax ('single quotes', True/None)
        return ast.literal_eval(cleaned)
    except (ValueError, TypeError, SyntaxError) as exc:
        raise json.JSONDecodeError(str(exc), cleaned, 0) from exc


def _call(entry: Any) -> ToolCallRequest:
    # Malformed entries keep an empty name; the registry rejects them as unknown tools
    if isinstance(entry, str):
        return ToolCallRequest(name=entry.strip())
    if not isinstance(entry, Mapping):
        return ToolCallRequest(name="", args=entry)
    name = entry.get("name", entry.get("tool"))
    args = entry.get("args", entry.get("arguments", {}))
    return ToolCallRequest(name=name.strip() if isinstance(name, str) else "", args=args)


def parse_tool_calls(text: str) -> ModelResponse:
    """
    Best-effort conversion of raw model text into a :data:`ModelResponse`.

    Never raises: malformed tool-call objects still come back as tool calls so that the
    registry can reject them.
    """
    try:
        parsed = _loads(text)
    except json.JSONDecodeError:
        logger.debug("Model text is not JSON; passing it through as output")
        return CandidateOutput(payload=text)

    if isinstance(parsed, Mapping):
        if "tool" in parsed:
            return ToolCallsResponse(calls=[_call(parsed)])
        if "tool_calls" in parsed:
            entries = parsed["tool_calls"]
            if not isinstance(entries, list):
                entries = [entries]
            calls: List[ToolCallRequest] = [_call(entry) for entry in entries]
            if calls:
                return ToolCallsResponse(calls=calls)
            return CandidateOutput(payload=parsed.get("answer"))
        if set(parsed) == {"answer"}:
            return CandidateOutput(payload=parsed["answer"])
    return CandidateOutput(payload=parsed)
