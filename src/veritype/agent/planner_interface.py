"""
Model interface for veritype.

This module is the only place that *directly* calls an LLM.  Everything else (agent loop, tools,
validation) stays model-agnostic and talks to a :class:`ModelClient`.

We support three back-ends out of the box:

1. **OpenAI / Anthropic** via their official async SDKs (requires env keys).
2. **Hugging Face Text-Generation-Inference (TGI)** for self-hosted models, using a JSON text
   protocol.

plus :class:`FunctionModel`, which wraps a plain callable (handy for tests and scripting).
Additional providers can be added by subclassing :class:`ModelClient` and registering via
:func:`register_model`.
"""

import inspect
import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Sequence,
    Type,
)

import httpx

from veritype.config import settings
from veritype.core.schema import (
    CandidateOutput,
    Correction,
    Message,
    ModelResponse,
    PromptMessage,
    ToolCallRequest,
    ToolCallsResponse,
    ToolReturn,
)
from veritype.core.shape import (
    MapShape,
    ObjectShape,
    OptionalShape,
    SchemaDescriptor,
    render_shape,
)
from veritype.tools.tool_call_parser import parse_tool_calls

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_MODEL_REGISTRY: Dict[str, Type["ModelClient"]] = {}


def register_model(name: str) -> Callable:
    """Decorator to register a model backend class under *name*."""

    def wrapper(cls: Type["ModelClient"]) -> Type["ModelClient"]:
        _MODEL_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model(name: str | None = None, **kwargs: Any) -> "ModelClient":
    """
    Factory that returns an instantiated model backend.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_BACKEND`` env option
    3. default: ``"openai"``
    """

    target = name or getattr(settings, "MODEL_BACKEND", "openai")
    cls = _MODEL_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model backend '{target}' is not registered.")
    return cls(**kwargs)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class ModelClient(ABC):
    """Abstract backend that turns the run history into the model's next response."""

    @abstractmethod
    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        """Return either the tool calls the model wants or its candidate output.

        Any exception raised here is reported to the caller as ``ModelUnavailable``.
        """

    @staticmethod
    def output_instructions(output_schema: SchemaDescriptor) -> str:
        if output_schema.is_text:
            return "When you have the final answer, reply with plain text."
        schema = json.dumps(output_schema.to_json_schema())
        return (
            "When you have the final answer, reply with a single JSON value matching this "
            f"schema and nothing else:\n{schema}"
        )

    def system_prompt(self, history: Sequence[Message], output_schema: SchemaDescriptor) -> str:
        """System messages from *history* followed by the output instructions."""
        parts = [
            message.content
            for message in history
            if isinstance(message, PromptMessage) and message.role == "system"
        ]
        parts.append(self.output_instructions(output_schema))
        return "\n\n".join(parts)


class FunctionModel(ModelClient):
    """Backend driven by a callable ``fn(history, manifest, output_schema)``.

    The callable may be sync or async and may return a :data:`ModelResponse`, a
    :class:`ToolCallRequest` (or a list of them), or any other value, which is taken as the
    candidate output.
    """

    def __init__(self, fn: Callable[..., Any]) -> None:
        self.fn = fn

    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        result = self.fn(list(history), list(manifest), output_schema)
        if inspect.isawaitable(result):
            result = await result
        return as_response(result)


def as_response(value: Any) -> ModelResponse:
    """Normalise a callable's return value into a :data:`ModelResponse`."""
    if isinstance(value, (ToolCallsResponse, CandidateOutput)):
        return value
    if isinstance(value, ToolCallRequest):
        return ToolCallsResponse(calls=[value])
    if isinstance(value, list) and value and all(isinstance(v, ToolCallRequest) for v in value):
        return ToolCallsResponse(calls=value)
    return CandidateOutput(payload=value)


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
@register_model("tgi")
class TGIModel(ModelClient):
    """TGI-based backend with an httpx client and a JSON text protocol."""

    # Common system prompt for text-protocol models
    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are an autonomous AI assistant that can THINK and ACT.
When you need to use a tool, respond with JSON like:
{"tool": "<name>", "args": { ... }}
When you have the final answer, respond with:
{"answer": <final answer>}
Only one object, no extra text.
"""

    def __init__(
        self,
        endpoint: str | None = None,
        *,
        timeout: float = 30.0,
        max_new_tokens: int = 512,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint or settings.TGI_ENDPOINT
        self.timeout = timeout
        self.max_new_tokens = max_new_tokens
        self.transport = transport

    @staticmethod
    def _describe_tool(schema: SchemaDescriptor) -> str:
        if isinstance(schema.shape, ObjectShape):
            params = ", ".join(
                f"{item.name}{'' if item.required else '?'}: {render_shape(item.shape)}"
                for item in schema.shape.fields
            )
        else:
            params = render_shape(schema.shape)
        return f"- {schema.name}({params}): {schema.description or ''}".rstrip(": ")

    def _build_prompt(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> str:
        lines = [self.SYSTEM_PROMPT.rstrip()]
        for message in history:
            if isinstance(message, PromptMessage) and message.role == "system":
                lines.append(message.content)
        if manifest:
            lines.append("Available tools:\n" + "\n".join(self._describe_tool(s) for s in manifest))
        lines.append(f"The answer must have this shape: {output_schema.render()}")
        lines.append("")

        for message in history:
            if isinstance(message, PromptMessage):
                if message.role == "user":
                    lines.append(f"User: {message.content}")
            elif isinstance(message, ToolCallsResponse):
                calls = [{"name": call.name, "args": call.args} for call in message.calls]
                lines.append(f"Assistant: {json.dumps({'tool_calls': calls}, default=str)}")
            elif isinstance(message, CandidateOutput):
                lines.append(f"Assistant: {json.dumps({'answer': message.payload}, default=str)}")
            elif isinstance(message, ToolReturn):
                status = "failed" if message.is_error else "returned"
                lines.append(f"Tool {message.name} {status}: {_as_text(message.content)}")
            elif isinstance(message, Correction):
                lines.append(f"User: {message.content}")
        lines.append("Assistant:")
        return "\n".join(lines)

    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        """Call the TGI endpoint and parse the generated text."""
        payload = {
            "inputs": self._build_prompt(history, manifest, output_schema),
            "parameters": {
                "max_new_tokens": self.max_new_tokens,
                "temperature": 0.2,
                "stop": ["User:", "</s>"],
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.endpoint, json=payload)
            resp.raise_for_status()
            content = resp.json()["generated_text"]

        logger.debug("TGI response: %s", content)
        return parse_tool_calls(content)


def _expects_object(schema: SchemaDescriptor) -> bool:
    """True when the output must be a JSON object (what OpenAI's JSON mode produces)."""
    shape = schema.shape
    if isinstance(shape, OptionalShape):
        shape = shape.inner
    return isinstance(shape, (ObjectShape, MapShape))


@register_model("openai")
class OpenAIModel(ModelClient):
    """OpenAI chat-completions backend using native function calling."""

    def __init__(
        self,
        model: str | None = None,
        *,
        api_key: str | None = None,
        temperature: float = 0.2,
        client: Any = None,
    ) -> None:
        self.model = model or settings.OPENAI_MODEL
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.temperature = temperature
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import openai  # pylint: disable=import-outside-toplevel

            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def _convert(history: Sequence[Message]) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for message in history:
            if isinstance(message, PromptMessage):
                if message.role == "user":
                    messages.append({"role": "user", "content": message.content})
            elif isinstance(message, ToolCallsResponse):
                messages.append(
                    {
                        "role": "assistant",
                        "content": message.text,
                        "tool_calls": [
                            {
                                "id": call.call_id,
                                "type": "function",
                                "function": {"name": call.name, "arguments": _as_text(call.args)},
                            }
                            for call in message.calls
                        ],
                    }
                )
            elif isinstance(message, CandidateOutput):
                messages.append({"role": "assistant", "content": _as_text(message.payload)})
            elif isinstance(message, ToolReturn):
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.call_id,
                        "content": _as_text(message.content),
                    }
                )
            elif isinstance(message, Correction):
                messages.append({"role": "user", "content": message.content})
        return messages

    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        messages = [{"role": "system", "content": self.system_prompt(history, output_schema)}]
        messages.extend(self._convert(history))

        kwargs: Dict[str, Any] = {}
        if manifest:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": schema.name,
                        "description": schema.description or "",
                        "parameters": schema.to_json_schema(),
                    },
                }
                for schema in manifest
            ]
        if _expects_object(output_schema):
            kwargs["response_format"] = {"type": "json_object"}

        resp = await self._get_client().chat.completions.create(
            model=self.model, messages=messages, temperature=self.temperature, **kwargs
        )
        message = resp.choices[0].message
        logger.debug("OpenAI response: %s", message)

        if message.tool_calls:
            return ToolCallsResponse(
                calls=[
                    ToolCallRequest(
                        name=call.function.name, args=call.function.arguments, call_id=call.id
                    )
                    for call in message.tool_calls
                ],
                text=message.content,
            )
        return CandidateOutput(payload=message.content or "")


def _as_mapping(args: Any) -> Dict[str, Any]:
    if isinstance(args, dict):
        return args
    if isinstance(args, str):
        try:
            decoded = json.loads(args)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


@register_model("anthropic")
class AnthropicModel(ModelClient):
    """Anthropic Claude backend using ``tool_use`` content blocks."""

    def __init__(
        self,
        model: str | None = None,
        *,
        api_key: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.2,
        client: Any = None,
    ) -> None:
        self.model = model or settings.ANTHROPIC_MODEL
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    @staticmethod
    def _convert(history: Sequence[Message]) -> List[Dict[str, Any]]:
        """Map history onto alternating user/assistant messages of content blocks."""
        messages: List[Dict[str, Any]] = []

        def push(role: str, blocks: List[Dict[str, Any]]) -> None:
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        for message in history:
            if isinstance(message, PromptMessage):
                if message.role == "user":
                    push("user", [{"type": "text", "text": message.content}])
            elif isinstance(message, ToolCallsResponse):
                blocks = [{"type": "text", "text": message.text}] if message.text else []
                blocks.extend(
                    {
                        "type": "tool_use",
                        "id": call.call_id,
                        "name": call.name,
                        "input": _as_mapping(call.args),
                    }
                    for call in message.calls
                )
                push("assistant", blocks)
            elif isinstance(message, CandidateOutput):
                text = _as_text(message.payload) or "(empty)"
                push("assistant", [{"type": "text", "text": text}])
            elif isinstance(message, ToolReturn):
                push(
                    "user",
                    [
                        {
                            "type": "tool_result",
                            "tool_use_id": message.call_id,
                            "content": _as_text(message.content),
                            "is_error": message.is_error,
                        }
                    ],
                )
            elif isinstance(message, Correction):
                push("user", [{"type": "text", "text": message.content}])
        return messages

    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        kwargs: Dict[str, Any] = {}
        if manifest:
            kwargs["tools"] = [
                {
                    "name": schema.name,
                    "description": schema.description or "",
                    "input_schema": schema.to_json_schema(),
                }
                for schema in manifest
            ]

        response = await self._get_client().messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=self.system_prompt(history, output_schema),
            messages=self._convert(history),
            temperature=self.temperature,
            **kwargs,
        )
        logger.debug("Anthropic response: %s", response.content)

        calls = [
            ToolCallRequest(name=block.name, args=block.input, call_id=block.id)
            for block in response.content
            if block.type == "tool_use"
        ]
        text = "".join(block.text for block in response.content if block.type == "text")
        if calls:
            return ToolCallsResponse(calls=calls, text=text or None)
        return CandidateOutput(payload=text)
