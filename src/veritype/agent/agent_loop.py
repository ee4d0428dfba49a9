"""Main orchestration loop for veritype."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    Type,
    TypeVar,
    Union,
)

from veritype.agent.planner_interface import (
    ModelClient,
    load_model,
)
from veritype.agent.reflection import (
    ReflectionController,
    RetryLimits,
)
from veritype.agent.run_state import (
    RunPhase,
    RunState,
)
from veritype.agent.tool_executor import execute_tool_calls
from veritype.config import settings as default_settings
from veritype.core.schema import (
    ModelResponse,
    PromptMessage,
    ToolCallsResponse,
    Turn,
)
from veritype.core.shape import SchemaDescriptor
from veritype.core.validator import validate_payload
from veritype.exceptions import (
    AgentError,
    ModelUnavailable,
    RunCancelled,
)
from veritype.tools import (
    ToolRegistry,
    ToolSpec,
    echo_tool,
)

if TYPE_CHECKING:
    from veritype.config import Settings

logger = logging.getLogger(__name__)

DepsT = TypeVar("DepsT")
OutputT = TypeVar("OutputT")

Instructions = Union[str, Callable[[Any], str], None]


class CancellationToken:
    """Thread-safe flag checked by a run before every model call and tool dispatch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunResult(Generic[OutputT]):
    """Typed output of a successful run together with the run's final state."""

    output: OutputT
    state: RunState

    @property
    def turns(self) -> List[Turn]:
        return self.state.turns

    @property
    def output_retries(self) -> int:
        return self.state.output_retries

    @property
    def tool_retries(self) -> int:
        return self.state.tool_retries


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------
class Agent(Generic[DepsT, OutputT]):
    """
    Typed agent: prompts a model, dispatches its tool calls and validates its final answer.

    Example::

        class Person(BaseModel):
            name: str
            age: int

        agent = Agent(load_model("openai"), output_type=Person, max_output_retries=1)

        @agent.tool
        def lookup_birth_year(name: str) -> int:
            ...

        result = agent.run_sync("Who wrote the first program?")
        result.output  # Person(name='Ada', age=36)

    The agent itself is immutable once the first run starts, so one instance can serve many
    concurrent runs.
    """

    def __init__(
        self,
        model: Union[ModelClient, str],
        *,
        output_type: Type[OutputT] = str,  # type: ignore[assignment]
        deps_type: Optional[Type[DepsT]] = None,
        instructions: Instructions = None,
        tools: Union[ToolRegistry, Iterable[Union[ToolSpec, Callable[..., Any]]]] = (),
        name: Optional[str] = None,
        max_output_retries: Optional[int] = None,
        max_tool_retries: Optional[int] = None,
        max_tool_error_retries: Optional[int] = None,
        model_timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None,
        schema_max_depth: Optional[int] = None,
    ) -> None:
        self.model = load_model(model) if isinstance(model, str) else model
        self.name = name or "agent"
        self.deps_type = deps_type
        self.instructions = instructions
        self.model_timeout = _pick(model_timeout, default_settings.MODEL_TIMEOUT)
        self.tool_timeout = _pick(tool_timeout, default_settings.TOOL_TIMEOUT)

        max_depth = _pick(schema_max_depth, default_settings.SCHEMA_MAX_DEPTH)
        self._output_schema = SchemaDescriptor.for_type(output_type, max_depth=max_depth)
        if isinstance(tools, ToolRegistry):
            self._registry = tools
        else:
            self._registry = ToolRegistry(tools, max_depth=max_depth)

        self._limits = RetryLimits(
            max_output_retries=_pick(max_output_retries, default_settings.MAX_OUTPUT_RETRIES),
            max_tool_retries=_pick(max_tool_retries, default_settings.MAX_TOOL_RETRIES),
            max_tool_error_retries=_pick(
                max_tool_error_retries, default_settings.MAX_TOOL_ERROR_RETRIES
            ),
        )
        self._controller = ReflectionController(self._limits, self._output_schema)
        self._manifest: Optional[List[SchemaDescriptor]] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional["Settings"] = None,
        *,
        tools: Iterable[Union[ToolSpec, Callable[..., Any]]] = (echo_tool,),
        **kwargs: Any,
    ) -> "Agent[Any, str]":
        """Build the default text agent (used by the CLI and the HTTP API)."""
        settings = settings or default_settings
        return cls(
            load_model(settings.MODEL_BACKEND),
            tools=tools,
            max_output_retries=settings.MAX_OUTPUT_RETRIES,
            max_tool_retries=settings.MAX_TOOL_RETRIES,
            max_tool_error_retries=settings.MAX_TOOL_ERROR_RETRIES,
            model_timeout=settings.MODEL_TIMEOUT,
            tool_timeout=settings.TOOL_TIMEOUT,
            schema_max_depth=settings.SCHEMA_MAX_DEPTH,
            **kwargs,
        )

    # -- read-only views ----------------------------------------------------
    @property
    def output_schema(self) -> SchemaDescriptor:
        return self._output_schema

    @property
    def tools(self) -> ToolRegistry:
        return self._registry

    @property
    def limits(self) -> RetryLimits:
        return self._limits

    def tool(self, fn: Optional[Callable[..., Any]] = None, **kwargs: Any) -> Any:
        """Register a tool on this agent (before its first run)."""
        return self._registry.tool(fn, **kwargs)

    # -- running ------------------------------------------------------------
    def _build_prompt(self, prompt: str, deps: Any) -> List[PromptMessage]:
        messages = []
        instructions = self.instructions(deps) if callable(self.instructions) else self.instructions
        if instructions:
            messages.append(PromptMessage(role="system", content=instructions))
        messages.append(PromptMessage(role="user", content=prompt))
        return messages

    def _manifest_for_run(self) -> List[SchemaDescriptor]:
        if self._manifest is None:
            self._registry.freeze()
            self._manifest = self._registry.manifest()
        return self._manifest

    @staticmethod
    def _check_cancelled(cancel: Optional[CancellationToken], state: RunState) -> None:
        if cancel is not None and cancel.cancelled:
            state.move_to(RunPhase.CANCELLED)
            logger.info("Run %s cancelled after %d turn(s)", state.run_id, len(state.turns))
            raise RunCancelled(f"Run cancelled after {len(state.turns)} turn(s)")

    async def _request(self, state: RunState, manifest: List[SchemaDescriptor]) -> ModelResponse:
        """Ask the model for the next response; every failure becomes ``ModelUnavailable``."""
        try:
            send = self.model.send(state.history, manifest, self._output_schema)
            if self.model_timeout is None:
                return await send
            return await asyncio.wait_for(send, self.model_timeout)
        except asyncio.TimeoutError as exc:
            state.move_to(RunPhase.FAILED)
            raise ModelUnavailable(
                f"Model call timed out after {self.model_timeout}s",
                diagnostics={"timeout": self.model_timeout},
            ) from exc
        except Exception as exc:  # noqa: BLE001
            state.move_to(RunPhase.FAILED)
            logger.error("Model backend error: %s", exc)
            raise ModelUnavailable(
                f"Model backend error: {type(exc).__name__}: {exc}",
                diagnostics={"error": f"{type(exc).__name__}: {exc}"},
            ) from exc

    async def run(
        self,
        prompt: str,
        deps: Optional[DepsT] = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> RunResult[OutputT]:
        """
        Drive one run to completion.

        Raises
        ------
        AgentError
            ``ValidationRetriesExceeded``, ``UnknownToolError``, ``ToolArgumentError``,
            ``ToolExecutionError``, ``ModelUnavailable`` or ``RunCancelled``, with the run's
            state attached.
        """
        manifest = self._manifest_for_run()
        state = RunState(prompt=self._build_prompt(prompt, deps))
        logger.info("Run %s started on %s (%d tool(s))", state.run_id, self.name, len(manifest))

        try:
            while True:
                self._check_cancelled(cancel, state)
                response = await self._request(state, manifest)
                turn = state.record(response)

                if isinstance(response, ToolCallsResponse):
                    state.move_to(RunPhase.DISPATCHING)
                    self._check_cancelled(cancel, state)
                    outcomes = await execute_tool_calls(
                        self._registry, response.calls, deps, self.tool_timeout
                    )
                    self._controller.on_dispatched(state, turn, outcomes)
                    continue

                state.move_to(RunPhase.VALIDATING)
                outcome = validate_payload(self._output_schema, response.payload)
                if self._controller.on_candidate(state, turn, outcome) is RunPhase.DONE:
                    logger.info(
                        "Run %s done after %d turn(s), %d output retr%s",
                        state.run_id,
                        len(state.turns),
                        state.output_retries,
                        "y" if state.output_retries == 1 else "ies",
                    )
                    return RunResult(output=state.result, state=state)
        except AgentError as exc:
            state.error = exc.attach(state)
            logger.warning("Run %s ended with %s: %s", state.run_id, exc.kind.value, exc)
            raise

    def run_sync(
        self,
        prompt: str,
        deps: Optional[DepsT] = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> RunResult[OutputT]:
        """Blocking wrapper around :meth:`run` (must not be called from a running loop)."""
        return asyncio.run(self.run(prompt, deps, cancel=cancel))


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value
