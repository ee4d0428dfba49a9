"""
Tool registry for veritype.

This module turns plain Python functions into tools with automatically derived input schemas and
keeps them in a :class:`ToolRegistry` that looks them up by name.  A registry belongs to one agent:
it is filled at construction time and frozen before the first run.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Union,
    get_type_hints,
)

from pydantic import create_model

from veritype.core.shape import (
    DEFAULT_MAX_DEPTH,
    SchemaDescriptor,
    is_object_type,
)
from veritype.core.validator import (
    Invalid,
    validate,
    validate_text,
)
from veritype.exceptions import (
    DerivationError,
    DuplicateToolError,
    ToolArgumentError,
    ToolExecutionError,
    UnknownToolError,
)

logger = logging.getLogger(__name__)

DEPS_PARAMETER = "deps"
"""Name of the tool parameter that receives the run's deps context."""

Invocation = Callable[[Any, Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: its input schema and how to invoke it with ``(typed_input, deps)``."""

    name: str
    input_schema: SchemaDescriptor
    invoke: Invocation
    description: str = ""


@dataclass(frozen=True)
class ToolResult:
    """Successful tool output."""

    tool_name: str
    value: Any


def _camel(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)


def tool_from_function(
    fn: Callable[..., Any],
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ToolSpec:
    """
    Build a :class:`ToolSpec` from a function's signature.

    A function whose only parameter (besides ``deps``) is a pydantic model, dataclass or
    TypedDict receives the validated instance directly.  Otherwise every parameter becomes a
    field of a generated arguments model and the function is called with keyword arguments::

        def add(a: int, b: int = 0) -> int: ...          # schema {a: integer, b?: integer}
        def lookup(query: Query, deps: Db) -> str: ...   # schema derived from Query

    Raises
    ------
    DerivationError
        If the signature uses ``*args``/``**kwargs`` or a parameter type is unsupported.
    """
    tool_name = name or fn.__name__
    doc = description if description is not None else inspect.getdoc(fn) or ""
    sig = inspect.signature(fn)
    hints = get_type_hints(fn)
    wants_deps = DEPS_PARAMETER in sig.parameters

    params = [p for p in sig.parameters.values() if p.name != DEPS_PARAMETER]
    for param in params:
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            raise DerivationError(
                f"Tool '{tool_name}' cannot declare *args or **kwargs",
                diagnostics={"tool": tool_name, "parameter": param.name},
            )

    single = params[0] if len(params) == 1 else None
    if single is not None and is_object_type(hints.get(single.name)):
        input_type = hints[single.name]
        positional = single.kind == single.POSITIONAL_ONLY

        def call(typed_input: Any, deps: Any) -> Any:
            extra = {DEPS_PARAMETER: deps} if wants_deps else {}
            if positional:
                return fn(typed_input, **extra)
            return fn(**{single.name: typed_input}, **extra)

    else:
        fields: Dict[str, Any] = {
            p.name: (hints.get(p.name, Any), ... if p.default is p.empty else p.default)
            for p in params
        }
        input_type = create_model(f"{_camel(tool_name)}Args", __doc__=doc or None, **fields)

        def call(typed_input: Any, deps: Any) -> Any:
            kwargs = {key: getattr(typed_input, key) for key in fields}
            if wants_deps:
                kwargs[DEPS_PARAMETER] = deps
            return fn(**kwargs)

    if inspect.iscoroutinefunction(fn):
        invoke: Invocation = call
    else:

        def invoke(typed_input: Any, deps: Any) -> Awaitable[Any]:
            return asyncio.to_thread(call, typed_input, deps)

    schema = SchemaDescriptor.for_type(
        input_type, name=tool_name, description=doc, max_depth=max_depth
    )
    return ToolSpec(name=tool_name, input_schema=schema, invoke=invoke, description=doc)


class ToolRegistry:
    """
    Mapping from tool name to :class:`ToolSpec`.

    Tools can be added directly, or with the decorator::

        registry = ToolRegistry()

        @registry.tool
        def add(a: int, b: int) -> int:
            return a + b

    Once :meth:`freeze` has been called (the agent does so before its first run) the registry is
    read-only and safe to share between concurrent runs.
    """

    def __init__(
        self,
        tools: Iterable[Union[ToolSpec, Callable[..., Any]]] = (),
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        self._frozen = False
        self._max_depth = max_depth
        for item in tools:
            self.add(item)

    # -- registration ------------------------------------------------------
    def register(
        self,
        name: str,
        input_schema: SchemaDescriptor,
        invocation: Invocation,
        description: str = "",
    ) -> ToolSpec:
        """Register *invocation* under *name*.

        Raises
        ------
        DuplicateToolError
            If *name* is already registered.
        RuntimeError
            If the registry has been frozen.
        """
        return self._insert(
            ToolSpec(
                name=name,
                input_schema=input_schema,
                invoke=invocation,
                description=description or input_schema.description or "",
            )
        )

    def add(self, tool: Union[ToolSpec, Callable[..., Any]]) -> ToolSpec:
        """Register a :class:`ToolSpec` or derive one from a plain function."""
        if not isinstance(tool, ToolSpec):
            tool = tool_from_function(tool, max_depth=self._max_depth)
        return self._insert(tool)

    def tool(
        self,
        fn: Optional[Callable[..., Any]] = None,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Any:
        """Decorator form of :meth:`add`; usable bare or with ``name``/``description``."""

        def wrapper(func: Callable[..., Any]) -> Callable[..., Any]:
            self._insert(
                tool_from_function(
                    func, name=name, description=description, max_depth=self._max_depth
                )
            )
            return func

        if fn is not None:
            return wrapper(fn)
        return wrapper

    def _insert(self, spec: ToolSpec) -> ToolSpec:
        if self._frozen:
            raise RuntimeError(f"Cannot register tool '{spec.name}': registry is frozen.")
        if spec.name in self._tools:
            raise DuplicateToolError(spec.name)
        logger.debug("Registering tool '%s'", spec.name)
        self._tools[spec.name] = spec
        return spec

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # -- lookup -------------------------------------------------------------
    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def manifest(self) -> List[SchemaDescriptor]:
        """Input schemas of every tool, in registration order."""
        return [spec.input_schema for spec in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)

    # -- dispatch -----------------------------------------------------------
    async def dispatch(self, name: str, raw_arguments: Any, deps: Any) -> ToolResult:
        """
        Validate *raw_arguments* against the tool's schema and invoke it.

        Parameters
        ----------
        name:
            The registered tool name.
        raw_arguments:
            A mapping, a JSON-encoded string, or *None* (treated as ``{}``).
        deps:
            Passed verbatim to the tool.

        Raises
        ------
        UnknownToolError
            If *name* is not registered.
        ToolArgumentError
            If the arguments do not match the tool's input schema.
        ToolExecutionError
            If the tool itself raises.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name, self.names())

        if raw_arguments is None:
            raw_arguments = {}
        if isinstance(raw_arguments, str):
            outcome = validate_text(spec.input_schema, raw_arguments)
        else:
            outcome = validate(spec.input_schema, raw_arguments)
        if isinstance(outcome, Invalid):
            raise ToolArgumentError(name, outcome.violations)

        try:
            logger.debug("Executing tool '%s' with args=%s", name, raw_arguments)
            result = spec.invoke(outcome.value, deps)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", name)
            raise ToolExecutionError(name, f"{type(exc).__name__}: {exc}") from exc
        return ToolResult(tool_name=name, value=result)


def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text
