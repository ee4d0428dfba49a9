"""
Structural type shapes and schema descriptors.

A :class:`TypeShape` is the runtime's own description of a data shape.  It is derived once from a
declared Python type (pydantic model, dataclass, TypedDict, Enum, Literal, containers and
scalars), cached per type, and shared read-only between agents, tools and concurrent runs.

The shape is what the validator walks.  The pydantic ``TypeAdapter`` kept on the
:class:`SchemaDescriptor` is only used to turn an already-validated tree into the typed value.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import enum
import functools
import inspect
import logging
import types
import typing
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import (
    BaseModel,
    TypeAdapter,
)

from veritype.exceptions import DerivationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 16

_SEQUENCE_ORIGINS = (
    list,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
    collections.abc.Iterable,
)
_MAPPING_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------
class ScalarKind(str, enum.Enum):
    """Kinds of leaf values."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    ANY = "any"


@dataclass(frozen=True)
class ScalarShape:
    kind: ScalarKind


@dataclass(frozen=True)
class FieldShape:
    name: str
    shape: "TypeShape"
    required: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class ObjectShape:
    """A record with named fields."""

    name: str
    fields: Tuple[FieldShape, ...]
    description: Optional[str] = None

    def field(self, name: str) -> Optional[FieldShape]:
        """Return the field called *name*, if any."""
        for item in self.fields:
            if item.name == name:
                return item
        return None

    @property
    def required(self) -> Tuple[str, ...]:
        return tuple(item.name for item in self.fields if item.required)


@dataclass(frozen=True)
class ArrayShape:
    items: "TypeShape"


@dataclass(frozen=True)
class MapShape:
    """String-keyed mapping with homogeneous values."""

    values: "TypeShape"


@dataclass(frozen=True)
class EnumShape:
    tags: Tuple[Any, ...]


@dataclass(frozen=True)
class OptionalShape:
    inner: "TypeShape"


TypeShape = Union[ScalarShape, ObjectShape, ArrayShape, MapShape, EnumShape, OptionalShape]

STRING = ScalarShape(ScalarKind.STRING)
ANY = ScalarShape(ScalarKind.ANY)


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------
def type_name(tp: Any) -> str:
    """Readable name for a type annotation, used in errors and schema titles."""
    return getattr(tp, "__name__", None) or str(tp).replace("typing.", "")


def is_object_type(tp: Any) -> bool:
    """Return *True* for types that derive to an :class:`ObjectShape`."""
    if not isinstance(tp, type):
        return False
    return (
        issubclass(tp, BaseModel) or dataclasses.is_dataclass(tp) or typing.is_typeddict(tp)
    )


def _doc(tp: type) -> Optional[str]:
    doc = tp.__dict__.get("__doc__")
    # dataclasses without a docstring get their signature as __doc__
    if not doc or (dataclasses.is_dataclass(tp) and doc.startswith(f"{tp.__name__}(")):
        return None
    return inspect.cleandoc(doc)


class _Deriver:
    """One derivation pass.  Tracks depth and the object types currently being expanded."""

    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        self._expanding: List[Any] = []

    def derive(self, tp: Any, depth: int = 0) -> TypeShape:
        if depth > self.max_depth:
            raise DerivationError(
                f"Type nesting deeper than {self.max_depth} levels at {type_name(tp)}",
                diagnostics={"type": type_name(tp), "max_depth": self.max_depth},
            )

        if tp is Any or tp is object:
            return ANY
        if tp is None or tp is type(None):
            return ScalarShape(ScalarKind.NULL)

        origin = get_origin(tp)
        if origin is Annotated:
            return self.derive(get_args(tp)[0], depth)
        if origin is Literal:
            return EnumShape(
                tuple(arg.value if isinstance(arg, enum.Enum) else arg for arg in get_args(tp))
            )
        if origin is Union or origin is types.UnionType:
            return self._union(tp, depth)
        if origin is tuple:
            args = get_args(tp)
            if len(args) == 2 and args[1] is Ellipsis:
                return ArrayShape(self.derive(args[0], depth + 1))
            raise DerivationError(
                f"Only homogeneous tuples (tuple[X, ...]) are supported, got {type_name(tp)}",
                diagnostics={"type": type_name(tp)},
            )
        if origin in _SEQUENCE_ORIGINS:
            (item,) = get_args(tp) or (Any,)
            return ArrayShape(self.derive(item, depth + 1))
        if origin in _MAPPING_ORIGINS:
            key, value = get_args(tp) or (str, Any)
            if key is not str:
                raise DerivationError(
                    f"Mapping keys must be str, got {type_name(key)} in {type_name(tp)}",
                    diagnostics={"type": type_name(tp)},
                )
            return MapShape(self.derive(value, depth + 1))
        if origin is not None:
            raise DerivationError(
                f"Unsupported generic type {type_name(tp)}", diagnostics={"type": type_name(tp)}
            )

        if isinstance(tp, type):
            # bool and Enum first: bool subclasses int, str/int enums subclass their value type
            if issubclass(tp, bool):
                return ScalarShape(ScalarKind.BOOLEAN)
            if issubclass(tp, enum.Enum):
                return EnumShape(tuple(member.value for member in tp))
            if issubclass(tp, str):
                return STRING
            if issubclass(tp, int):
                return ScalarShape(ScalarKind.INTEGER)
            if issubclass(tp, float):
                return ScalarShape(ScalarKind.NUMBER)
            if tp in (list, tuple, set, frozenset):
                return ArrayShape(ANY)
            if tp is dict:
                return MapShape(ANY)
            if is_object_type(tp):
                return self._object(tp, depth)

        raise DerivationError(
            f"Cannot derive a shape for {type_name(tp)}", diagnostics={"type": type_name(tp)}
        )

    def _union(self, tp: Any, depth: int) -> TypeShape:
        args = get_args(tp)
        members = [arg for arg in args if arg is not type(None)]
        if len(members) == 1 and len(members) < len(args):
            return OptionalShape(self.derive(members[0], depth + 1))
        raise DerivationError(
            f"Unions other than Optional[X] are not supported: {type_name(tp)}",
            diagnostics={"type": type_name(tp)},
        )

    def _object(self, tp: type, depth: int) -> ObjectShape:
        if tp in self._expanding:
            chain = " -> ".join(type_name(t) for t in [*self._expanding, tp])
            raise DerivationError(
                f"Recursive type {type_name(tp)} cannot be expanded ({chain})",
                diagnostics={"type": type_name(tp), "chain": chain},
            )
        self._expanding.append(tp)
        try:
            fields = tuple(self._fields(tp, depth))
        finally:
            self._expanding.pop()
        return ObjectShape(name=tp.__name__, fields=fields, description=_doc(tp))

    def _fields(self, tp: type, depth: int) -> List[FieldShape]:
        if issubclass(tp, BaseModel):
            return [
                FieldShape(
                    name=info.alias or name,
                    shape=self.derive(info.annotation, depth + 1),
                    required=info.is_required(),
                    description=info.description,
                )
                for name, info in tp.model_fields.items()
            ]

        hints = get_type_hints(tp)
        if dataclasses.is_dataclass(tp):
            return [
                FieldShape(
                    name=item.name,
                    shape=self.derive(hints.get(item.name, Any), depth + 1),
                    required=item.default is dataclasses.MISSING
                    and item.default_factory is dataclasses.MISSING,
                )
                for item in dataclasses.fields(tp)
                if item.init
            ]

        required_keys = getattr(tp, "__required_keys__", frozenset(hints))
        return [
            FieldShape(
                name=name, shape=self.derive(hint, depth + 1), required=name in required_keys
            )
            for name, hint in hints.items()
        ]


@functools.lru_cache(maxsize=None)
def _derive_cached(tp: Any, max_depth: int) -> TypeShape:
    logger.debug("Deriving shape for %s", type_name(tp))
    return _Deriver(max_depth).derive(tp)


def derive_shape(tp: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> TypeShape:
    """
    Derive the :class:`TypeShape` of *tp*.

    Results are cached per ``(tp, max_depth)`` for the lifetime of the process.

    Raises
    ------
    DerivationError
        If *tp* (or something nested in it) is unsupported, nests deeper than *max_depth*, or
        refers to itself.
    """
    try:
        hash(tp)
    except TypeError:
        return _Deriver(max_depth).derive(tp)
    return _derive_cached(tp, max_depth)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
def shape_to_json_schema(shape: TypeShape) -> Dict[str, Any]:
    """Render *shape* as a JSON-Schema-like mapping (the form model APIs expect)."""
    if isinstance(shape, ScalarShape):
        return {} if shape.kind is ScalarKind.ANY else {"type": shape.kind.value}
    if isinstance(shape, OptionalShape):
        return {"anyOf": [shape_to_json_schema(shape.inner), {"type": "null"}]}
    if isinstance(shape, EnumShape):
        return {"enum": list(shape.tags)}
    if isinstance(shape, ArrayShape):
        return {"type": "array", "items": shape_to_json_schema(shape.items)}
    if isinstance(shape, MapShape):
        return {"type": "object", "additionalProperties": shape_to_json_schema(shape.values)}

    properties: Dict[str, Any] = {}
    for item in shape.fields:
        prop = shape_to_json_schema(item.shape)
        if item.description:
            prop["description"] = item.description
        properties[item.name] = prop
    schema: Dict[str, Any] = {
        "type": "object",
        "title": shape.name,
        "properties": properties,
        "required": list(shape.required),
    }
    if shape.description:
        schema["description"] = shape.description
    return schema


def render_shape(shape: TypeShape) -> str:
    """Compact one-line rendering, e.g. ``Person{name: string, age?: integer}``."""
    if isinstance(shape, ScalarShape):
        return shape.kind.value
    if isinstance(shape, OptionalShape):
        return f"{render_shape(shape.inner)} | null"
    if isinstance(shape, EnumShape):
        return " | ".join(repr(tag) for tag in shape.tags)
    if isinstance(shape, ArrayShape):
        return f"[{render_shape(shape.items)}]"
    if isinstance(shape, MapShape):
        return f"{{string: {render_shape(shape.values)}}}"
    inner = ", ".join(
        f"{item.name}{'' if item.required else '?'}: {render_shape(item.shape)}"
        for item in shape.fields
    )
    return f"{shape.name}{{{inner}}}"


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SchemaDescriptor:
    """Named wrapper around a :class:`TypeShape`, used both to prompt and to validate."""

    name: str
    shape: TypeShape
    description: Optional[str] = None
    python_type: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def for_type(
        cls,
        tp: Any,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> "SchemaDescriptor":
        """Build a descriptor for the declared type *tp*."""
        shape = derive_shape(tp, max_depth)
        if description is None and isinstance(shape, ObjectShape):
            description = shape.description
        return cls(
            name=name or type_name(tp), shape=shape, description=description, python_type=tp
        )

    @functools.cached_property
    def adapter(self) -> Optional[TypeAdapter]:
        if self.python_type is None:
            return None
        return TypeAdapter(self.python_type)

    def convert(self, raw: Any) -> Any:
        """Turn a structurally valid tree into the declared type (pydantic ``ValidationError``
        on constraint failures)."""
        if self.adapter is None:
            return raw
        return self.adapter.validate_python(raw)

    def dump(self, value: Any) -> Any:
        """Inverse of :meth:`convert`: a JSON-compatible tree for *value*."""
        if self.adapter is None:
            return value
        return self.adapter.dump_python(value, mode="json", by_alias=True)

    def to_json_schema(self) -> Dict[str, Any]:
        return shape_to_json_schema(self.shape)

    def render(self) -> str:
        return render_shape(self.shape)

    @property
    def is_text(self) -> bool:
        """True when the schema accepts a bare string."""
        shape = self.shape
        if isinstance(shape, OptionalShape):
            shape = shape.inner
        return shape == STRING
