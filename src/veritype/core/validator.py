"""
Structural validation of raw model output against a :class:`SchemaDescriptor`.

The walk never short-circuits: every defect in the tree is reported, so a single corrective turn
can reference all of them.  Conversion into the typed value only happens once the walk is clean.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Dict,
    Generic,
    Iterator,
    Tuple,
    TypeVar,
    Union,
    cast,
)

from pydantic import ValidationError

from veritype.core.shape import (
    ArrayShape,
    EnumShape,
    MapShape,
    ObjectShape,
    OptionalShape,
    ScalarKind,
    ScalarShape,
    SchemaDescriptor,
    TypeShape,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
PathItem = Union[str, int]


class ViolationReason(str, Enum):
    MISSING_FIELD = "missing_field"
    TYPE_MISMATCH = "type_mismatch"
    UNKNOWN_VARIANT = "unknown_variant"
    CONSTRAINT_FAILED = "constraint_failed"
    INVALID_JSON = "invalid_json"


@dataclass(frozen=True)
class Violation:
    """A single structural defect at *path*."""

    path: Tuple[PathItem, ...]
    reason: ViolationReason
    message: str = ""

    @property
    def location(self) -> str:
        """Dotted location such as ``items[0].name`` (``$`` for the root)."""
        out = ""
        for item in self.path:
            if isinstance(item, int):
                out += f"[{item}]"
            else:
                out += f".{item}" if out else str(item)
        return out or "$"

    def as_dict(self) -> Dict[str, Any]:
        return {"path": list(self.path), "reason": self.reason.value, "message": self.message}

    def __str__(self) -> str:
        detail = f": {self.message}" if self.message else ""
        return f"{self.location} ({self.reason.value}){detail}"


@dataclass(frozen=True)
class Valid(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    violations: Tuple[Violation, ...]

    @property
    def ok(self) -> bool:
        return False


ValidationOutcome = Union[Valid[Any], Invalid]


# ---------------------------------------------------------------------------
# Structural walk
# ---------------------------------------------------------------------------
def _kind_of(raw: Any) -> str:
    if raw is None:
        return "null"
    if isinstance(raw, bool):
        return "boolean"
    if isinstance(raw, int):
        return "integer"
    if isinstance(raw, float):
        return "number"
    if isinstance(raw, str):
        return "string"
    if isinstance(raw, (list, tuple)):
        return "array"
    if isinstance(raw, dict):
        return "object"
    return type(raw).__name__


def _scalar_matches(kind: ScalarKind, raw: Any) -> bool:
    if kind is ScalarKind.ANY:
        return True
    if kind is ScalarKind.NULL:
        return raw is None
    if kind is ScalarKind.BOOLEAN:
        return isinstance(raw, bool)
    if isinstance(raw, bool):
        return False
    if kind is ScalarKind.INTEGER:
        return isinstance(raw, int)
    if kind is ScalarKind.NUMBER:
        return isinstance(raw, (int, float))
    return isinstance(raw, str)


def _tag_matches(raw: Any, tags: Tuple[Any, ...]) -> bool:
    return any(type(raw) is type(tag) and raw == tag for tag in tags)


def _mismatch(path: Tuple[PathItem, ...], expected: str, raw: Any) -> Violation:
    return Violation(
        path, ViolationReason.TYPE_MISMATCH, f"expected {expected}, got {_kind_of(raw)}"
    )


def check_shape(
    shape: TypeShape, raw: Any, path: Tuple[PathItem, ...] = ()
) -> Iterator[Violation]:
    """Yield every violation of *raw* against *shape*, depth first, in field order."""
    if isinstance(shape, OptionalShape):
        if raw is not None:
            yield from check_shape(shape.inner, raw, path)
        return

    if isinstance(shape, ScalarShape):
        if not _scalar_matches(shape.kind, raw):
            yield _mismatch(path, shape.kind.value, raw)
        return

    if isinstance(shape, EnumShape):
        if not _tag_matches(raw, shape.tags):
            allowed = ", ".join(repr(tag) for tag in shape.tags)
            yield Violation(
                path, ViolationReason.UNKNOWN_VARIANT, f"{raw!r} is not one of {allowed}"
            )
        return

    if isinstance(shape, ArrayShape):
        if not isinstance(raw, (list, tuple)):
            yield _mismatch(path, "array", raw)
            return
        for index, item in enumerate(raw):
            yield from check_shape(shape.items, item, path + (index,))
        return

    if not isinstance(raw, dict):
        yield _mismatch(path, "object", raw)
        return

    if isinstance(shape, MapShape):
        for key, value in raw.items():
            if not isinstance(key, str):
                yield Violation(path + (key,), ViolationReason.TYPE_MISMATCH, "keys must be strings")
                continue
            yield from check_shape(shape.values, value, path + (key,))
        return

    for item in cast(ObjectShape, shape).fields:
        if item.name not in raw:
            if item.required:
                yield Violation(
                    path + (item.name,), ViolationReason.MISSING_FIELD, "field required"
                )
            continue
        yield from check_shape(item.shape, raw[item.name], path + (item.name,))


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def _constraint_violations(exc: ValidationError) -> Iterator[Violation]:
    for error in exc.errors():
        reason = (
            ViolationReason.MISSING_FIELD
            if error.get("type") == "missing"
            else ViolationReason.CONSTRAINT_FAILED
        )
        yield Violation(tuple(error.get("loc", ())), reason, error.get("msg", ""))


def validate(schema: SchemaDescriptor, raw: Any) -> ValidationOutcome:
    """
    Check *raw* against *schema* and convert it to the declared type.

    Parameters
    ----------
    schema:
        Descriptor of the expected shape.
    raw:
        An untyped tree (decoded JSON or equivalent).

    Returns
    -------
    ValidationOutcome
        ``Valid(value)`` or ``Invalid(violations)`` with every violation found.
    """
    violations = tuple(check_shape(schema.shape, raw))
    if violations:
        logger.debug("%s failed validation with %d violation(s)", schema.name, len(violations))
        return Invalid(violations)

    try:
        value = schema.convert(raw)
    except ValidationError as exc:
        return Invalid(tuple(_constraint_violations(exc)))
    return Valid(value)


_FENCE_RE = re.compile(r"```(?:json)?\s*(.+?)```", re.DOTALL)


def extract_json(content: str) -> str:
    """Strip markdown fences and surrounding chatter around the outermost JSON value."""
    match = _FENCE_RE.search(content)
    if match:
        content = match.group(1)
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t").strip()

    starts = [idx for idx in (content.find("{"), content.find("[")) if idx >= 0]
    if not starts:
        return content
    start = min(starts)
    opener = content[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(content)):
        ch = content[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return content[start : idx + 1]
    return content[start:]


def decode_json(text: str) -> Any:
    """Decode *text* leniently (see :func:`extract_json`); raises ``json.JSONDecodeError``."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(extract_json(text))


def validate_text(schema: SchemaDescriptor, text: str) -> ValidationOutcome:
    """Decode raw model text and validate it.

    For string-shaped schemas, text that is not a JSON string is taken verbatim.
    """
    try:
        raw = decode_json(text)
    except json.JSONDecodeError as exc:
        if schema.is_text:
            return validate(schema, text)
        return Invalid(
            (Violation((), ViolationReason.INVALID_JSON, f"response is not valid JSON: {exc}"),)
        )
    if schema.is_text and not isinstance(raw, str):
        return validate(schema, text)
    return validate(schema, raw)


def validate_payload(schema: SchemaDescriptor, payload: Any) -> ValidationOutcome:
    """Validate a candidate payload that may be raw text or an already-decoded tree."""
    if isinstance(payload, str):
        return validate_text(schema, payload)
    return validate(schema, payload)
