"""
Filter expression AST and property-path parser.

Callers hand the store an already-built tree of these nodes. The same tree
is compiled to a SQL predicate (:mod:`obspine.om.compiler`) and evaluated in
memory against rows (:mod:`obspine.om.evaluator`).

Property paths:
    ::

        procedure | observedProperty | featureOfInterest | offering
        phenomenonTime | observationId | sensorType
        <procedure|observedProperty|featureOfInterest>/properties/<key>
        result | result[i] | result.<quality> | result[i].<quality>

    ``result[i]`` is the i-th data field of the procedure, 0-based, main
    field excluded.

Examples:
    >>> f = and_(equal("procedure", "urn:ogc:object:sensor:GEOM:2"),
    ...          greater("result[0]", 12.5))
    >>> f.children[1].path.index
    0
    >>> parse_path("featureOfInterest/properties/region").key
    'region'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from obspine.core.errors import UnsupportedFilterError
from obspine.om.model import Time, TimeInstant, TimePeriod


class PathKind(str, Enum):
    SCALAR = "scalar"
    PROPERTY = "property"
    RESULT = "result"


SCALAR_PATHS = (
    "procedure",
    "observedProperty",
    "featureOfInterest",
    "offering",
    "phenomenonTime",
    "observationId",
    "sensorType",
)
PROPERTY_ENTITIES = ("procedure", "observedProperty", "featureOfInterest")

_ALIASES = {
    "time": "phenomenonTime",
    "samplingTime": "phenomenonTime",
    "observedproperty": "observedProperty",
    "foi": "featureOfInterest",
    "sensor": "procedure",
}
_RESULT = re.compile(r"^result(?:\[(\d+)\])?(?:\.([A-Za-z0-9_\-:]+))?$")


@dataclass(frozen=True)
class PropertyPath:
    kind: PathKind
    name: str
    key: str | None = None
    index: int | None = None
    sub_field: str | None = None

    def __str__(self) -> str:
        if self.kind is PathKind.PROPERTY:
            return f"{self.name}/properties/{self.key}"
        if self.kind is PathKind.RESULT:
            text = "result" if self.index is None else f"result[{self.index}]"
            return f"{text}.{self.sub_field}" if self.sub_field else text
        return self.name


def parse_path(text: str | PropertyPath) -> PropertyPath:
    if isinstance(text, PropertyPath):
        return text
    raw = text.strip()
    m = _RESULT.match(raw)
    if m:
        index = int(m.group(1)) if m.group(1) is not None else None
        return PropertyPath(PathKind.RESULT, "result", index=index, sub_field=m.group(2))
    parts = raw.split("/")
    if len(parts) == 3 and parts[1] == "properties":
        entity = _ALIASES.get(parts[0], parts[0])
        if entity not in PROPERTY_ENTITIES:
            raise UnsupportedFilterError(f"no properties on {parts[0]!r}")
        return PropertyPath(PathKind.PROPERTY, entity, key=parts[2])
    name = _ALIASES.get(raw, raw)
    if name not in SCALAR_PATHS:
        raise UnsupportedFilterError(f"unknown property path {text!r}")
    return PropertyPath(PathKind.SCALAR, name)


# =============================================================================
# Nodes
# =============================================================================


class ComparisonOp(str, Enum):
    EQUAL = "equal"
    NOT_EQUAL = "notEqual"
    LESS = "less"
    LESS_OR_EQUAL = "lessOrEqual"
    GREATER = "greater"
    GREATER_OR_EQUAL = "greaterOrEqual"


class TemporalOp(str, Enum):
    TEQUALS = "tequals"
    DURING = "during"
    BEFORE = "before"
    AFTER = "after"


@dataclass(frozen=True)
class Comparison:
    op: ComparisonOp
    path: PropertyPath
    value: Any


@dataclass(frozen=True)
class Like:
    path: PropertyPath
    pattern: str
    wildcard: str = "%"
    single_char: str = "_"
    escape: str = "\\"
    match_case: bool = True


@dataclass(frozen=True)
class And:
    children: tuple[Filter, ...]


@dataclass(frozen=True)
class Or:
    children: tuple[Filter, ...]


@dataclass(frozen=True)
class Not:
    child: Filter


@dataclass(frozen=True)
class BBox:
    minx: float
    miny: float
    maxx: float
    maxy: float
    srid: int = 4326
    axis_order: str = "lonlat"


@dataclass(frozen=True)
class Temporal:
    op: TemporalOp
    path: PropertyPath
    time: Time


@dataclass(frozen=True)
class ResourceId:
    ids: tuple[str, ...]


Filter = Union[Comparison, Like, And, Or, Not, BBox, Temporal, ResourceId]


# ── Builders ─────────────────────────────────────────────────────────────


def _cmp(op: ComparisonOp, path: str | PropertyPath, value: Any) -> Comparison:
    return Comparison(op, parse_path(path), value)


def equal(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.EQUAL, path, value)


def not_equal(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.NOT_EQUAL, path, value)


def less(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.LESS, path, value)


def less_or_equal(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.LESS_OR_EQUAL, path, value)


def greater(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.GREATER, path, value)


def greater_or_equal(path: str | PropertyPath, value: Any) -> Comparison:
    return _cmp(ComparisonOp.GREATER_OR_EQUAL, path, value)


def like(path: str | PropertyPath, pattern: str, **options: Any) -> Like:
    return Like(parse_path(path), pattern, **options)


def and_(*children: Filter) -> And:
    return And(tuple(children))


def or_(*children: Filter) -> Or:
    return Or(tuple(children))


def not_(child: Filter) -> Not:
    return Not(child)


def bbox(minx: float, miny: float, maxx: float, maxy: float, srid: int = 4326, axis_order: str = "lonlat") -> BBox:
    return BBox(minx, miny, maxx, maxy, srid, axis_order)


def tequals(time: Time, path: str = "phenomenonTime") -> Temporal:
    return Temporal(TemporalOp.TEQUALS, parse_path(path), time)


def during(time: Time, path: str = "phenomenonTime") -> Temporal:
    return Temporal(TemporalOp.DURING, parse_path(path), time)


def before(time: Time, path: str = "phenomenonTime") -> Temporal:
    return Temporal(TemporalOp.BEFORE, parse_path(path), time)


def after(time: Time, path: str = "phenomenonTime") -> Temporal:
    return Temporal(TemporalOp.AFTER, parse_path(path), time)


def resource_id(*ids: str) -> ResourceId:
    return ResourceId(tuple(ids))


# ── Validation ───────────────────────────────────────────────────────────


def validate_filter(node: Filter | None) -> None:
    """Reject combinations without defined semantics before any query runs."""
    if node is None:
        return
    if isinstance(node, (And, Or)):
        if not node.children:
            raise UnsupportedFilterError(f"empty {type(node).__name__.lower()}")
        for child in node.children:
            validate_filter(child)
    elif isinstance(node, Not):
        validate_filter(node.child)
    elif isinstance(node, Temporal):
        _validate_temporal(node)
    elif isinstance(node, Comparison):
        if node.path.kind is PathKind.SCALAR and node.path.name == "phenomenonTime":
            raise UnsupportedFilterError(
                "phenomenonTime only supports temporal operators", operator=node.op.value
            )
    elif isinstance(node, Like):
        if node.path.kind is PathKind.SCALAR and node.path.name == "phenomenonTime":
            raise UnsupportedFilterError("phenomenonTime does not support like", operator="like")
    elif isinstance(node, (BBox, ResourceId)):
        return
    else:
        raise UnsupportedFilterError(f"unknown filter node {type(node).__name__}")


def _validate_temporal(node: Temporal) -> None:
    if node.path.kind is not PathKind.SCALAR or node.path.name != "phenomenonTime":
        raise UnsupportedFilterError(
            f"temporal operator on {node.path}", operator=node.op.value
        )
    if node.op is TemporalOp.TEQUALS and isinstance(node.time, TimePeriod):
        # observation times are period-typed; period/period tequals is undefined
        raise UnsupportedFilterError(
            "tequals with a period against a period-typed property", operator=node.op.value
        )
    if node.op in (TemporalOp.BEFORE, TemporalOp.AFTER) and not isinstance(node.time, TimeInstant):
        raise UnsupportedFilterError(f"{node.op.value} requires a time instant", operator=node.op.value)
    if node.op is TemporalOp.DURING and not isinstance(node.time, TimePeriod):
        raise UnsupportedFilterError("during requires a time period", operator=node.op.value)


def walk(node: Filter | None):
    """Yield every node of the tree, depth first."""
    if node is None:
        return
    yield node
    if isinstance(node, (And, Or)):
        for child in node.children:
            yield from walk(child)
    elif isinstance(node, Not):
        yield from walk(node.child)


def references_result(node: Filter | None) -> bool:
    return any(
        isinstance(n, (Comparison, Like)) and n.path.kind is PathKind.RESULT for n in walk(node)
    )


def like_to_regex(node: Like) -> re.Pattern[str]:
    out = []
    chars = iter(node.pattern)
    for ch in chars:
        if node.escape and ch == node.escape:
            nxt = next(chars, "")
            out.append(re.escape(nxt))
        elif ch == node.wildcard:
            out.append(".*")
        elif ch == node.single_char:
            out.append(".")
        else:
            out.append(re.escape(ch))
    flags = re.DOTALL if node.match_case else re.DOTALL | re.IGNORECASE
    return re.compile("".join(out), flags)


def like_to_sql(node: Like) -> str:
    """Pattern rewritten to SQL ``%``/``_`` wildcards, escaped with ``\\``."""
    out = []
    chars = iter(node.pattern)
    for ch in chars:
        if node.escape and ch == node.escape:
            nxt = next(chars, "")
            out.append("\\" + nxt if nxt in ("%", "_", "\\") else nxt)
        elif ch == node.wildcard:
            out.append("%")
        elif ch == node.single_char:
            out.append("_")
        elif ch in ("%", "_", "\\"):
            out.append("\\" + ch)
        else:
            out.append(ch)
    return "".join(out)


__all__ = [
    "And",
    "BBox",
    "Comparison",
    "ComparisonOp",
    "Filter",
    "Like",
    "Not",
    "Or",
    "PathKind",
    "PropertyPath",
    "ResourceId",
    "Temporal",
    "TemporalOp",
    "after",
    "and_",
    "bbox",
    "before",
    "during",
    "equal",
    "greater",
    "greater_or_equal",
    "less",
    "less_or_equal",
    "like",
    "like_to_regex",
    "like_to_sql",
    "not_",
    "not_equal",
    "or_",
    "parse_path",
    "references_result",
    "resource_id",
    "tequals",
    "validate_filter",
    "walk",
]
