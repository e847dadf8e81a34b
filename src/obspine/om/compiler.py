"""
Filter → SQLAlchemy predicate over ``om_observations``.

The compiled predicate is a prefilter: it selects every observation that
can hold a match, and possibly a few more. The exact per-row decision is
made afterwards by :class:`obspine.om.evaluator.FilterEvaluator`.

Polarity:
    Row-level leaves (``result*``, temporal operators, row resource ids)
    compile to an observation-level "has a matching row" test. That is a
    superset under positive polarity only, so below an odd number of
    ``not`` they compile to ``false()`` and the negation lets every
    candidate through.

Metadata leaves that need a lookup (offering ids, bbox, composite
membership, properties) are resolved to id lists in Python first, then
compiled to ``IN`` clauses.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from sqlalchemy import ColumnElement, and_, exists, false, func, literal, not_, or_, select, true
from sqlalchemy.orm import Session

from obspine.core.errors import UnsupportedFilterError, ValidationError
from obspine.core.orm import (
    ComponentTable,
    EntityPropertyTable,
    MeasureRowTable,
    ObservationTable,
    PhenomenonTable,
    ProcedureFieldTable,
    ProcedureTable,
    SamplingFeatureTable,
)
from obspine.core.settings import ObsSpineSettings
from obspine.om.entities import FEATURE, PHENOMENON, PROCEDURE
from obspine.om.fields import FieldKind, FieldType, coerce_value, parameter_column, quality_column
from obspine.om.filters import (
    And,
    BBox,
    Comparison,
    ComparisonOp,
    Filter,
    Like,
    Not,
    Or,
    PathKind,
    ResourceId,
    Temporal,
    TemporalOp,
    like_to_regex,
    like_to_sql,
)
from obspine.om.geometry import envelope, from_wkb, intersects_bbox
from obspine.om.offerings import offering_id, procedure_suffix


O = ObservationTable

_SQL_OPS: dict[ComparisonOp, Callable[[Any, Any], Any]] = {
    ComparisonOp.EQUAL: operator.eq,
    ComparisonOp.NOT_EQUAL: operator.ne,
    ComparisonOp.LESS: operator.lt,
    ComparisonOp.LESS_OR_EQUAL: operator.le,
    ComparisonOp.GREATER: operator.gt,
    ComparisonOp.GREATER_OR_EQUAL: operator.ge,
}


class FilterCompiler:
    """Compiles one filter tree within one session."""

    def __init__(self, session: Session, settings: ObsSpineSettings):
        self.session = session
        self.settings = settings
        self._ledgers: dict[str, list[ProcedureFieldTable]] | None = None

    def compile(self, node: Filter | None) -> ColumnElement[bool]:
        if node is None:
            return true()
        return self._compile(node, True)

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _compile(self, node: Filter, positive: bool) -> ColumnElement[bool]:
        if isinstance(node, And):
            return and_(*[self._compile(c, positive) for c in node.children])
        if isinstance(node, Or):
            return or_(*[self._compile(c, positive) for c in node.children])
        if isinstance(node, Not):
            return not_(self._compile(node.child, not positive))
        if isinstance(node, Comparison):
            if node.path.kind is PathKind.RESULT:
                return self._result_comparison(node) if positive else false()
            return self._metadata(node.path, node.op, node.value)
        if isinstance(node, Like):
            if node.path.kind is PathKind.RESULT:
                # numeric cells render differently in SQL and Python: no narrowing
                return true() if positive else false()
            return self._metadata(node.path, None, node)
        if isinstance(node, Temporal):
            return self._temporal(node) if positive else false()
        if isinstance(node, BBox):
            return O.foi.in_(self._features_in(node))
        if isinstance(node, ResourceId):
            return self._resource_id(node) if positive else false()
        raise UnsupportedFilterError(f"unknown filter node {type(node).__name__}")

    # ── Metadata leaves ──────────────────────────────────────────────────

    @staticmethod
    def _match(column: Any, op: ComparisonOp | None, value: Any) -> ColumnElement[bool]:
        """``column <op> value``, or ``column LIKE pattern`` when ``value`` is a Like node."""
        if isinstance(value, Like):
            pattern = like_to_sql(value)
            if value.match_case:
                return column.like(pattern, escape="\\")
            return func.lower(column).like(pattern.lower(), escape="\\")
        if isinstance(value, Enum):
            value = value.value
        return _SQL_OPS[op](column, str(value))

    def _metadata(self, path, op: ComparisonOp | None, value: Any) -> ColumnElement[bool]:
        negate = op is ComparisonOp.NOT_EQUAL
        if negate:
            op = ComparisonOp.EQUAL

        if path.kind is PathKind.PROPERTY:
            column, ids = self._property_ids(path, op, value)
        elif path.name == "procedure":
            column, ids = O.procedure, None
        elif path.name == "featureOfInterest":
            column, ids = O.foi, None
        elif path.name == "observationId":
            column, ids = O.identifier, None
        elif path.name == "observedProperty":
            column = O.observed_property
            ids = self._with_parents(
                self.session.scalars(select(PhenomenonTable.id).where(self._match(PhenomenonTable.id, op, value)))
            )
        elif path.name == "offering":
            column = O.procedure
            ids = [p for p in self._procedure_ids()
                   if _python_match(offering_id(p, self.settings.sensor_id_base), op, value)]
        elif path.name == "sensorType":
            column = O.procedure
            ids = list(self.session.scalars(
                select(ProcedureTable.id).where(self._match(ProcedureTable.sensor_type, op, value))
            ))
        else:
            raise UnsupportedFilterError(f"path {path} cannot be compiled")

        clause = self._match(column, op, value) if ids is None else column.in_(sorted(ids))
        if negate:
            # "no value equals v" also holds for an unset reference
            return or_(not_(clause), column.is_(None))
        return clause

    def _property_ids(self, path, op: ComparisonOp | None, value: Any) -> tuple[Any, set[str]]:
        kind, column = {
            "procedure": (PROCEDURE, O.procedure),
            "featureOfInterest": (FEATURE, O.foi),
            "observedProperty": (PHENOMENON, O.observed_property),
        }[path.name]
        ids = set(self.session.scalars(
            select(EntityPropertyTable.entity_id).where(
                EntityPropertyTable.entity_kind == kind,
                EntityPropertyTable.key == path.key,
                self._match(EntityPropertyTable.value, op, value),
            )
        ))
        if kind == PHENOMENON:
            ids = self._with_parents(ids)
        return column, ids

    def _with_parents(self, ids: Iterable[str]) -> set[str]:
        """Close a set of phenomenon ids over "is a component of"."""
        result = set(ids)
        frontier = set(result)
        while frontier:
            parents = set(self.session.scalars(
                select(ComponentTable.phenomenon).where(ComponentTable.component.in_(sorted(frontier)))
            ))
            frontier = parents - result
            result |= frontier
        return result

    def _procedure_ids(self) -> list[str]:
        return list(self.session.scalars(select(ProcedureTable.id).order_by(ProcedureTable.id)))

    def _features_in(self, node: BBox) -> list[str]:
        box = envelope(node.minx, node.miny, node.maxx, node.maxy, node.srid, node.axis_order)
        rows = self.session.execute(
            select(SamplingFeatureTable.id, SamplingFeatureTable.shape).where(SamplingFeatureTable.shape.is_not(None))
        )
        return sorted(fid for fid, shape in rows if intersects_bbox(from_wkb(shape), box))

    # ── Row-level leaves ─────────────────────────────────────────────────

    def _temporal(self, node: Temporal) -> ColumnElement[bool]:
        begin = O.time_begin
        end = func.coalesce(O.time_end, O.time_begin)
        t = node.time
        if node.op is TemporalOp.TEQUALS:
            return and_(begin <= t.begin, end >= t.begin)
        if node.op is TemporalOp.DURING:
            return and_(begin <= t.end, end >= t.begin)
        if node.op is TemporalOp.BEFORE:
            return begin <= t.begin
        if node.op is TemporalOp.AFTER:
            return end >= t.begin
        raise UnsupportedFilterError(f"unknown temporal operator {node.op}", operator=str(node.op))

    def _resource_id(self, node: ResourceId) -> ColumnElement[bool]:
        base = self.settings.observation_template_id_base
        templates = []
        for proc in self._procedure_ids():
            template = base + procedure_suffix(proc, self.settings.sensor_id_base)
            if any(rid == template or rid.startswith(template + "-") for rid in node.ids):
                templates.append(proc)
        clauses = [O.identifier.in_(node.ids), O.procedure.in_(templates)]
        clauses.extend(literal(rid).startswith(O.identifier + "-") for rid in node.ids)
        return or_(*clauses)

    def _ledgers_by_procedure(self) -> dict[str, list[ProcedureFieldTable]]:
        if self._ledgers is None:
            ledgers: dict[str, list[ProcedureFieldTable]] = {}
            rows = self.session.scalars(
                select(ProcedureFieldTable).order_by(ProcedureFieldTable.procedure, ProcedureFieldTable.order)
            )
            for row in rows:
                ledgers.setdefault(row.procedure, []).append(row)
            self._ledgers = ledgers
        return self._ledgers

    def _result_comparison(self, node: Comparison) -> ColumnElement[bool]:
        path = node.path
        per_procedure = []
        for proc, ledger in self._ledgers_by_procedure().items():
            measures = [r for r in ledger if r.sub_kind == FieldKind.MEASURE.value]
            data = measures[1:]
            if path.index is not None:
                data = data[path.index:path.index + 1]
            if path.sub_field is None:
                targets = data
            else:
                names = set()
                for f in data:
                    names.add(quality_column(f.name, path.sub_field))
                    names.add(parameter_column(f.name, path.sub_field))
                targets = [r for r in ledger if r.name in names]
            cells = [c for c in (self._cell_test(r, node) for r in targets) if c is not None]
            if cells:
                per_procedure.append(and_(O.procedure == proc, or_(*cells)))
        if not per_procedure:
            return false()
        return or_(*per_procedure)

    def _cell_test(self, column: ProcedureFieldTable, node: Comparison) -> ColumnElement[bool] | None:
        field_type = FieldType(column.field_type)
        try:
            value = coerce_value(node.value, field_type, column.name)
        except ValidationError:
            # literal cannot be compared with this column
            return None
        if value is None:
            return None
        cell = MeasureRowTable.cells[column.name]
        if field_type is FieldType.QUANTITY:
            typed = cell.as_float()
        elif field_type is FieldType.BOOLEAN:
            typed = cell.as_boolean()
        else:
            typed = cell.as_string()
        return exists().where(
            MeasureRowTable.observation_id == O.id,
            MeasureRowTable.table_number == column.table_number,
            _SQL_OPS[node.op](typed, value),
        )


def _python_match(text: str, op: ComparisonOp | None, value: Any) -> bool:
    if isinstance(value, Like):
        return like_to_regex(value).fullmatch(text) is not None
    if isinstance(value, Enum):
        value = value.value
    return bool(_SQL_OPS[op](text, str(value)))


__all__ = ["FilterCompiler"]
