"""
In-memory filter evaluation against observations and their rows.

The SQL compiler narrows candidates at observation level; this evaluator
makes the final, exact decision per row. Result paths compare row cells,
temporal operators compare the row's time for time series and the
observation's sampling time for profiles and templates. Multi-valued paths
(composite phenomena, property lists) match when any value matches.

Evaluation is pure: no session, no shared state.
"""

from __future__ import annotations

import datetime
import operator
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

from obspine.core.errors import UnsupportedFilterError
from obspine.core.settings import ObsSpineSettings
from obspine.om.fields import Field, FieldType, parameter_column, quality_column, to_naive_utc
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
    PropertyPath,
    ResourceId,
    Temporal,
    TemporalOp,
    like_to_regex,
)
from obspine.om.geometry import envelope, intersects_bbox
from obspine.om.model import ComplexResult, MeasureResult, Observation, ObservationType, Row
from obspine.om.offerings import offering_id, procedure_suffix

_OPS: dict[ComparisonOp, Callable[[Any, Any], bool]] = {
    ComparisonOp.EQUAL: operator.eq,
    ComparisonOp.NOT_EQUAL: operator.ne,
    ComparisonOp.LESS: operator.lt,
    ComparisonOp.LESS_OR_EQUAL: operator.le,
    ComparisonOp.GREATER: operator.gt,
    ComparisonOp.GREATER_OR_EQUAL: operator.ge,
}


def coerce_literal(stored: Any, literal: Any) -> Any:
    """Bring a filter literal to the type of the stored value it is compared with."""
    if isinstance(literal, Enum):
        literal = literal.value
    if isinstance(stored, bool):
        if isinstance(literal, str):
            return literal.strip().lower() in ("true", "1")
        return bool(literal)
    if isinstance(stored, (int, float)):
        if isinstance(literal, bool):
            return float(literal)
        return float(literal)
    if isinstance(stored, datetime.datetime):
        if isinstance(literal, datetime.datetime):
            return to_naive_utc(literal)
        return datetime.datetime.fromisoformat(str(literal))
    return str(literal)


def compare(op: ComparisonOp, stored: Any, literal: Any) -> bool:
    if stored is None:
        return False
    try:
        return bool(_OPS[op](stored, coerce_literal(stored, literal)))
    except (TypeError, ValueError):
        return False


class FilterEvaluator:
    """Evaluates filter trees against domain observations."""

    def __init__(self, settings: ObsSpineSettings):
        self.settings = settings

    # ── Public API ───────────────────────────────────────────────────────

    def matches(
        self,
        node: Filter | None,
        observation: Observation,
        row: Row | None = None,
        row_index: int | None = None,
    ) -> bool:
        if node is None:
            return True
        return self._eval(node, observation, row, row_index)

    def filter_rows(self, node: Filter | None, observation: Observation, rows: Sequence[Row]) -> list[tuple[int, Row]]:
        """Rows passing the filter, paired with their 1-based position in ``rows``."""
        indexed = list(enumerate(rows, start=1))
        if node is None:
            return indexed
        return [(i, row) for i, row in indexed if self._eval(node, observation, row, i)]

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _eval(self, node: Filter, obs: Observation, row: Row | None, row_index: int | None) -> bool:
        if isinstance(node, And):
            return all(self._eval(c, obs, row, row_index) for c in node.children)
        if isinstance(node, Or):
            return any(self._eval(c, obs, row, row_index) for c in node.children)
        if isinstance(node, Not):
            return not self._eval(node.child, obs, row, row_index)
        if isinstance(node, Comparison):
            return self._comparison(node, obs, row)
        if isinstance(node, Like):
            return self._like(node, obs, row)
        if isinstance(node, Temporal):
            return self._temporal(node, obs, row)
        if isinstance(node, BBox):
            foi = obs.feature_of_interest
            box = envelope(node.minx, node.miny, node.maxx, node.maxy, node.srid, node.axis_order)
            return foi is not None and intersects_bbox(foi.geometry, box)
        if isinstance(node, ResourceId):
            return self._resource_id(node, obs, row_index)
        raise UnsupportedFilterError(f"unknown filter node {type(node).__name__}")

    # ── Leaves ───────────────────────────────────────────────────────────

    def _comparison(self, node: Comparison, obs: Observation, row: Row | None) -> bool:
        values = self.resolve(node.path, obs, row)
        if node.path.kind is not PathKind.RESULT and node.op is ComparisonOp.NOT_EQUAL:
            # metadata: "different from v" means no value equals v
            return not any(compare(ComparisonOp.EQUAL, v, node.value) for v in values)
        return any(compare(node.op, v, node.value) for v in values)

    def _like(self, node: Like, obs: Observation, row: Row | None) -> bool:
        pattern = like_to_regex(node)
        return any(
            v is not None and pattern.fullmatch(str(v)) is not None
            for v in self.resolve(node.path, obs, row)
        )

    def _temporal(self, node: Temporal, obs: Observation, row: Row | None) -> bool:
        begin, end = self._time_of(obs, row)
        if begin is None:
            return False
        if end is None:
            end = begin
        t = node.time
        if node.op is TemporalOp.TEQUALS:
            return begin <= t.begin <= end
        if node.op is TemporalOp.DURING:
            return begin <= t.end and end >= t.begin
        if node.op is TemporalOp.BEFORE:
            return begin <= t.begin
        if node.op is TemporalOp.AFTER:
            return end >= t.begin
        raise UnsupportedFilterError(f"unknown temporal operator {node.op}", operator=str(node.op))

    def _resource_id(self, node: ResourceId, obs: Observation, row_index: int | None) -> bool:
        proc = obs.procedure
        template = self.settings.observation_template_id_base + procedure_suffix(
            proc.id, self.settings.sensor_id_base
        )
        for rid in node.ids:
            if rid == obs.id or rid == template or rid.startswith(template + "-"):
                return True
            if obs.id and rid.startswith(obs.id + "-"):
                parts = rid[len(obs.id) + 1:].split("-")
                if row_index is None:
                    return True
                if parts[-1].isdigit() and int(parts[-1]) == row_index:
                    return True
        return False

    # ── Value resolution ─────────────────────────────────────────────────

    def resolve(self, path: PropertyPath, obs: Observation, row: Row | None) -> list[Any]:
        if path.kind is PathKind.RESULT:
            return self._result_values(path, obs, row)
        if path.kind is PathKind.PROPERTY:
            return list(self._entity_properties(path, obs))
        proc = obs.procedure
        name = path.name
        if name == "procedure":
            return [proc.id]
        if name == "observedProperty":
            phen = obs.observed_property
            if phen is None:
                return []
            return [phen.id, *[c for c in phen.leaf_ids() if c != phen.id]]
        if name == "featureOfInterest":
            return [obs.feature_of_interest.id] if obs.feature_of_interest else []
        if name == "offering":
            return [offering_id(proc.id, self.settings.sensor_id_base)]
        if name == "observationId":
            return [obs.id] if obs.id else []
        if name == "sensorType":
            return [proc.sensor_type.value]
        raise UnsupportedFilterError(f"path {name!r} cannot be compared")

    def _entity_properties(self, path: PropertyPath, obs: Observation) -> tuple[str, ...]:
        if path.name == "procedure":
            return obs.procedure.properties.get(path.key, ())
        if path.name == "featureOfInterest":
            foi = obs.feature_of_interest
            return foi.properties.get(path.key, ()) if foi else ()
        phen = obs.observed_property
        if phen is None:
            return ()
        values = list(phen.properties.get(path.key, ()))
        for leaf in phen.leaves():
            if leaf.id != phen.id:
                values.extend(leaf.properties.get(path.key, ()))
        return tuple(values)

    def data_fields(self, obs: Observation) -> list[Field]:
        if obs.procedure.fields:
            return obs.procedure.data_fields
        if isinstance(obs.result, ComplexResult):
            return list(obs.result.fields[1:])
        return []

    def _result_values(self, path: PropertyPath, obs: Observation, row: Row | None) -> list[Any]:
        result = obs.result
        if isinstance(result, MeasureResult):
            if path.sub_field is not None:
                return []
            if path.index is not None and result.field_index is not None and path.index != result.field_index:
                return []
            return [result.value]
        if row is None:
            return []
        fields = self.data_fields(obs)
        if path.index is not None:
            if path.index >= len(fields):
                return []
            fields = [fields[path.index]]
        values = []
        for f in fields:
            if path.sub_field is None:
                values.append(row.get(f.name))
            else:
                q = quality_column(f.name, path.sub_field)
                p = parameter_column(f.name, path.sub_field)
                values.append(row.get(q, row.get(p)))
        return [v for v in values if v is not None]

    def _time_of(self, obs: Observation, row: Row | None) -> tuple[datetime.datetime | None, datetime.datetime | None]:
        proc = obs.procedure
        main = proc.main_field
        if (
            row is not None
            and main is not None
            and main.type is FieldType.TIME
            and proc.om_type is not ObservationType.PROFILE
        ):
            value = row.get(main.name)
            if isinstance(value, datetime.datetime):
                return value, value
        if obs.sampling_time is None:
            return None, None
        return obs.sampling_time.begin, obs.sampling_time.end


__all__ = ["FilterEvaluator", "coerce_literal", "compare"]
