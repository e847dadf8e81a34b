"""
ORM → domain reconstruction.

A logical row is spread over one partial row per physical table. The
reader rebuilds it with an explicit outer join on the row key: every
column of the procedure's ledger is present in the rebuilt row, and a
column whose table has no partial row at that key reads as ``None``.

That ``None`` cannot tell "not measured yet" from "this table was never
written at this key"; callers that care (decimation, csv output) see the
same gap either way.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from obspine.core.orm import MeasureRowTable, ObservationTable
from obspine.core.settings import ObsSpineSettings
from obspine.om.entities import load_feature, load_phenomenon, load_procedure
from obspine.om.fields import Field, FieldType, decode_value, flat_columns, key_time
from obspine.om.merge import field_for_phenomenon
from obspine.om.model import (
    ComplexResult,
    Observation,
    ObservationType,
    Phenomenon,
    Procedure,
    Row,
    SamplingFeature,
    build_time,
)


class ObservationReader:
    """Loads observations within one session, caching shared metadata."""

    def __init__(self, session: Session, settings: ObsSpineSettings):
        self.session = session
        self.settings = settings
        self._procedures: dict[str, Procedure | None] = {}
        self._phenomena: dict[str, Phenomenon | None] = {}
        self._features: dict[str, SamplingFeature | None] = {}

    # ── Cached metadata ──────────────────────────────────────────────────

    def procedure(self, procedure_id: str) -> Procedure | None:
        if procedure_id not in self._procedures:
            self._procedures[procedure_id] = load_procedure(self.session, procedure_id)
        return self._procedures[procedure_id]

    def phenomenon(self, phenomenon_id: str | None) -> Phenomenon | None:
        if phenomenon_id is None:
            return None
        if phenomenon_id not in self._phenomena:
            self._phenomena[phenomenon_id] = load_phenomenon(self.session, phenomenon_id)
        return self._phenomena[phenomenon_id]

    def feature(self, feature_id: str | None) -> SamplingFeature | None:
        if feature_id is None:
            return None
        if feature_id not in self._features:
            self._features[feature_id] = load_feature(self.session, feature_id)
        return self._features[feature_id]

    # ── Observations ─────────────────────────────────────────────────────

    def fields_for(self, procedure: Procedure, phenomenon: Phenomenon | None) -> list[Field]:
        """Main field plus the data fields the phenomenon stands for, in ledger order."""
        if not procedure.fields:
            return []
        if phenomenon is None:
            return list(procedure.fields)
        base = self.settings.phenomenon_id_base
        names = {field_for_phenomenon(pid, base) for pid in phenomenon.leaf_ids()}
        data = [f for f in procedure.data_fields if f.name in names]
        return [procedure.fields[0], *(data or procedure.data_fields)]

    def observation(self, row: ObservationTable, *, with_rows: bool = True) -> Observation:
        procedure = self.procedure(row.procedure)
        phenomenon = self.phenomenon(row.observed_property)
        fields = self.fields_for(procedure, phenomenon)
        rows = self.rows(row, procedure) if with_rows else None
        return Observation(
            procedure=procedure,
            observed_property=phenomenon,
            feature_of_interest=self.feature(row.foi),
            sampling_time=build_time(row.time_begin, row.time_end),
            result=ComplexResult(fields, rows) if fields else None,
            id=row.identifier,
            name=row.identifier,
        )

    def observations(self, rows: Iterable[ObservationTable], *, with_rows: bool = True) -> list[Observation]:
        return [self.observation(r, with_rows=with_rows) for r in rows]

    def rows(self, observation: ObservationTable, procedure: Procedure) -> list[Row]:
        """Outer join of the observation's partial rows, ordered by key."""
        main = procedure.main_field
        if main is None:
            return []
        columns = flat_columns(procedure.data_fields)
        types = {c.name: c.type for c in columns}
        profile = procedure.om_type is ObservationType.PROFILE or main.type is not FieldType.TIME

        partials = self.session.scalars(
            select(MeasureRowTable)
            .where(MeasureRowTable.observation_id == observation.id)
            .order_by(MeasureRowTable.row_key, MeasureRowTable.table_number)
        )
        joined: dict[float, Row] = {}
        for partial in partials:
            row = joined.get(partial.row_key)
            if row is None:
                row = dict.fromkeys(types)
                if profile:
                    row[main.name] = partial.row_key
                else:
                    row[main.name] = partial.time if partial.time is not None else key_time(partial.row_key)
                joined[partial.row_key] = row
            for name, value in (partial.cells or {}).items():
                if name in types:
                    row[name] = decode_value(value, types[name])
        return [joined[k] for k in sorted(joined)]


def project(rows: Sequence[Row], fields: Sequence[Field]) -> list[Row]:
    """Keep only the columns of ``fields`` (sub-field columns included)."""
    names = [fields[0].name, *(c.name for c in flat_columns(fields[1:]))]
    return [{n: r.get(n) for n in names} for r in rows]


__all__ = ["ObservationReader", "project"]
