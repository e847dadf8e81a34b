"""
Observation Merge Engine: decides how a write combines with stored data.

Manifesto:
    Sensors deliver data in pieces: late rows, overlapping re-sends, a new
    field appearing halfway through a campaign. The engine folds every
    piece into the one observation it belongs to, so a procedure's series
    stays a single logical matrix whatever the delivery pattern was.

Architecture:
    ::

        write(observation)
          │
          ├─ prepare ........ validate, coerce, key every row (no DB change)
          ├─ procedure ...... upsert metadata, om_type check
          ├─ allocator ...... extend the field ledger (append-only)
          ├─ target ......... existing observation for the merge key, or new
          │                     timeseries: (procedure, feature of interest)
          │                     profile:    (procedure, feature, instant)
          ├─ composer ....... phenomenon after the write
          ├─ rows ........... field-level upsert keyed by main value
          ├─ offering ....... recomputed
          └─ orphans ........ replaced phenomena deleted when unreferenced

Merge rules:
    - Overlapping, adjacent and disjoint writes with the same key all land
      in one observation; its extent becomes the union.
    - Two writes at the same main value never duplicate a row: the later
      write wins per field, fields it does not carry keep their value.
    - ``None`` and NaN never overwrite a stored value.
    - A row carrying only its main value is dropped with a warning.

Guardrails:
    ❌ DON'T: Call ``write`` without holding the procedure's lock
    ✅ DO: Go through ``ObservationStore.write_observation``

Tags:
    merge, write-path, observation
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from obspine.core.errors import ValidationError
from obspine.core.logging import get_logger
from obspine.core.orm import MeasureRowTable, ObservationTable, ProcedureTable
from obspine.core.settings import ObsSpineSettings
from obspine.om.allocator import Placement, TableAllocator
from obspine.om.composer import PhenomenonComposer
from obspine.om.entities import (
    fields_from_ledger,
    ledger_rows,
    load_phenomenon,
    record_location,
    save_feature,
    save_procedure,
)
from obspine.om.fields import (
    Field,
    FieldType,
    check_unique,
    coerce_value,
    flat_columns,
    is_missing,
    time_key,
    to_naive_utc,
)
from obspine.om.model import (
    ComplexResult,
    MeasureResult,
    Observation,
    ObservationType,
    Phenomenon,
    SamplingFeature,
    Time,
    TimeInstant,
    build_time,
    union_time,
)
from obspine.om.offerings import procedure_suffix, refresh_offering

logger = get_logger(__name__)

_KEY_CHUNK = 500


@dataclass
class KeyedRow:
    key: float
    time: datetime.datetime | None
    cells: dict[str, Any]


@dataclass
class PreparedWrite:
    """A validated write: nothing below needs to re-check the input."""

    observation: Observation
    om_type: ObservationType
    main: Field
    fields: list[Field]
    rows: list[KeyedRow] = field(default_factory=list)
    sampling_time: Time | None = None

    @property
    def procedure_id(self) -> str:
        return self.observation.procedure.id

    @property
    def feature(self) -> SamplingFeature | None:
        return self.observation.feature_of_interest


def field_for_phenomenon(phenomenon_id: str, phenomenon_id_base: str) -> str:
    """Field name a simple phenomenon id stands for."""
    if phenomenon_id_base and phenomenon_id.startswith(phenomenon_id_base):
        return phenomenon_id[len(phenomenon_id_base):]
    return phenomenon_id


def parse_time(value: Any, name: str) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.datetime.fromisoformat(str(value)))
    except ValueError as exc:
        raise ValidationError(f"invalid time {value!r}", field=name, value=value,
                              constraint="field_type", cause=exc) from exc


class MergeEngine:
    """Applies one observation write inside the caller's transaction."""

    def __init__(
        self,
        settings: ObsSpineSettings,
        composer: PhenomenonComposer | None = None,
        allocator: TableAllocator | None = None,
    ):
        self.settings = settings
        self.composer = composer or PhenomenonComposer()
        self.allocator = allocator or TableAllocator(settings.max_field_by_table)

    # ── Validation ───────────────────────────────────────────────────────

    def prepare(
        self,
        observation: Observation,
        existing_type: ObservationType | None = None,
        existing_main: Field | None = None,
    ) -> PreparedWrite:
        """Validate and key the write. Raises ValidationError, touches nothing."""
        if observation.procedure is None or not observation.procedure.id:
            raise ValidationError("observation has no procedure", constraint="procedure_required")

        result = observation.result
        if isinstance(result, MeasureResult):
            return self._prepare_measurement(observation, result, existing_type, existing_main)
        if not isinstance(result, ComplexResult) or not result.fields:
            raise ValidationError("observation has no field", constraint="non_empty_fields")

        fields = list(result.fields)
        check_unique(fields)
        main, data = fields[0], fields[1:]
        if not data:
            raise ValidationError("observation carries only its main field", field=main.name,
                                  constraint="non_empty_fields")
        if main.type not in (FieldType.TIME, FieldType.QUANTITY):
            raise ValidationError(f"main field {main.name!r} must be a time or a quantity",
                                  field=main.name, constraint="main_field")
        om_type = ObservationType.of(main)
        if existing_type is not None and existing_type is not om_type:
            raise ValidationError(
                f"procedure {observation.procedure.id!r} records {existing_type.value} observations",
                value=om_type.value,
                constraint="observation_type",
            )

        instant = None
        if om_type is ObservationType.PROFILE:
            if observation.sampling_time is None:
                raise ValidationError("profile observation needs a sampling time",
                                      constraint="profile_time")
            instant = observation.sampling_time.begin

        columns = {c.name: c for c in flat_columns(data)}
        keyed: dict[float, KeyedRow] = {}
        for raw in result.rows or []:
            unknown = set(raw) - set(columns) - {main.name}
            if unknown:
                raise ValidationError(f"row has unknown columns {sorted(unknown)}",
                                      value=sorted(unknown), constraint="known_columns")
            main_value = raw.get(main.name)
            if om_type is ObservationType.PROFILE and not is_missing(main_value):
                main_value = coerce_value(main_value, FieldType.QUANTITY, main.name)
            if is_missing(main_value):
                raise ValidationError(f"row without main value {main.name!r}", field=main.name,
                                      constraint="main_value")
            if om_type is ObservationType.TIMESERIES:
                row_time = parse_time(main_value, main.name)
                key = time_key(row_time)
            else:
                row_time = instant
                key = main_value
            cells = {}
            for name, value in raw.items():
                if name == main.name:
                    continue
                coerced = coerce_value(value, columns[name].type, name)
                if coerced is not None:
                    cells[name] = coerced
            if key in keyed:
                keyed[key].cells.update(cells)
            else:
                keyed[key] = KeyedRow(key, row_time, cells)

        empty = [k for k, r in keyed.items() if not r.cells]
        if empty:
            logger.warning("empty_rows_ignored", procedure=observation.procedure.id, rows=len(empty))
        rows = [keyed[k] for k in sorted(keyed) if keyed[k].cells]
        if om_type is ObservationType.TIMESERIES and rows:
            sampling_time = build_time(rows[0].time, rows[-1].time)
        else:
            sampling_time = observation.sampling_time
        if existing_main is not None and existing_main.name != main.name:
            raise ValidationError(
                f"main field {main.name!r} does not match the procedure's {existing_main.name!r}",
                field=main.name, constraint="main_field",
            )
        return PreparedWrite(observation, om_type, main, data, rows, sampling_time)

    def _prepare_measurement(
        self,
        observation: Observation,
        result: MeasureResult,
        existing_type: ObservationType | None,
        existing_main: Field | None,
    ) -> PreparedWrite:
        if existing_type is ObservationType.PROFILE:
            raise ValidationError(
                f"procedure {observation.procedure.id!r} records profiles; a measurement cannot be merged",
                constraint="observation_type",
            )
        if observation.sampling_time is None:
            raise ValidationError("measurement needs a sampling time", constraint="measurement_time")
        main = existing_main if existing_main is not None else Field("time", FieldType.TIME)
        if result.field.name == main.name:
            raise ValidationError("measurement field collides with the main field",
                                  field=result.field.name, constraint="main_field")
        at = observation.sampling_time.begin
        value = coerce_value(result.value, result.field.type, result.field.name)
        cells = {} if value is None else {result.field.name: value}
        return PreparedWrite(
            observation,
            ObservationType.TIMESERIES,
            main,
            [result.field],
            [KeyedRow(time_key(at), at, cells)],
            TimeInstant(at),
        )

    # ── Write ────────────────────────────────────────────────────────────

    def write(self, session: Session, observation: Observation) -> str:
        """Merge ``observation`` into the store; return its observation identifier."""
        proc_id = observation.procedure.id
        proc_row = session.get(ProcedureTable, proc_id)
        existing_type = ObservationType(proc_row.om_type) if proc_row is not None and proc_row.om_type else None
        ledger = fields_from_ledger(ledger_rows(session, proc_id)) if proc_row is not None else []
        prep = self.prepare(observation, existing_type, ledger[0] if ledger else None)

        save_procedure(session, replace(observation.procedure, om_type=prep.om_type))
        placement = self.allocator.allocate(session, proc_id, prep.main, prep.fields)
        if prep.feature is not None:
            save_feature(session, prep.feature)
        foi_id = prep.feature.id if prep.feature is not None else None

        target = self._find_target(session, prep, foi_id)
        if target is not None:
            current = load_phenomenon(session, target.observed_property)
        else:
            current = self._procedure_phenomenon(session, proc_id)
        phenomenon = self.composer.compose_for(
            session,
            procedure_suffix(proc_id, self.settings.sensor_id_base),
            self._incoming_phenomena(prep),
            current,
            observation.observed_property,
        )

        replaced: set[str] = set()
        created = target is None
        if target is None:
            target = self._create_observation(session, prep, foi_id, phenomenon)
        else:
            if target.observed_property != phenomenon.id:
                if target.observed_property:
                    replaced.add(target.observed_property)
                target.observed_property = phenomenon.id
            self._extend_time(target, prep.sampling_time)
        if prep.om_type is ObservationType.PROFILE:
            replaced |= self._harmonize_profiles(session, proc_id, phenomenon.id)

        written = self._write_rows(session, target, prep, placement)
        refresh_offering(session, proc_id, self.settings.sensor_id_base)
        for old in sorted(replaced - {phenomenon.id}):
            self.composer.delete_if_orphan(session, old)
        self._record_location(session, prep)

        logger.info(
            "observation_written",
            observation=target.identifier,
            procedure=proc_id,
            phenomenon=phenomenon.id,
            created=created,
            rows=written,
        )
        return target.identifier

    # ── Steps ────────────────────────────────────────────────────────────

    def _incoming_phenomena(self, prep: PreparedWrite) -> list[Phenomenon]:
        """Simple phenomena for the written fields, taking metadata from the writer's phenomenon."""
        supplied = prep.observation.observed_property
        leaves = {}
        if supplied is not None:
            base = self.settings.phenomenon_id_base
            leaves = {field_for_phenomenon(leaf.id, base): leaf for leaf in supplied.leaves()}
        fields = list(prep.fields)
        if prep.om_type is ObservationType.PROFILE:
            fields.insert(0, prep.main)
        out = []
        for f in fields:
            leaf = leaves.get(f.name)
            if leaf is not None and not leaf.is_composite:
                out.append(leaf)
            else:
                out.append(Phenomenon.simple(f.name, name=f.label or f.name, description=f.description))
        return out

    def _find_target(self, session: Session, prep: PreparedWrite, foi_id: str | None) -> ObservationTable | None:
        stmt = select(ObservationTable).where(ObservationTable.procedure == prep.procedure_id)
        stmt = stmt.where(ObservationTable.foi == foi_id if foi_id is not None else ObservationTable.foi.is_(None))
        if prep.om_type is ObservationType.PROFILE:
            stmt = stmt.where(ObservationTable.time_begin == prep.sampling_time.begin)
        return session.scalars(stmt.order_by(ObservationTable.id).limit(1)).first()

    def _procedure_phenomenon(self, session: Session, procedure_id: str) -> Phenomenon | None:
        latest = session.scalar(
            select(ObservationTable.observed_property)
            .where(ObservationTable.procedure == procedure_id)
            .order_by(ObservationTable.id.desc())
            .limit(1)
        )
        return load_phenomenon(session, latest)

    def _create_observation(
        self, session: Session, prep: PreparedWrite, foi_id: str | None, phenomenon: Phenomenon
    ) -> ObservationTable:
        row = ObservationTable(
            procedure=prep.procedure_id,
            foi=foi_id,
            observed_property=phenomenon.id,
        )
        self._extend_time(row, prep.sampling_time)
        session.add(row)
        session.flush()
        name = prep.observation.name
        if name and session.scalar(select(ObservationTable.id).where(ObservationTable.identifier == name)) is None:
            row.identifier = name
        else:
            if name:
                logger.warning("observation_name_taken", name=name, procedure=prep.procedure_id)
            row.identifier = f"{self.settings.observation_id_base}{row.id}"
        session.flush()
        return row

    @staticmethod
    def _extend_time(row: ObservationTable, time: Time | None) -> None:
        current = build_time(row.time_begin, row.time_end)
        merged = union_time(current, time)
        if merged is None:
            return
        row.time_begin = merged.begin
        row.time_end = None if isinstance(merged, TimeInstant) else merged.end

    def _harmonize_profiles(self, session: Session, procedure_id: str, phenomenon_id: str) -> set[str]:
        """Point every profile of the procedure at the same phenomenon."""
        replaced = set()
        others = session.scalars(
            select(ObservationTable).where(
                ObservationTable.procedure == procedure_id,
                ObservationTable.observed_property != phenomenon_id,
            )
        )
        for other in others:
            if other.observed_property:
                replaced.add(other.observed_property)
            other.observed_property = phenomenon_id
        return replaced

    def _write_rows(
        self, session: Session, target: ObservationTable, prep: PreparedWrite, placement: dict[str, Placement]
    ) -> int:
        col_table = {name: p.table_number for name, p in placement.items() if not p.is_main}
        existing: dict[tuple[int, float], MeasureRowTable] = {}
        keys = [r.key for r in prep.rows]
        for chunk in _chunks(keys, _KEY_CHUNK):
            stmt = select(MeasureRowTable).where(
                MeasureRowTable.observation_id == target.id, MeasureRowTable.row_key.in_(chunk)
            )
            for row in session.scalars(stmt):
                existing[(row.table_number, row.row_key)] = row

        for keyed in prep.rows:
            # table 1 always holds the key row
            per_table: dict[int, dict[str, Any]] = defaultdict(dict, {1: {}})
            for name, value in keyed.cells.items():
                per_table[col_table[name]][name] = value
            for table, cells in per_table.items():
                stored = existing.get((table, keyed.key))
                if stored is None:
                    if not cells and table != 1:
                        continue
                    stored = MeasureRowTable(
                        observation_id=target.id,
                        table_number=table,
                        row_key=keyed.key,
                        time=keyed.time,
                        cells=cells,
                    )
                    session.add(stored)
                    existing[(table, keyed.key)] = stored
                elif cells:
                    merged = dict(stored.cells or {})
                    merged.update(cells)
                    stored.cells = merged
        session.flush()
        return len(prep.rows)

    def _record_location(self, session: Session, prep: PreparedWrite) -> None:
        proc = prep.observation.procedure
        if proc.geometry is None:
            return
        if prep.sampling_time is not None:
            record_location(session, proc.id, prep.sampling_time.begin, proc.geometry, proc.srid)


def _chunks(items: list[float], size: int) -> Iterable[list[float]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


__all__ = ["KeyedRow", "MergeEngine", "PreparedWrite", "field_for_phenomenon", "parse_time"]
