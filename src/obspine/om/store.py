"""
ObservationStore: the public facade of the observation store.

Manifesto:
    Callers see one object. Behind it, every mutating call is one
    transaction under the locks of the procedures it touches, and every
    read is a SQL prefilter followed by an exact in-memory pass.

Architecture:
    ::

        ┌──────────────────────────── ObservationStore ────────────────────────────┐
        │                                                                          │
        │  write_observation ──► KeyedLock[procedure] ──► MergeEngine              │
        │                                                  ├─ TableAllocator       │
        │                                                  └─ PhenomenonComposer   │
        │                                                                          │
        │  get_observations / get_results                                          │
        │        │                                                                 │
        │        ├─► FilterCompiler ── SQL prefilter on om_observations            │
        │        ├─► ObservationReader ── outer join of partial rows               │
        │        ├─► FilterEvaluator ── exact row / measurement filter             │
        │        └─► ResultDecimator ── optional, then csv / flat / count / array  │
        │                                                                          │
        │  get_template / extract_results / remove_*  ──► DatasetAssembler         │
        └──────────────────────────────────────────────────────────────────────────┘

Transactions:
    ``transaction()`` commits on success and rolls back on any exception.
    SQLAlchemy errors surface as ``StorageError``; domain errors
    (``ValidationError``, ``UnsupportedFilterError``…) propagate unchanged.
    In-memory SQLite shares one connection, so its transactions are also
    serialized store-wide.

Paging:
    Every listing is sorted by identifier (lexicographic) before
    ``offset``/``limit`` are applied, so pages are stable.

Examples:
    >>> store = ObservationStore.in_memory()
    >>> store.get_procedures()
    []

Tags:
    facade, store, transaction, observation
"""

from __future__ import annotations

import contextlib
import datetime
import threading
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from shapely.geometry.base import BaseGeometry
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from obspine.core.errors import NotFoundError, StorageError, ValidationError
from obspine.core.locks import KeyedLock
from obspine.core.logging import LogContext, get_logger
from obspine.core.orm import (
    HistoricalLocationTable,
    MeasureRowTable,
    ObsBase,
    ObservationTable,
    OfferingTable,
    PhenomenonTable,
    ProcedureFieldTable,
    ProcedureTable,
    SamplingFeatureTable,
    create_obs_engine,
    is_memory_url,
    obs_session_factory,
)
from obspine.core.settings import ObsSpineSettings, get_settings
from obspine.om.allocator import TableAllocator
from obspine.om.assembler import DatasetAssembler, phenomenon_exists, select_fields
from obspine.om.compiler import FilterCompiler
from obspine.om.composer import PhenomenonComposer
from obspine.om.decimation import LocationDecimator, ResultDecimator
from obspine.om.entities import (
    load_feature,
    load_phenomenon,
    load_procedure,
    record_location,
    save_phenomenon,
    save_procedure,
)
from obspine.om.evaluator import FilterEvaluator
from obspine.om.fields import Field, FieldType
from obspine.om.filters import Filter, references_result
from obspine.om.geometry import from_wkb, normalize_geometry, to_wkb
from obspine.om.merge import MergeEngine, field_for_phenomenon
from obspine.om.model import (
    ComplexResult,
    DatasetExtract,
    Location,
    MeasureResult,
    Observation,
    ObservationType,
    Offering,
    Phenomenon,
    Procedure,
    Row,
    SamplingFeature,
    Time,
    TimeInstant,
    union_time,
)
from obspine.om.offerings import load_offering
from obspine.om.queries import (
    DatasetQuery,
    EntityKind,
    EntityQuery,
    EntityType,
    ObservationQuery,
    ResponseMode,
    ResultFormat,
    ResultQuery,
    page,
)
from obspine.om.reader import ObservationReader, project
from obspine.om.results import (
    ID_COLUMN,
    PROFILE_TIME_COLUMN,
    columns,
    result_fields,
    to_array,
    to_csv,
    to_csv_flat,
)

logger = get_logger(__name__)


class ObservationStore:
    """Observation store over one SQLAlchemy engine."""

    def __init__(self, settings: ObsSpineSettings | None = None, *, engine: Engine | None = None):
        self.settings = settings or get_settings()
        self.engine = engine or create_obs_engine(self.settings.database_url, echo=self.settings.database_echo)
        self._sessions = obs_session_factory(self.engine)
        self.locks = KeyedLock()
        # one shared connection: serialize every transaction
        self._connection_lock = threading.RLock() if is_memory_url(str(self.engine.url)) else None

        self.composer = PhenomenonComposer()
        self.allocator = TableAllocator(self.settings.max_field_by_table)
        self.merge = MergeEngine(self.settings, self.composer, self.allocator)
        self.assembler = DatasetAssembler(self.settings, self.composer, self.allocator)
        self.evaluator = FilterEvaluator(self.settings)

    @classmethod
    def in_memory(cls, settings: ObsSpineSettings | None = None) -> ObservationStore:
        """Fresh store on a private in-memory SQLite database, schema created."""
        settings = settings or get_settings()
        store = cls(settings, engine=create_obs_engine("sqlite:///:memory:"))
        store.init_schema()
        return store

    def init_schema(self) -> None:
        ObsBase.metadata.create_all(self.engine)
        logger.debug("schema_created", url=str(self.engine.url))

    def close(self) -> None:
        self.engine.dispose()

    # ── Transactions ─────────────────────────────────────────────────────

    @contextlib.contextmanager
    def transaction(self, operation: str) -> Iterator[Session]:
        guard = self._connection_lock if self._connection_lock is not None else contextlib.nullcontext()
        with guard:
            session = self._sessions()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("storage_failed", operation=operation, error=str(exc))
                raise StorageError(f"{operation} failed: {exc}", cause=exc).with_context(
                    operation=operation
                ) from exc
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

    def _all_procedure_ids(self) -> list[str]:
        with self.transaction("list_procedures") as session:
            return list(session.scalars(select(ProcedureTable.id).order_by(ProcedureTable.id)))

    # =========================================================================
    # Writes
    # =========================================================================

    def write_observation(self, observation: Observation) -> str:
        """Merge one observation into the store and return its identifier.

        All-or-nothing: a ValidationError leaves the store untouched.
        """
        if observation.procedure is None or not observation.procedure.id:
            raise ValidationError("observation has no procedure", constraint="procedure_required")
        proc_id = observation.procedure.id
        with LogContext(procedure=proc_id), self.locks.hold(proc_id):
            with self.transaction("write_observation") as session:
                return self.merge.write(session, observation)

    def write_observations(self, observations: Iterable[Observation]) -> list[str]:
        """Write each observation as its own unit; stops at the first failure."""
        return [self.write_observation(obs) for obs in observations]

    def write_procedure(self, procedure: Procedure) -> str:
        """Register or update procedure metadata without writing data."""
        with LogContext(procedure=procedure.id), self.locks.hold(procedure.id):
            with self.transaction("write_procedure") as session:
                row = save_procedure(session, procedure)
                for location in procedure.locations:
                    record_location(session, procedure.id, location.time, location.geometry, location.srid)
                if procedure.geometry is not None and not procedure.locations:
                    geometry, row.srid = normalize_geometry(procedure.geometry, procedure.srid)
                    row.shape = to_wkb(geometry)
        logger.info("procedure_written", procedure=procedure.id)
        return procedure.id

    def write_phenomenons(self, phenomena: Iterable[Phenomenon]) -> list[str]:
        ids = []
        with self.transaction("write_phenomenons") as session:
            for phen in phenomena:
                save_phenomenon(session, phen)
                ids.append(phen.id)
        logger.info("phenomena_written", phenomena=ids)
        return ids

    def record_procedure_location(
        self,
        procedure_id: str,
        time: datetime.datetime,
        geometry: BaseGeometry,
        srid: int | None = None,
        axis_order: str = "lonlat",
    ) -> bool:
        """Append to the procedure's location history. Returns False for a known instant."""
        with self.locks.hold(procedure_id), self.transaction("record_procedure_location") as session:
            if session.get(ProcedureTable, procedure_id) is None:
                raise NotFoundError("procedure", procedure_id)
            return record_location(session, procedure_id, time, geometry, srid, axis_order)

    def get_locations(
        self,
        procedure_id: str,
        time: Time | None = None,
        decimation_size: int | None = None,
    ) -> list[Location]:
        """Location history of a procedure, oldest first, optionally thinned."""
        with self.transaction("get_locations") as session:
            if session.get(ProcedureTable, procedure_id) is None:
                raise NotFoundError("procedure", procedure_id)
            stmt = select(HistoricalLocationTable).where(HistoricalLocationTable.procedure == procedure_id)
            if time is not None:
                stmt = stmt.where(HistoricalLocationTable.time >= time.begin, HistoricalLocationTable.time <= time.end)
            rows = session.scalars(stmt.order_by(HistoricalLocationTable.time))
            locations = [Location(row.time, from_wkb(row.shape), row.srid) for row in rows]
        if decimation_size is not None:
            locations = LocationDecimator(decimation_size).decimate(locations)
        return locations

    # =========================================================================
    # Observation reads
    # =========================================================================

    def _candidates(self, session: Session, node: Filter | None, procedure: str | None = None) -> list[ObservationTable]:
        stmt = select(ObservationTable).where(FilterCompiler(session, self.settings).compile(node))
        if procedure is not None:
            stmt = stmt.where(ObservationTable.procedure == procedure)
        return list(session.scalars(stmt.order_by(ObservationTable.time_begin, ObservationTable.id)))

    def _matching(self, session: Session, node: Filter | None) -> list[Observation]:
        """Observations with at least one row (or, rowless, themselves) matching ``node``."""
        reader = ObservationReader(session, self.settings)
        out = []
        for obs in reader.observations(self._candidates(session, node)):
            rows = obs.result.rows if isinstance(obs.result, ComplexResult) else None
            if rows:
                kept = self.evaluator.filter_rows(node, obs, rows)
                if kept:
                    out.append(obs.with_result(ComplexResult(obs.result.fields, [r for _, r in kept])))
            elif self.evaluator.matches(node, obs):
                out.append(obs)
        return out

    def _select(self, query: ObservationQuery) -> list[Observation]:
        with self.transaction("get_observations") as session:
            if query.mode is ResponseMode.RESULT_TEMPLATE:
                found = self._templates(session, query)
            elif query.kind is EntityKind.MEASUREMENT:
                found = self._measurements(session, query)
            else:
                found = self._inline(session, query)
        found.sort(key=lambda o: o.id or "")
        return found

    def get_observations(self, query: ObservationQuery | None = None) -> list[Observation]:
        query = query or ObservationQuery()
        found = self._select(query)
        return page(found, query.limit, query.offset)

    def get_identifiers(self, query: ObservationQuery | None = None) -> list[str]:
        return [obs.id for obs in self.get_observations(query)]

    def get_count(self, query: ObservationQuery | None = None) -> int:
        return len(self._select(query or ObservationQuery()))

    def _inline(self, session: Session, query: ObservationQuery) -> list[Observation]:
        reader = ObservationReader(session, self.settings)
        out: list[Observation] = []
        for obs in reader.observations(self._candidates(session, query.filter)):
            rows = obs.result.rows if isinstance(obs.result, ComplexResult) else []
            kept = self.evaluator.filter_rows(query.filter, obs, rows)
            if not kept and (rows or not self.evaluator.matches(query.filter, obs)):
                continue
            fields = select_fields(
                obs.result.fields if obs.result is not None else [],
                quality=query.include_quality_fields,
                parameter=query.include_parameter_fields,
            )
            result = ComplexResult(fields, project([r for _, r in kept], fields)) if fields else None
            out.append(obs.with_result(result))
        if not query.separated_profile_observation:
            out = self._join_profiles(out)
        if query.separated_measure:
            out = [part for obs in out for part in self._split_fields(obs)]
        return out

    @staticmethod
    def _join_profiles(observations: list[Observation]) -> list[Observation]:
        """One observation per (procedure, feature) for profiles, rows tagged with their time."""
        joined: dict[tuple[str, str | None], Observation] = {}
        out: list[Observation] = []
        for obs in observations:
            if obs.procedure.om_type is not ObservationType.PROFILE or not isinstance(obs.result, ComplexResult):
                out.append(obs)
                continue
            at = obs.sampling_time.begin if obs.sampling_time is not None else None
            rows = [{**r, PROFILE_TIME_COLUMN: at} for r in obs.result.rows or []]
            key = (obs.procedure.id, obs.feature_of_interest.id if obs.feature_of_interest else None)
            first = joined.get(key)
            if first is None:
                joined[key] = obs.with_result(ComplexResult(obs.result.fields, rows))
                out.append(joined[key])
            else:
                first.result.rows.extend(rows)
                first.result.nb_values = len(first.result.rows)
                first.sampling_time = union_time(first.sampling_time, obs.sampling_time)
        return out

    def _split_fields(self, obs: Observation) -> list[Observation]:
        """One observation per data field, id ``<observation>-<fieldIndex>``."""
        if not isinstance(obs.result, ComplexResult) or len(obs.result.fields) < 2:
            return [obs]
        main = obs.result.main_field
        out = []
        for f, index in self._indexed_fields(obs):
            fields = [main, f]
            rows = [r for r in project(obs.result.rows or [], fields) if r.get(f.name) is not None]
            if not rows:
                continue
            part = obs.with_result(ComplexResult(fields, rows))
            part.id = f"{obs.id}-{index}"
            part.name = part.id
            part.observed_property = self._leaf_for(obs.observed_property, f)
            out.append(part)
        return out

    def _indexed_fields(self, obs: Observation) -> list[tuple[Field, int]]:
        """Data fields of the result with their 1-based ledger position (main field is 1).

        ``position - 2`` is the field's index in ``result[i]`` paths.
        """
        order = {f.name: i for i, f in enumerate(obs.procedure.fields, start=1)}
        return [(f, order.get(f.name, i)) for i, f in enumerate(obs.result.fields[1:], start=2)]

    def _leaf_for(self, phenomenon: Phenomenon | None, f: Field) -> Phenomenon:
        base = self.settings.phenomenon_id_base
        if phenomenon is not None:
            for leaf in phenomenon.leaves():
                if field_for_phenomenon(leaf.id, base) == f.name:
                    return leaf
        return Phenomenon.simple(f.name, name=f.label or f.name, description=f.description)

    def _measurements(self, session: Session, query: ObservationQuery) -> list[Observation]:
        """One measurement per non-null (row, data field), id ``<obs>-<fieldIndex>-<rowIndex>``."""
        reader = ObservationReader(session, self.settings)
        out = []
        for obs in reader.observations(self._candidates(session, query.filter)):
            if not isinstance(obs.result, ComplexResult):
                continue
            main = obs.result.main_field
            timeseries = main.type is FieldType.TIME
            indexed = self._indexed_fields(obs)
            for row_index, row in enumerate(obs.result.rows or [], start=1):
                at = TimeInstant(row[main.name]) if timeseries else obs.sampling_time
                for f, index in indexed:
                    value = row.get(f.name)
                    if value is None:
                        continue
                    measure_field = select_fields(
                        [f], quality=query.include_quality_fields, parameter=query.include_parameter_fields
                    )[0]
                    measurement = Observation(
                        procedure=obs.procedure,
                        observed_property=self._leaf_for(obs.observed_property, f),
                        feature_of_interest=obs.feature_of_interest,
                        sampling_time=at,
                        result=MeasureResult(measure_field, value, index - 2),
                        id=f"{obs.id}-{index}-{row_index}",
                        name=f"{obs.id}-{index}-{row_index}",
                    )
                    if self.evaluator.matches(query.filter, measurement, row_index=row_index):
                        out.append(measurement)
        return out

    def _templates(self, session: Session, query: ObservationQuery) -> list[Observation]:
        if query.filter is None:
            procedure_ids = list(session.scalars(select(ProcedureTable.id)))
            matching: dict[str, list[Observation]] = {}
        else:
            matching = {}
            for obs in self._matching(session, query.filter):
                matching.setdefault(obs.procedure.id, []).append(obs)
            procedure_ids = sorted(matching)
            # result paths select templates through their rows only; other
            # template-level matches (template resource ids) need no observation
            if not references_result(query.filter):
                procedure_ids = sorted(set(procedure_ids) | set(self._template_hits(session, query.filter)))

        out = []
        for proc_id in procedure_ids:
            template = self.assembler.template(
                session,
                proc_id,
                include_foi=query.include_foi_in_template,
                include_time=query.include_time_in_template,
                include_quality=query.include_quality_fields,
                include_parameter=query.include_parameter_fields,
            )
            if template is None:
                continue
            if query.kind is EntityKind.MEASUREMENT:
                out.extend(self._measurement_templates(template))
            else:
                out.append(template)
        return out

    def _template_hits(self, session: Session, node: Filter) -> list[str]:
        hits = []
        for proc_id in session.scalars(select(ProcedureTable.id)):
            template = self.assembler.template(session, proc_id)
            if template is not None and self.evaluator.matches(node, template):
                hits.append(proc_id)
        return hits

    def _measurement_templates(self, template: Observation) -> list[Observation]:
        if not isinstance(template.result, ComplexResult):
            return []
        out = []
        for f, index in self._indexed_fields(template):
            out.append(Observation(
                procedure=template.procedure,
                observed_property=self._leaf_for(template.observed_property, f),
                feature_of_interest=template.feature_of_interest,
                sampling_time=template.sampling_time,
                result=MeasureResult(f, None, index - 2),
                id=f"{template.id}-{index}",
                name=f"{template.id}-{index}",
            ))
        return out

    # =========================================================================
    # Results
    # =========================================================================

    def get_results(self, query: ResultQuery) -> ComplexResult | MeasureResult | None:
        """Rows of one procedure in the requested format.

        With ``kind=measurement`` the first matching measurement's result is
        returned, or None.
        """
        if query.kind is EntityKind.MEASUREMENT:
            measurements = self.get_observations(ObservationQuery(
                kind=EntityKind.MEASUREMENT,
                filter=query.filter,
                include_quality_fields=query.include_quality_fields,
                include_parameter_fields=query.include_parameter_fields,
            ))
            mine = [m for m in measurements if m.procedure.id == query.procedure]
            return mine[0].result if mine else None

        with self.transaction("get_results") as session:
            procedure = load_procedure(session, query.procedure)
            if procedure is None:
                raise NotFoundError("procedure", query.procedure).with_context(operation="get_results")
            reader = ObservationReader(session, self.settings)
            observations = reader.observations(self._candidates(session, query.filter, query.procedure))

        profile = procedure.om_type is ObservationType.PROFILE
        fields = select_fields(
            procedure.fields, quality=query.include_quality_fields, parameter=query.include_parameter_fields
        )
        if not fields:
            return ComplexResult([], [], nb_values=0, values="0" if query.format is ResultFormat.COUNT else None)

        groups = self._result_groups(query, observations, profile)
        include_time = profile and query.include_time_for_profile
        if query.decimation_size is not None:
            decimator = ResultDecimator(fields, query.decimation_size, procedure.id)
            if decimator.needed(groups):
                rows = decimator.decimate_groups(groups)
                fields = decimator.fields
            else:
                rows = [r for g in groups for r in g]
        else:
            rows = [r for g in groups for r in g]

        names = columns(fields, include_id=query.include_id, include_time=include_time)
        out_fields = result_fields(fields, include_id=query.include_id, include_time=include_time)
        logger.debug("results_built", procedure=procedure.id, rows=len(rows), format=query.format.value)

        if query.format is ResultFormat.COUNT:
            return ComplexResult(out_fields, None, nb_values=len(rows), values=str(len(rows)))
        if query.format is ResultFormat.RESULT_ARRAY:
            return ComplexResult(out_fields, rows, nb_values=len(rows), data_array=to_array(names, rows))
        if query.format is ResultFormat.CSV_FLAT:
            phenomena = self._field_phenomena(observations, fields)
            text = to_csv_flat(procedure, fields, rows, phenomena, profile=profile, encoding=query.encoding)
            return ComplexResult(out_fields, rows, nb_values=len(rows), values=text)
        return ComplexResult(out_fields, rows, nb_values=len(rows), values=to_csv(names, rows, query.encoding))

    def _result_groups(self, query: ResultQuery, observations: Sequence[Observation], profile: bool) -> list[list[Row]]:
        """Filtered rows tagged with their id; one group per profile, one overall for time series."""
        groups: list[list[Row]] = []
        for obs in observations:
            rows = obs.result.rows if isinstance(obs.result, ComplexResult) else []
            group = []
            for index, row in self.evaluator.filter_rows(query.filter, obs, rows or []):
                tagged = dict(row)
                tagged[ID_COLUMN] = f"{obs.id}-{index}"
                if profile:
                    tagged[PROFILE_TIME_COLUMN] = obs.sampling_time.begin if obs.sampling_time else None
                group.append(tagged)
            if group:
                groups.append(group)
        if profile or not groups:
            return groups
        main = observations[0].procedure.main_field.name
        merged = [r for g in groups for r in g]
        merged.sort(key=lambda r: r[main])
        return [merged]

    def _field_phenomena(self, observations: Sequence[Observation], fields: Sequence[Field]) -> dict[str, Phenomenon]:
        base = self.settings.phenomenon_id_base
        found: dict[str, Phenomenon] = {}
        for obs in observations:
            if obs.observed_property is None:
                continue
            for leaf in obs.observed_property.leaves():
                found.setdefault(field_for_phenomenon(leaf.id, base), leaf)
        return {f.name: found[f.name] for f in fields if f.name in found}

    # =========================================================================
    # Entity listings
    # =========================================================================

    def get_phenomenon(self, query: EntityQuery | None = None) -> list[Phenomenon]:
        """Phenomena referenced by matching observations (all stored ones without a filter)."""
        query = query or EntityQuery()
        with self.transaction("get_phenomenon") as session:
            if query.filter is None:
                ids = list(session.scalars(select(PhenomenonTable.id)))
                found = [p for p in (load_phenomenon(session, i) for i in ids) if p is not None]
            else:
                found = {}
                for obs in self._matching(session, query.filter):
                    if obs.observed_property is not None:
                        found[obs.observed_property.id] = obs.observed_property
                found = list(found.values())
        if query.no_composite_phenomenon:
            leaves: dict[str, Phenomenon] = {}
            for phen in found:
                for leaf in phen.leaves():
                    leaves.setdefault(leaf.id, leaf)
            found = list(leaves.values())
        found.sort(key=lambda p: p.id)
        return page(found, query.limit, query.offset)

    def get_procedures(self, query: EntityQuery | None = None) -> list[Procedure]:
        query = query or EntityQuery()
        with self.transaction("get_procedures") as session:
            if query.filter is None:
                ids = list(session.scalars(select(ProcedureTable.id)))
            else:
                ids = list({obs.procedure.id for obs in self._matching(session, query.filter)})
            found = [p for p in (load_procedure(session, i, with_locations=True) for i in ids) if p is not None]
        found.sort(key=lambda p: p.id)
        return page(found, query.limit, query.offset)

    def get_feature_of_interest(self, query: EntityQuery | None = None) -> list[SamplingFeature]:
        query = query or EntityQuery()
        with self.transaction("get_feature_of_interest") as session:
            if query.filter is None:
                ids = list(session.scalars(select(SamplingFeatureTable.id)))
            else:
                ids = list({
                    obs.feature_of_interest.id
                    for obs in self._matching(session, query.filter)
                    if obs.feature_of_interest is not None
                })
            found = [f for f in (load_feature(session, i) for i in ids) if f is not None]
        found.sort(key=lambda f: f.id)
        return page(found, query.limit, query.offset)

    def get_offerings(self, query: EntityQuery | None = None) -> list[Offering]:
        query = query or EntityQuery()
        with self.transaction("get_offerings") as session:
            stmt = select(OfferingTable)
            if query.filter is not None:
                procs = sorted({obs.procedure.id for obs in self._matching(session, query.filter)})
                stmt = stmt.where(OfferingTable.procedure.in_(procs))
            found = [load_offering(session, row) for row in session.scalars(stmt)]
        found.sort(key=lambda o: o.id)
        return page(found, query.limit, query.offset)

    def exist_entity(self, kind: EntityType | str, identifier: str) -> bool:
        try:
            kind = EntityType(kind)
        except ValueError as exc:
            raise ValidationError(f"unknown entity kind {kind!r}", field="kind", value=kind,
                                  constraint="entity_kind", cause=exc) from exc
        with self.transaction("exist_entity") as session:
            if kind is EntityType.PROCEDURE:
                return session.get(ProcedureTable, identifier) is not None
            if kind is EntityType.PHENOMENON:
                return phenomenon_exists(session, identifier)
            if kind is EntityType.FEATURE_OF_INTEREST:
                return session.get(SamplingFeatureTable, identifier) is not None
            if kind is EntityType.OFFERING:
                return session.get(OfferingTable, identifier) is not None
            return session.scalar(
                select(ObservationTable.id).where(ObservationTable.identifier == identifier)
            ) is not None

    # =========================================================================
    # Templates, extracts, removals
    # =========================================================================

    def get_template(
        self, procedure_id: str, *, include_foi: bool = True, include_time: bool = True
    ) -> Observation | None:
        with self.transaction("get_template") as session:
            return self.assembler.template(session, procedure_id, include_foi=include_foi,
                                           include_time=include_time)

    def extract_results(self, query: DatasetQuery | None = None) -> DatasetExtract:
        with self.transaction("extract_results") as session:
            return self.assembler.extract(session, query or DatasetQuery())

    def remove_dataset(self, query: DatasetQuery) -> list[str]:
        procedures = list(query.procedures) or self._all_procedure_ids()
        with self.locks.hold_many(procedures), self.transaction("remove_dataset") as session:
            removed = self.assembler.remove_dataset(session, query)
        self._forget_removed(procedures)
        return removed

    def remove_phenomenon(self, phenomenon_id: str) -> bool:
        procedures = self._all_procedure_ids()
        with self.locks.hold_many(procedures):
            with self.transaction("remove_phenomenon") as session:
                removed = self.assembler.remove_phenomenon(session, phenomenon_id)
        self._forget_removed(procedures)
        return removed

    def remove_procedure(self, procedure_id: str) -> bool:
        with self.locks.hold(procedure_id), self.transaction("remove_procedure") as session:
            removed = self.assembler.remove_procedure(session, procedure_id)
        self.locks.discard(procedure_id)
        return removed

    def _forget_removed(self, procedures: Iterable[str]) -> None:
        """Drop the locks of procedures a removal deleted."""
        for proc_id in set(procedures) - set(self._all_procedure_ids()):
            self.locks.discard(proc_id)

    # =========================================================================
    # Statistics
    # =========================================================================

    def stats(self) -> dict[str, int]:
        tables: dict[str, Any] = {
            "procedures": ProcedureTable,
            "fields": ProcedureFieldTable,
            "phenomena": PhenomenonTable,
            "features": SamplingFeatureTable,
            "observations": ObservationTable,
            "rows": MeasureRowTable,
            "offerings": OfferingTable,
        }
        with self.transaction("stats") as session:
            return {
                name: session.scalar(select(func.count()).select_from(table)) or 0
                for name, table in tables.items()
            }


__all__ = ["ObservationStore"]
