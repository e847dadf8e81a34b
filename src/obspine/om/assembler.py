"""
Template/Dataset Assembler and removal cascades.

Manifesto:
    Reads that are not plain row queries live here: templates (the shape
    of a procedure's data, without rows), dataset extracts, and the
    removals that walk the reference graph backwards.

Removal cascades:
    ::

        remove_dataset(query)
          observations ─► rows ─► procedures with no observation left
                                ─► features with no observation left
                                ─► offerings refreshed
          (phenomena stay: no field was removed)

        remove_phenomenon(id)
          observations on id ────────────► deleted, fields released
          composites containing id ──────► decomposed
              observations re-pointed, column data dropped, fields released
          id and the replaced composites ► deleted
          procedures with no data field or no observation left ► removed

Guardrails:
    ❌ DON'T: Call these outside one transaction, a cascade is one unit
    ✅ DO: Go through ``ObservationStore``, which also holds the procedure locks

Tags:
    template, extract, removal, orphan-cleanup
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from obspine.core.logging import get_logger
from obspine.core.orm import (
    MeasureRowTable,
    ObservationTable,
    OfferingTable,
    PhenomenonTable,
    ProcedureTable,
)
from obspine.core.settings import ObsSpineSettings
from obspine.om.allocator import TableAllocator
from obspine.om.composer import PhenomenonComposer
from obspine.om.entities import (
    composites_containing,
    delete_feature,
    delete_phenomenon,
    delete_procedure_metadata,
    load_phenomenon,
    load_procedure,
)
from obspine.om.fields import Field
from obspine.om.geometry import union_bounds
from obspine.om.merge import field_for_phenomenon
from obspine.om.model import (
    ComplexResult,
    DatasetExtract,
    Observation,
    ObservationType,
    Phenomenon,
    build_time,
    union_time,
)
from obspine.om.offerings import delete_offering, procedure_suffix, refresh_offering
from obspine.om.queries import DatasetQuery
from obspine.om.reader import ObservationReader

logger = get_logger(__name__)


def select_fields(fields: list[Field], *, quality: bool = True, parameter: bool = True) -> list[Field]:
    """Drop quality and/or parameter sub-fields from every field."""
    if quality and parameter:
        return list(fields)
    return [f.without_sub_fields(quality=not quality, parameter=not parameter) for f in fields]


class DatasetAssembler:
    def __init__(
        self,
        settings: ObsSpineSettings,
        composer: PhenomenonComposer | None = None,
        allocator: TableAllocator | None = None,
    ):
        self.settings = settings
        self.composer = composer or PhenomenonComposer()
        self.allocator = allocator or TableAllocator(settings.max_field_by_table)

    def template_id(self, procedure_id: str) -> str:
        return self.settings.observation_template_id_base + procedure_suffix(
            procedure_id, self.settings.sensor_id_base
        )

    # ── Templates ────────────────────────────────────────────────────────

    def template(
        self,
        session: Session,
        procedure_id: str,
        *,
        include_foi: bool = True,
        include_time: bool = True,
        include_quality: bool = True,
        include_parameter: bool = True,
    ) -> Observation | None:
        """No-data skeleton of the procedure's observations, or None for an unknown procedure.

        The feature of interest is included only when the procedure used a
        single one. Varying phenomena are presented as their union.
        """
        procedure = load_procedure(session, procedure_id)
        if procedure is None:
            return None
        foi_ids = session.scalars(
            select(ObservationTable.foi)
            .where(ObservationTable.procedure == procedure_id, ObservationTable.foi.is_not(None))
            .distinct()
        ).all()
        phenomena = [
            p for p in (
                load_phenomenon(session, pid)
                for pid in sorted(session.scalars(
                    select(ObservationTable.observed_property)
                    .where(ObservationTable.procedure == procedure_id,
                           ObservationTable.observed_property.is_not(None))
                    .distinct()
                ))
            ) if p is not None
        ]
        base = procedure_suffix(procedure_id, self.settings.sensor_id_base)
        phenomenon = self.composer.union_view(session, base, phenomena)

        reader = ObservationReader(session, self.settings)
        feature = reader.feature(foi_ids[0]) if include_foi and len(foi_ids) == 1 else None
        time = None
        if include_time:
            offering = session.scalar(select(OfferingTable).where(OfferingTable.procedure == procedure_id))
            if offering is not None:
                time = build_time(offering.time_begin, offering.time_end)
        fields = select_fields(procedure.fields, quality=include_quality, parameter=include_parameter)
        tid = self.template_id(procedure_id)
        return Observation(
            procedure=procedure,
            observed_property=phenomenon,
            feature_of_interest=feature,
            sampling_time=time,
            result=ComplexResult(fields) if fields else None,
            id=tid,
            name=tid,
        )

    # ── Dataset selection and extraction ─────────────────────────────────

    def _selection(self, session: Session, query: DatasetQuery):
        stmt = select(ObservationTable)
        if query.procedures:
            stmt = stmt.where(ObservationTable.procedure.in_(list(query.procedures)))
        if query.features_of_interest:
            stmt = stmt.where(ObservationTable.foi.in_(list(query.features_of_interest)))
        if query.observed_properties:
            ids = set(query.observed_properties)
            for pid in query.observed_properties:
                ids.update(composites_containing(session, pid))
            stmt = stmt.where(ObservationTable.observed_property.in_(sorted(ids)))
        if query.time is not None:
            end = func.coalesce(ObservationTable.time_end, ObservationTable.time_begin)
            stmt = stmt.where(ObservationTable.time_begin <= query.time.end, end >= query.time.begin)
        return stmt.order_by(ObservationTable.identifier)

    def extract(self, session: Session, query: DatasetQuery) -> DatasetExtract:
        reader = ObservationReader(session, self.settings)
        observations = reader.observations(session.scalars(self._selection(session, query)))
        extract = DatasetExtract(observations=observations)
        seen_phen, seen_foi, seen_proc = set(), set(), set()
        for obs in observations:
            phen = obs.observed_property
            if phen is not None and phen.id not in seen_phen:
                seen_phen.add(phen.id)
                extract.phenomenons.append(phen)
            foi = obs.feature_of_interest
            if foi is not None and foi.id not in seen_foi:
                seen_foi.add(foi.id)
                extract.features_of_interest.append(foi)
            if obs.procedure.id not in seen_proc:
                seen_proc.add(obs.procedure.id)
                extract.procedures.append(obs.procedure)
            extract.time_bound = union_time(extract.time_bound, obs.sampling_time)
        extract.spatial_bound = union_bounds([f.geometry for f in extract.features_of_interest])
        return extract

    # ── Removal ──────────────────────────────────────────────────────────

    def remove_dataset(self, session: Session, query: DatasetQuery) -> list[str]:
        """Delete the selected observations and clean up what they leave behind."""
        targets = list(session.scalars(self._selection(session, query)))
        removed = [t.identifier for t in targets]
        procedures = {t.procedure for t in targets}
        features = {t.foi for t in targets if t.foi is not None}
        self._delete_observations(session, targets)
        for proc_id in sorted(procedures):
            if not self._drop_if_unused(session, proc_id):
                refresh_offering(session, proc_id, self.settings.sensor_id_base)
        self._drop_orphan_features(session, features)
        logger.info("dataset_removed", observations=len(removed), procedures=sorted(procedures))
        return removed

    def remove_procedure(self, session: Session, procedure_id: str) -> bool:
        if session.get(ProcedureTable, procedure_id) is None:
            return False
        targets = list(session.scalars(
            select(ObservationTable).where(ObservationTable.procedure == procedure_id)
        ))
        features = {t.foi for t in targets if t.foi is not None}
        self._delete_observations(session, targets)
        self._drop_procedure(session, procedure_id)
        self._drop_orphan_features(session, features)
        logger.info("procedure_removed", procedure=procedure_id, observations=len(targets))
        return True

    def remove_phenomenon(self, session: Session, phenomenon_id: str) -> bool:
        phenomenon = load_phenomenon(session, phenomenon_id)
        if phenomenon is None:
            return False
        base = self.settings.phenomenon_id_base
        removed_fields = {field_for_phenomenon(pid, base) for pid in phenomenon.leaf_ids()}
        procedures: set[str] = set()
        features: set[str] = set()
        released: dict[str, set[str]] = {}

        def release(proc_id: str) -> set[str]:
            if proc_id not in released:
                released[proc_id] = set(self._release_fields(session, proc_id, removed_fields))
            return released[proc_id]

        direct = list(session.scalars(
            select(ObservationTable).where(ObservationTable.observed_property == phenomenon_id)
        ))
        direct_procedures = {obs.procedure for obs in direct}
        procedures |= direct_procedures
        features.update(obs.foi for obs in direct if obs.foi is not None)
        self._delete_observations(session, direct)
        for proc_id in sorted(direct_procedures):
            release(proc_id)

        known = set(session.scalars(select(PhenomenonTable.id)))
        replaced = []
        successors: dict[str, Phenomenon | None] = {}
        affected, nested = self._affected_composites(session, phenomenon_id)
        for composite in affected:
            replaced.append(composite.id)
            if composite.id in nested:
                # parents swap this composite for its successor
                successors[composite.id] = self.composer.decompose(
                    session, composite, phenomenon_id, (), successors
                )
            referencing = list(session.scalars(
                select(ObservationTable)
                .where(ObservationTable.observed_property == composite.id)
                .order_by(ObservationTable.id)
            ))
            by_procedure: dict[str, list[ObservationTable]] = {}
            for obs in referencing:
                by_procedure.setdefault(obs.procedure, []).append(obs)
            for proc_id, observations in sorted(by_procedure.items()):
                procedures.add(proc_id)
                uncounted = self._uncounted(session, proc_id, composite)
                successor = self.composer.decompose(session, composite, phenomenon_id, uncounted, successors)
                self._drop_columns(session, proc_id, observations, release(proc_id))
                if successor is None:
                    features.update(o.foi for o in observations if o.foi is not None)
                    self._delete_observations(session, observations)
                else:
                    for obs in observations:
                        obs.observed_property = successor.id

        session.flush()
        for proc_id in sorted(procedures):
            if not self._drop_if_unused(session, proc_id):
                refresh_offering(session, proc_id, self.settings.sensor_id_base)
        for composite_id in replaced:
            delete_phenomenon(session, composite_id)
        delete_phenomenon(session, phenomenon_id)
        for successor in successors.values():
            if successor is not None and successor.id not in known:
                self.composer.delete_if_orphan(session, successor.id)
        self._drop_orphan_features(session, features)
        logger.info(
            "phenomenon_removed",
            phenomenon=phenomenon_id,
            composites=replaced,
            procedures=sorted(procedures),
        )
        return True

    # ── Helpers ──────────────────────────────────────────────────────────

    def _affected_composites(self, session: Session, phenomenon_id: str) -> tuple[list[Phenomenon], set[str]]:
        """Composites holding ``phenomenon_id`` at any depth, innermost first.

        The second item holds the ids that are themselves a component of
        another affected composite.
        """
        children: dict[str, set[str]] = {}
        frontier = [phenomenon_id]
        while frontier:
            child = frontier.pop()
            for parent in composites_containing(session, child):
                if parent not in children:
                    children[parent] = set()
                    frontier.append(parent)
                children[parent].add(child)
        nested = {c for kids in children.values() for c in kids if c != phenomenon_id}

        ordered: list[Phenomenon] = []
        done = {phenomenon_id}
        pending = dict(children)
        while pending:
            ready = sorted(c for c, kids in pending.items() if kids <= done) or sorted(pending)
            for composite_id in ready:
                del pending[composite_id]
                done.add(composite_id)
                composite = load_phenomenon(session, composite_id)
                if composite is not None:
                    ordered.append(composite)
        return ordered, nested

    def _uncounted(self, session: Session, procedure_id: str, composite: Phenomenon) -> list[str]:
        """Component ids standing for a profile's main field."""
        procedure = load_procedure(session, procedure_id)
        if procedure is None or procedure.om_type is not ObservationType.PROFILE or procedure.main_field is None:
            return []
        base = self.settings.phenomenon_id_base
        main = procedure.main_field.name
        return [c for c in composite.component_ids if field_for_phenomenon(c, base) == main]

    def _release_fields(self, session: Session, procedure_id: str, names: Iterable[str]) -> list[str]:
        released = []
        for name in sorted(names):
            released.extend(self.allocator.release(session, procedure_id, name))
        return released

    def _drop_columns(
        self, session: Session, procedure_id: str, observations: list[ObservationTable], columns: set[str]
    ) -> None:
        """Strip released columns from the partial rows; drop partials left empty."""
        if not columns:
            return
        ids = [o.id for o in observations]
        partials = list(session.scalars(select(MeasureRowTable).where(MeasureRowTable.observation_id.in_(ids))))
        by_key: dict[tuple[int, float], list[MeasureRowTable]] = {}
        for partial in partials:
            if partial.cells and columns & set(partial.cells):
                partial.cells = {k: v for k, v in partial.cells.items() if k not in columns}
            by_key.setdefault((partial.observation_id, partial.row_key), []).append(partial)
        for group in by_key.values():
            if all(not p.cells for p in group):
                for p in group:
                    session.delete(p)
            else:
                for p in group:
                    if not p.cells and p.table_number != 1:
                        session.delete(p)
        session.flush()
        logger.debug("columns_dropped", procedure=procedure_id, columns=sorted(columns))

    def _delete_observations(self, session: Session, observations: list[ObservationTable]) -> None:
        if not observations:
            return
        ids = [o.id for o in observations]
        session.execute(delete(MeasureRowTable).where(MeasureRowTable.observation_id.in_(ids)))
        session.execute(delete(ObservationTable).where(ObservationTable.id.in_(ids)))

    def _drop_if_unused(self, session: Session, procedure_id: str) -> bool:
        """Remove a procedure left without observation or without data field."""
        if session.get(ProcedureTable, procedure_id) is None:
            return True
        has_obs = session.scalar(
            select(ObservationTable.id).where(ObservationTable.procedure == procedure_id).limit(1)
        ) is not None
        procedure = load_procedure(session, procedure_id)
        if has_obs and procedure.data_fields:
            return False
        if has_obs:
            self._delete_observations(session, list(session.scalars(
                select(ObservationTable).where(ObservationTable.procedure == procedure_id)
            )))
        self._drop_procedure(session, procedure_id)
        return True

    def _drop_procedure(self, session: Session, procedure_id: str) -> None:
        delete_offering(session, procedure_id)
        delete_procedure_metadata(session, procedure_id)
        session.flush()
        logger.debug("procedure_dropped", procedure=procedure_id)

    def _drop_orphan_features(self, session: Session, feature_ids: Iterable[str]) -> None:
        for fid in sorted(set(feature_ids)):
            used = session.scalar(select(ObservationTable.id).where(ObservationTable.foi == fid).limit(1))
            if used is None:
                delete_feature(session, fid)
                logger.debug("feature_orphan_deleted", feature=fid)


def phenomenon_exists(session: Session, phenomenon_id: str) -> bool:
    return session.get(PhenomenonTable, phenomenon_id) is not None


__all__ = ["DatasetAssembler", "phenomenon_exists", "select_fields"]
