"""Persistence of the metadata entities: phenomena, features, procedures.

Every function takes the caller's session and never commits; the store
owns transaction boundaries.
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from obspine.core.logging import get_logger
from obspine.core.orm import (
    ComponentTable,
    EntityPropertyTable,
    HistoricalLocationTable,
    PhenomenonTable,
    ProcedureFieldTable,
    ProcedureTable,
    SamplingFeatureTable,
)
from obspine.om.fields import Field, FieldKind, FieldType
from obspine.om.geometry import from_wkb, normalize_geometry, to_wkb
from obspine.om.model import (
    Location,
    ObservationType,
    Phenomenon,
    PhenomenonKind,
    Procedure,
    Properties,
    SamplingFeature,
    SensorType,
)

logger = get_logger(__name__)

PROCEDURE = "procedure"
PHENOMENON = "phenomenon"
FEATURE = "featureOfInterest"


# ── Properties multimap ──────────────────────────────────────────────────


def load_properties(session: Session, kind: str, entity_id: str) -> Properties:
    rows = session.scalars(
        select(EntityPropertyTable)
        .where(EntityPropertyTable.entity_kind == kind, EntityPropertyTable.entity_id == entity_id)
        .order_by(EntityPropertyTable.id)
    )
    grouped: dict[str, list[str]] = defaultdict(list)
    for row in rows:
        grouped[row.key].append(row.value)
    return {k: tuple(v) for k, v in grouped.items()}


def save_properties(session: Session, kind: str, entity_id: str, properties: Properties) -> None:
    """Replace the entity's properties. An empty mapping leaves them untouched."""
    if not properties:
        return
    delete_properties(session, kind, entity_id)
    for key, values in properties.items():
        for value in values:
            session.add(EntityPropertyTable(entity_kind=kind, entity_id=entity_id, key=key, value=value))


def delete_properties(session: Session, kind: str, entity_id: str) -> None:
    session.execute(
        delete(EntityPropertyTable).where(
            EntityPropertyTable.entity_kind == kind, EntityPropertyTable.entity_id == entity_id
        )
    )


# ── Phenomena ────────────────────────────────────────────────────────────


def load_phenomenon(session: Session, phenomenon_id: str | None) -> Phenomenon | None:
    if phenomenon_id is None:
        return None
    return _load_phenomenon(session, phenomenon_id, set())


def _load_phenomenon(session: Session, phenomenon_id: str, seen: set[str]) -> Phenomenon | None:
    row = session.get(PhenomenonTable, phenomenon_id)
    if row is None:
        return None
    props = load_properties(session, PHENOMENON, phenomenon_id)
    comp_ids = session.scalars(
        select(ComponentTable.component)
        .where(ComponentTable.phenomenon == phenomenon_id)
        .order_by(ComponentTable.order)
    ).all()
    if not comp_ids:
        return Phenomenon.simple(row.id, row.name, row.definition, row.description, props)
    seen = seen | {phenomenon_id}
    components = []
    for comp_id in comp_ids:
        comp = None if comp_id in seen else _load_phenomenon(session, comp_id, seen)
        components.append(comp or Phenomenon.simple(comp_id))
    return Phenomenon.composite(row.id, components, row.name, row.definition, row.description, props)


def save_phenomenon(session: Session, phenomenon: Phenomenon) -> None:
    """Insert the phenomenon and any missing component. Existing rows are kept as-is."""
    for comp in phenomenon.components:
        save_phenomenon(session, comp)
    if session.get(PhenomenonTable, phenomenon.id) is not None:
        return
    row = PhenomenonTable(
        id=phenomenon.id,
        name=phenomenon.name,
        definition=phenomenon.definition,
        description=phenomenon.description,
    )
    if phenomenon.kind is PhenomenonKind.COMPOSITE:
        row.components = [
            ComponentTable(component=comp.id, order=order)
            for order, comp in enumerate(phenomenon.components, start=1)
        ]
    session.add(row)
    save_properties(session, PHENOMENON, phenomenon.id, phenomenon.properties)
    session.flush()
    logger.debug("phenomenon_created", phenomenon=phenomenon.id, kind=phenomenon.kind.value,
                 components=list(phenomenon.component_ids) if phenomenon.is_composite else None)


def delete_phenomenon(session: Session, phenomenon_id: str) -> None:
    session.execute(delete(ComponentTable).where(ComponentTable.phenomenon == phenomenon_id))
    session.execute(delete(PhenomenonTable).where(PhenomenonTable.id == phenomenon_id))
    delete_properties(session, PHENOMENON, phenomenon_id)
    logger.debug("phenomenon_deleted", phenomenon=phenomenon_id)


def composites_containing(session: Session, component_id: str) -> list[str]:
    return list(session.scalars(
        select(ComponentTable.phenomenon)
        .where(ComponentTable.component == component_id)
        .order_by(ComponentTable.phenomenon)
    ))


# ── Features of interest ─────────────────────────────────────────────────


def load_feature(session: Session, feature_id: str | None) -> SamplingFeature | None:
    if feature_id is None:
        return None
    row = session.get(SamplingFeatureTable, feature_id)
    if row is None:
        return None
    return SamplingFeature(
        id=row.id,
        name=row.name,
        description=row.description,
        sampled_feature=row.sampled_feature,
        geometry=from_wkb(row.shape),
        srid=row.srid or 4326,
        properties=load_properties(session, FEATURE, row.id),
    )


def save_feature(session: Session, feature: SamplingFeature) -> None:
    """Insert a feature of interest. A known id keeps its stored definition."""
    if session.get(SamplingFeatureTable, feature.id) is not None:
        return
    shape, srid = None, feature.srid
    if feature.geometry is not None:
        geom, srid = normalize_geometry(feature.geometry, feature.srid, feature.axis_order)
        shape = to_wkb(geom)
    session.add(SamplingFeatureTable(
        id=feature.id,
        name=feature.name,
        description=feature.description,
        sampled_feature=feature.sampled_feature,
        shape=shape,
        srid=srid,
    ))
    save_properties(session, FEATURE, feature.id, feature.properties)
    session.flush()


def delete_feature(session: Session, feature_id: str) -> None:
    session.execute(delete(SamplingFeatureTable).where(SamplingFeatureTable.id == feature_id))
    delete_properties(session, FEATURE, feature_id)


# ── Procedures ───────────────────────────────────────────────────────────


def ledger_rows(session: Session, procedure_id: str) -> list[ProcedureFieldTable]:
    return list(session.scalars(
        select(ProcedureFieldTable)
        .where(ProcedureFieldTable.procedure == procedure_id)
        .order_by(ProcedureFieldTable.order)
    ))


def fields_from_ledger(rows: Iterable[ProcedureFieldTable]) -> list[Field]:
    """Rebuild the ordered Field list (sub-fields nested) from ledger rows."""
    measures: dict[str, dict] = {}
    for row in rows:
        if row.sub_kind == FieldKind.MEASURE.value:
            measures[row.name] = {
                "row": row, "quality": [], "parameter": [],
            }
    for row in rows:
        if row.sub_kind == FieldKind.MEASURE.value or row.parent not in measures:
            continue
        prefix = f"{row.parent}_{row.sub_kind}_"
        sub = Field(
            row.name[len(prefix):] if row.name.startswith(prefix) else row.name,
            FieldType(row.field_type),
            uom=row.uom,
            label=row.label,
            description=row.description,
        )
        measures[row.parent][row.sub_kind].append(sub)
    fields = []
    for entry in measures.values():
        row = entry["row"]
        fields.append(Field(
            row.name,
            FieldType(row.field_type),
            uom=row.uom,
            label=row.label,
            description=row.description,
            quality_fields=tuple(entry["quality"]),
            parameter_fields=tuple(entry["parameter"]),
        ))
    return fields


def load_procedure(session: Session, procedure_id: str | None, *, with_locations: bool = False) -> Procedure | None:
    if procedure_id is None:
        return None
    row = session.get(ProcedureTable, procedure_id)
    if row is None:
        return None
    procedure = Procedure(
        id=row.id,
        name=row.name,
        description=row.description,
        sensor_type=SensorType(row.sensor_type),
        om_type=ObservationType(row.om_type) if row.om_type else None,
        parent=row.parent,
        properties=load_properties(session, PROCEDURE, row.id),
        geometry=from_wkb(row.shape),
        srid=row.srid or 4326,
        fields=fields_from_ledger(ledger_rows(session, row.id)),
    )
    if with_locations:
        locs = session.scalars(
            select(HistoricalLocationTable)
            .where(HistoricalLocationTable.procedure == row.id)
            .order_by(HistoricalLocationTable.time)
        )
        procedure.locations = [Location(loc.time, from_wkb(loc.shape), loc.srid) for loc in locs]
    return procedure


def save_procedure(session: Session, procedure: Procedure) -> ProcedureTable:
    """Insert or update procedure metadata. Unset attributes keep stored values."""
    row = session.get(ProcedureTable, procedure.id)
    if row is None:
        row = ProcedureTable(id=procedure.id, sensor_type=procedure.sensor_type.value, nb_table=0)
        session.add(row)
    else:
        row.sensor_type = procedure.sensor_type.value
    if procedure.name is not None:
        row.name = procedure.name
    if procedure.description is not None:
        row.description = procedure.description
    if procedure.parent is not None:
        row.parent = procedure.parent
    if procedure.om_type is not None and row.om_type is None:
        row.om_type = procedure.om_type.value
    save_properties(session, PROCEDURE, procedure.id, procedure.properties)
    session.flush()
    return row


def record_location(
    session: Session,
    procedure_id: str,
    time: datetime.datetime,
    geometry,
    srid: int | None = None,
    axis_order: str = "lonlat",
) -> bool:
    """Append a location to the history if it differs from the current one."""
    row = session.get(ProcedureTable, procedure_id)
    if row is None:
        return False
    geom, srid = normalize_geometry(geometry, srid, axis_order)
    shape = to_wkb(geom)
    exists = session.scalar(
        select(HistoricalLocationTable.id).where(
            HistoricalLocationTable.procedure == procedure_id,
            HistoricalLocationTable.time == time,
        )
    )
    if exists is None:
        session.add(HistoricalLocationTable(procedure=procedure_id, time=time, shape=shape, srid=srid))
    latest = session.scalar(
        select(HistoricalLocationTable.time)
        .where(HistoricalLocationTable.procedure == procedure_id)
        .order_by(HistoricalLocationTable.time.desc())
        .limit(1)
    )
    if latest is None or latest <= time:
        row.shape = shape
        row.srid = srid
    session.flush()
    return exists is None


def delete_procedure_metadata(session: Session, procedure_id: str) -> None:
    session.execute(delete(ProcedureFieldTable).where(ProcedureFieldTable.procedure == procedure_id))
    session.execute(delete(HistoricalLocationTable).where(HistoricalLocationTable.procedure == procedure_id))
    delete_properties(session, PROCEDURE, procedure_id)
    session.execute(delete(ProcedureTable).where(ProcedureTable.id == procedure_id))


__all__ = [
    "FEATURE",
    "PHENOMENON",
    "PROCEDURE",
    "composites_containing",
    "delete_feature",
    "delete_phenomenon",
    "delete_procedure_metadata",
    "delete_properties",
    "fields_from_ledger",
    "ledger_rows",
    "load_feature",
    "load_phenomenon",
    "load_procedure",
    "load_properties",
    "record_location",
    "save_feature",
    "save_phenomenon",
    "save_procedure",
    "save_properties",
]
