"""Derived offerings: one published view per procedure.

An offering is never edited directly. ``refresh_offering`` recomputes it
from the procedure's observations after every mutation.
"""

from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from obspine.core.orm import (
    ObservationTable,
    OfferingFeatureTable,
    OfferingPhenomenonTable,
    OfferingTable,
    ProcedureTable,
)
from obspine.om.model import Offering, build_time


def procedure_suffix(procedure_id: str, sensor_id_base: str) -> str:
    if sensor_id_base and procedure_id.startswith(sensor_id_base):
        return procedure_id[len(sensor_id_base):]
    return procedure_id


def offering_id(procedure_id: str, sensor_id_base: str) -> str:
    return "offering-" + procedure_suffix(procedure_id, sensor_id_base).replace(":", "-")


def refresh_offering(session: Session, procedure_id: str, sensor_id_base: str) -> None:
    """Recompute time extent, phenomenon ids and feature ids of the procedure's offering."""
    proc = session.get(ProcedureTable, procedure_id)
    if proc is None:
        return
    session.flush()
    oid = offering_id(procedure_id, sensor_id_base)
    row = session.get(OfferingTable, oid)
    if row is None:
        row = OfferingTable(id=oid, procedure=procedure_id, name=oid,
                            description=f"Offering for procedure {procedure_id}")
        session.add(row)

    begin, end_max, begin_max = session.execute(
        select(
            func.min(ObservationTable.time_begin),
            func.max(ObservationTable.time_end),
            func.max(ObservationTable.time_begin),
        ).where(ObservationTable.procedure == procedure_id)
    ).one()
    ends = [t for t in (end_max, begin_max) if t is not None]
    row.time_begin = begin
    row.time_end = max(ends) if ends else None

    session.execute(delete(OfferingPhenomenonTable).where(OfferingPhenomenonTable.offering == oid))
    session.execute(delete(OfferingFeatureTable).where(OfferingFeatureTable.offering == oid))
    session.flush()
    phenomena = session.scalars(
        select(ObservationTable.observed_property)
        .where(ObservationTable.procedure == procedure_id, ObservationTable.observed_property.is_not(None))
        .distinct()
    ).all()
    features = session.scalars(
        select(ObservationTable.foi)
        .where(ObservationTable.procedure == procedure_id, ObservationTable.foi.is_not(None))
        .distinct()
    ).all()
    for phen in sorted(phenomena):
        session.add(OfferingPhenomenonTable(offering=oid, phenomenon=phen))
    for foi in sorted(features):
        session.add(OfferingFeatureTable(offering=oid, foi=foi))
    session.flush()


def delete_offering(session: Session, procedure_id: str) -> None:
    ids = session.scalars(select(OfferingTable.id).where(OfferingTable.procedure == procedure_id)).all()
    for oid in ids:
        session.execute(delete(OfferingPhenomenonTable).where(OfferingPhenomenonTable.offering == oid))
        session.execute(delete(OfferingFeatureTable).where(OfferingFeatureTable.offering == oid))
    session.execute(delete(OfferingTable).where(OfferingTable.procedure == procedure_id))


def load_offering(session: Session, row: OfferingTable) -> Offering:
    phenomena = session.scalars(
        select(OfferingPhenomenonTable.phenomenon)
        .where(OfferingPhenomenonTable.offering == row.id)
        .order_by(OfferingPhenomenonTable.phenomenon)
    ).all()
    features = session.scalars(
        select(OfferingFeatureTable.foi)
        .where(OfferingFeatureTable.offering == row.id)
        .order_by(OfferingFeatureTable.foi)
    ).all()
    return Offering(
        id=row.id,
        procedure=row.procedure,
        name=row.name,
        description=row.description,
        time=build_time(row.time_begin, row.time_end),
        observed_properties=tuple(phenomena),
        features_of_interest=tuple(features),
    )


__all__ = ["delete_offering", "load_offering", "offering_id", "procedure_suffix", "refresh_offering"]
