"""SQLAlchemy 2.0 ORM table definitions for the observation store.

Column conventions:

* ``shape`` columns hold WKB bytes, always in lon/lat axis order, with the
  EPSG code in the sibling ``srid`` column.
* ``time_begin`` / ``time_end``: ``time_end`` is NULL for an instant.
* ``om_measure_rows.cells`` is a JSON object keyed by ledger column name.
  One row exists per (observation, table number, row key); a logical row
  is the outer join of those partial rows on the key.

Tags:
    orm, sqlalchemy, tables, schema-mapping

Usage::

    from obspine.core.orm import ObsBase, create_obs_engine

    engine = create_obs_engine("sqlite:///obspine.db")
    ObsBase.metadata.create_all(engine)
"""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from obspine.core.orm.base import ObsBase


# =============================================================================
# Procedures and their field ledger
# =============================================================================


class ProcedureTable(ObsBase):
    __tablename__ = "om_procedures"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    sensor_type: Mapped[str] = mapped_column(Text, default="system", nullable=False)
    om_type: Mapped[str | None] = mapped_column(Text)
    parent: Mapped[str | None] = mapped_column(Text)
    shape: Mapped[bytes | None] = mapped_column(LargeBinary)
    srid: Mapped[int | None] = mapped_column(Integer)
    nb_table: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ProcedureFieldTable(ObsBase):
    """Append-only ledger: one row per physical column of a procedure."""

    __tablename__ = "om_procedure_fields"
    __table_args__ = (
        UniqueConstraint("procedure", "name", name="uq_procedure_field_name"),
        Index("ix_procedure_fields_order", "procedure", "order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    procedure: Mapped[str] = mapped_column(
        Text, ForeignKey("om_procedures.id", ondelete="CASCADE"), nullable=False
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    field_type: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    uom: Mapped[str | None] = mapped_column(Text)
    parent: Mapped[str | None] = mapped_column(Text)
    sub_kind: Mapped[str] = mapped_column(Text, default="measure", nullable=False)
    table_number: Mapped[int] = mapped_column(Integer, nullable=False)
    column_index: Mapped[int] = mapped_column(Integer, nullable=False)


class HistoricalLocationTable(ObsBase):
    __tablename__ = "om_historical_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    procedure: Mapped[str] = mapped_column(
        Text, ForeignKey("om_procedures.id", ondelete="CASCADE"), nullable=False
    )
    time: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    shape: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    srid: Mapped[int] = mapped_column(Integer, nullable=False)


# =============================================================================
# Phenomena
# =============================================================================


class PhenomenonTable(ObsBase):
    __tablename__ = "om_phenomena"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text)
    definition: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)

    # --- relationships ---
    components: Mapped[list[ComponentTable]] = relationship(
        "ComponentTable",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="ComponentTable.order",
    )


class ComponentTable(ObsBase):
    __tablename__ = "om_components"

    phenomenon: Mapped[str] = mapped_column(
        Text, ForeignKey("om_phenomena.id", ondelete="CASCADE"), primary_key=True
    )
    component: Mapped[str] = mapped_column(Text, primary_key=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False)

    parent: Mapped[PhenomenonTable] = relationship("PhenomenonTable", back_populates="components")


class PhenomenonSequenceTable(ObsBase):
    """Naming ledger for generated composite ids, one row per base."""

    __tablename__ = "om_phenomenon_sequences"

    base: Mapped[str] = mapped_column(Text, primary_key=True)
    generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# =============================================================================
# Features of interest and free-form properties
# =============================================================================


class SamplingFeatureTable(ObsBase):
    __tablename__ = "om_sampling_features"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    sampled_feature: Mapped[str | None] = mapped_column(Text)
    shape: Mapped[bytes | None] = mapped_column(LargeBinary)
    srid: Mapped[int | None] = mapped_column(Integer)


class EntityPropertyTable(ObsBase):
    """Multimap of free-form metadata: several rows may share (kind, id, key)."""

    __tablename__ = "om_entity_properties"
    __table_args__ = (Index("ix_entity_properties_lookup", "entity_kind", "entity_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_kind: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)


# =============================================================================
# Observations and measures
# =============================================================================


class ObservationTable(ObsBase):
    __tablename__ = "om_observations"
    __table_args__ = (Index("ix_observations_procedure_foi", "procedure", "foi"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # assigned right after the first flush when the writer gave no name
    identifier: Mapped[str | None] = mapped_column(Text, unique=True)
    time_begin: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    time_end: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    observed_property: Mapped[str | None] = mapped_column(Text)
    procedure: Mapped[str] = mapped_column(Text, ForeignKey("om_procedures.id"), nullable=False)
    foi: Mapped[str | None] = mapped_column(Text)


class MeasureRowTable(ObsBase):
    __tablename__ = "om_measure_rows"
    __table_args__ = (
        UniqueConstraint("observation_id", "table_number", "row_key", name="uq_measure_row_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("om_observations.id", ondelete="CASCADE"), nullable=False
    )
    table_number: Mapped[int] = mapped_column(Integer, nullable=False)
    row_key: Mapped[float] = mapped_column(Float, nullable=False)
    time: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    cells: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


# =============================================================================
# Offerings
# =============================================================================


class OfferingTable(ObsBase):
    __tablename__ = "om_offerings"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    procedure: Mapped[str] = mapped_column(
        Text, ForeignKey("om_procedures.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    time_begin: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    time_end: Mapped[datetime.datetime | None] = mapped_column(DateTime)


class OfferingPhenomenonTable(ObsBase):
    __tablename__ = "om_offering_phenomena"

    offering: Mapped[str] = mapped_column(
        Text, ForeignKey("om_offerings.id", ondelete="CASCADE"), primary_key=True
    )
    phenomenon: Mapped[str] = mapped_column(Text, primary_key=True)


class OfferingFeatureTable(ObsBase):
    __tablename__ = "om_offering_features"

    offering: Mapped[str] = mapped_column(
        Text, ForeignKey("om_offerings.id", ondelete="CASCADE"), primary_key=True
    )
    foi: Mapped[str] = mapped_column(Text, primary_key=True)
