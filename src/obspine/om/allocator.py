"""
Table/Field Allocator: places a procedure's columns into bounded-width tables.

Manifesto:
    A procedure may measure more fields than one physical table should
    carry. Columns are spread over numbered tables, each holding at most
    ``max_field_by_table`` data columns next to the main (key) column.

    The placement is an append-only ledger. A column, once placed, keeps
    its (table, column) pair forever; new columns only ever go to the last
    table or to a freshly opened one.

Architecture:
    ::

        ledger (om_procedure_fields)
        ┌───────┬──────────────────────────┬───────┬────────┐
        │ order │ column                   │ table │ column │
        ├───────┼──────────────────────────┼───────┼────────┤
        │   1   │ time (main, every table) │   1   │   0    │
        │   2   │ temperature              │   1   │   1    │
        │   3   │ temperature_quality_flag │   1   │   2    │
        │   4   │ salinity                 │   2   │   1    │  ← table 1 full
        └───────┴──────────────────────────┴───────┴────────┘

    A field and the sub-field columns it introduces are placed together.
    When they do not fit in the room left, a new table is opened. A group
    wider than the whole budget gets a table of its own.

Tags:
    allocation, ledger, append-only, multi-table
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.orm import Session

from obspine.core.errors import ValidationError
from obspine.core.logging import get_logger
from obspine.core.orm import ProcedureFieldTable, ProcedureTable
from obspine.om.entities import ledger_rows
from obspine.om.fields import Column, Field, FieldKind, FieldType, columns_of

logger = get_logger(__name__)


@dataclass(frozen=True)
class Placement:
    """Where one physical column lives."""

    column: str
    field_type: FieldType
    table_number: int
    column_index: int
    order: int
    kind: FieldKind = FieldKind.MEASURE
    parent: str | None = None
    uom: str | None = None
    label: str | None = None
    description: str | None = None

    @property
    def is_main(self) -> bool:
        return self.order == 1


class TableAllocator:
    """Plans and persists column placements for procedures."""

    def __init__(self, max_field_by_table: int = 10):
        if max_field_by_table < 1:
            raise ValidationError("max_field_by_table must be at least 1", constraint="table_budget")
        self.max_field_by_table = max_field_by_table

    # ── Pure planning ────────────────────────────────────────────────────

    def plan(self, existing: Sequence[Placement], main: Field, fields: Sequence[Field]) -> list[Placement]:
        """New placements needed for ``main`` + ``fields`` given the ledger.

        Raises ValidationError when a known column is written with another type.
        """
        known = {p.column: p for p in existing}
        added: list[Placement] = []
        order = max((p.order for p in existing), default=0)

        main_placement = next((p for p in existing if p.is_main), None)
        if main_placement is None:
            order += 1
            main_placement = Placement(main.name, main.type, 1, 0, order, uom=main.uom,
                                       label=main.label, description=main.description)
            added.append(main_placement)
        elif main_placement.column != main.name or main_placement.field_type is not main.type:
            raise ValidationError(
                f"main field {main.name!r} ({main.type.value}) does not match the procedure's "
                f"main field {main_placement.column!r} ({main_placement.field_type.value})",
                field=main.name,
                constraint="main_field",
            )

        data = [p for p in existing if not p.is_main]
        table = max((p.table_number for p in data), default=1)
        # append after the highest slot still taken; gaps left by a removal stay unused
        used = max((p.column_index for p in data if p.table_number == table), default=0)

        for f in fields:
            if f.name == main.name:
                continue
            fresh: list[Column] = []
            for col in columns_of(f):
                placed = known.get(col.name)
                if placed is None:
                    fresh.append(col)
                elif placed.field_type is not col.type:
                    raise ValidationError(
                        f"field {col.name!r} is stored as {placed.field_type.value}, got {col.type.value}",
                        field=col.name,
                        value=col.type.value,
                        constraint="field_type",
                    )
            if not fresh:
                continue
            if used and used + len(fresh) > self.max_field_by_table:
                table += 1
                used = 0
                logger.debug("measure_table_opened", table=table, field=f.name)
            for col in fresh:
                order += 1
                used += 1
                placement = Placement(
                    col.name, col.type, table, used, order, col.kind, col.parent,
                    col.uom, col.label, col.description,
                )
                added.append(placement)
                known[col.name] = placement
        return added

    # ── Persistence ──────────────────────────────────────────────────────

    def placements(self, session: Session, procedure_id: str) -> list[Placement]:
        return [
            Placement(
                row.name, FieldType(row.field_type), row.table_number, row.column_index, row.order,
                FieldKind(row.sub_kind), row.parent, row.uom, row.label, row.description,
            )
            for row in ledger_rows(session, procedure_id)
        ]

    def allocate(self, session: Session, procedure_id: str, main: Field, fields: Sequence[Field]) -> dict[str, Placement]:
        """Extend the procedure's ledger for the given fields and return the full placement map."""
        existing = self.placements(session, procedure_id)
        added = self.plan(existing, main, fields)
        for p in added:
            session.add(ProcedureFieldTable(
                procedure=procedure_id,
                order=p.order,
                name=p.column,
                field_type=p.field_type.value,
                label=p.label,
                description=p.description,
                uom=p.uom,
                parent=p.parent,
                sub_kind=p.kind.value,
                table_number=p.table_number,
                column_index=p.column_index,
            ))
        if added:
            proc = session.get(ProcedureTable, procedure_id)
            if proc is not None:
                proc.nb_table = max(p.table_number for p in [*existing, *added])
            session.flush()
            logger.debug("columns_allocated", procedure=procedure_id,
                         columns=[(p.column, p.table_number, p.column_index) for p in added])
        return {p.column: p for p in [*existing, *added]}

    def release(self, session: Session, procedure_id: str, field_name: str) -> list[str]:
        """Drop a measure field and its sub-field columns from the ledger.

        Remaining columns keep their table and column index; freed slots
        are not reused.
        """
        removed = []
        for row in ledger_rows(session, procedure_id):
            if row.order != 1 and (row.name == field_name or row.parent == field_name):
                removed.append(row.name)
                session.delete(row)
        session.flush()
        return removed


__all__ = ["Placement", "TableAllocator"]
