"""
Phenomenon Composer: builds and tears down composite phenomena.

Manifesto:
    An observation points at exactly one phenomenon. When a procedure
    starts measuring a new field, the phenomenon it points at has to grow;
    when a field is removed, it has to shrink. Ids of generated composites
    come from an explicit naming ledger (``om_phenomenon_sequences``), so
    regeneration is deterministic and never depends on ambient state.

Architecture:
    ::

        compose_for(current, incoming)
            current is None ............ incoming (1 field → simple)
            incoming ⊆ current ......... current, unchanged
            otherwise .................. union = current + new, in order
                ├─ writer-supplied phenomenon with that leaf set → it
                ├─ stored composite with that component set      → it
                └─ new composite, id from the naming ledger

        decompose(phenomenon, removed)
            0 counted components left ... None
            1 component left ............ that simple phenomenon
            otherwise ................... stored equal composite, or new id

Naming:
    first generation   computed-phen-<base>
    later generations  computed-phen-<base>-<n>

Tags:
    phenomenon, composite, naming-ledger
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from obspine.core.logging import get_logger
from obspine.core.orm import (
    ComponentTable,
    ObservationTable,
    OfferingPhenomenonTable,
    PhenomenonSequenceTable,
    PhenomenonTable,
)
from obspine.om.entities import delete_phenomenon, load_phenomenon, save_phenomenon
from obspine.om.model import Phenomenon, PhenomenonKind

logger = get_logger(__name__)

COMPUTED_PREFIX = "computed-phen-"
_GENERATION = re.compile(r"^(.*)-(\d+)$")


def union_components(current: Phenomenon | None, incoming: Sequence[Phenomenon]) -> list[Phenomenon]:
    """Existing components keep their order; unseen incoming ones are appended."""
    union: list[Phenomenon] = []
    if current is not None:
        union.extend(current.components if current.is_composite else (current,))
    known = {p.id for p in union}
    for phen in incoming:
        if phen.id not in known:
            union.append(phen)
            known.add(phen.id)
    return union


class PhenomenonComposer:
    """Composes phenomena for writes and decomposes them on removal."""

    # ── Lookups ──────────────────────────────────────────────────────────

    def find_composite(self, session: Session, component_ids: Iterable[str]) -> Phenomenon | None:
        """Stored composite whose component set is exactly ``component_ids``."""
        ids = sorted(set(component_ids))
        if not ids:
            return None
        matched = func.sum(case((ComponentTable.component.in_(ids), 1), else_=0))
        stmt = (
            select(ComponentTable.phenomenon)
            .group_by(ComponentTable.phenomenon)
            .having(func.count() == len(ids))
            .having(matched == len(ids))
            .order_by(ComponentTable.phenomenon)
            .limit(1)
        )
        found = session.scalar(stmt)
        return load_phenomenon(session, found) if found else None

    def next_composite_id(self, session: Session, base: str) -> str:
        seq = session.get(PhenomenonSequenceTable, base)
        if seq is None:
            seq = PhenomenonSequenceTable(base=base, generation=0)
            session.add(seq)
            candidate = f"{COMPUTED_PREFIX}{base}"
        else:
            seq.generation += 1
            candidate = f"{COMPUTED_PREFIX}{base}-{seq.generation}"
        while session.get(PhenomenonTable, candidate) is not None:
            seq.generation += 1
            candidate = f"{COMPUTED_PREFIX}{base}-{seq.generation}"
        session.flush()
        return candidate

    def peek_composite_id(self, session: Session, base: str) -> str:
        """The id the next generation would get, without consuming it."""
        seq = session.get(PhenomenonSequenceTable, base)
        if seq is None:
            return f"{COMPUTED_PREFIX}{base}"
        return f"{COMPUTED_PREFIX}{base}-{seq.generation + 1}"

    def base_of(self, session: Session, composite_id: str) -> str:
        """Naming base to regenerate from when ``composite_id`` is decomposed."""
        if not composite_id.startswith(COMPUTED_PREFIX):
            return composite_id
        rest = composite_id[len(COMPUTED_PREFIX):]
        m = _GENERATION.match(rest)
        if m and session.get(PhenomenonSequenceTable, m.group(1)) is not None:
            return m.group(1)
        return rest

    # ── Compose ──────────────────────────────────────────────────────────

    def compose_for(
        self,
        session: Session,
        base: str,
        incoming: Sequence[Phenomenon],
        current: Phenomenon | None = None,
        supplied: Phenomenon | None = None,
    ) -> Phenomenon:
        """Phenomenon an observation must reference after a write.

        Args:
            base: naming base (procedure id without the sensor id base)
            incoming: simple phenomena of the written fields, in field order
            current: phenomenon the procedure/observation references today
            supplied: phenomenon the writer attached to the observation
        """
        incoming_ids = {p.id for p in incoming}
        if current is not None and incoming_ids <= set(current.component_ids):
            return current

        union = union_components(current, incoming)
        union_ids = {p.id for p in union}

        if supplied is not None and set(supplied.leaf_ids()) == union_ids:
            save_phenomenon(session, supplied)
            return load_phenomenon(session, supplied.id) or supplied

        if len(union) == 1:
            save_phenomenon(session, union[0])
            return load_phenomenon(session, union[0].id) or union[0]

        existing = self.find_composite(session, union_ids)
        if existing is not None:
            logger.debug("composite_reused", phenomenon=existing.id)
            return existing

        composite = Phenomenon.composite(self.next_composite_id(session, base), union)
        save_phenomenon(session, composite)
        logger.info(
            "composite_created",
            phenomenon=composite.id,
            previous=current.id if current else None,
            components=list(composite.component_ids),
        )
        return composite

    def union_view(self, session: Session, base: str, phenomena: Sequence[Phenomenon]) -> Phenomenon | None:
        """Read-only union of several phenomena (template assembly).

        Returns the most complete phenomenon when it already covers every
        other one, a stored composite with the exact union, or an unsaved
        composite carrying the id the next generation would get.
        """
        if not phenomena:
            return None
        union: list[Phenomenon] = []
        for phen in phenomena:
            for comp in phen.components if phen.is_composite else (phen,):
                if all(comp.id != u.id for u in union):
                    union.append(comp)
        union_ids = {p.id for p in union}
        for phen in sorted(phenomena, key=lambda p: (-len(p.component_ids), p.id)):
            if set(phen.component_ids) == union_ids:
                return phen
        existing = self.find_composite(session, union_ids)
        if existing is not None:
            return existing
        return Phenomenon.composite(self.peek_composite_id(session, base), union)

    # ── Decompose ────────────────────────────────────────────────────────

    def decompose(
        self,
        session: Session,
        phenomenon: Phenomenon,
        removed_id: str,
        uncounted: Iterable[str] = (),
        replaced: Mapping[str, Phenomenon | None] | None = None,
    ) -> Phenomenon | None:
        """Phenomenon left once ``removed_id`` is taken out of ``phenomenon``.

        ``uncounted`` ids (a profile's main field) stay in the composite but
        do not count toward the collapse decision. ``replaced`` maps nested
        composites already decomposed to their successor (None when nothing
        of them is left); those components are swapped for it.
        """
        if phenomenon.kind is PhenomenonKind.SIMPLE:
            return None if phenomenon.id == removed_id else phenomenon
        if phenomenon.id == removed_id:
            return None

        swaps: dict[str, Phenomenon | None] = dict(replaced or {})
        swaps[removed_id] = None
        remaining: list[Phenomenon] = []
        changed = False
        for comp in phenomenon.components:
            if comp.id in swaps:
                changed = True
                comp = swaps[comp.id]
                if comp is None:
                    continue
            if all(comp.id != r.id for r in remaining):
                remaining.append(comp)
        if not changed:
            return phenomenon
        skip = set(uncounted)
        if not [c for c in remaining if c.id not in skip]:
            return None
        if len(remaining) == 1:
            return remaining[0]

        existing = self.find_composite(session, (c.id for c in remaining))
        if existing is not None and existing.id != phenomenon.id:
            return existing
        composite = Phenomenon.composite(
            self.next_composite_id(session, self.base_of(session, phenomenon.id)), remaining
        )
        save_phenomenon(session, composite)
        logger.info("composite_decomposed", previous=phenomenon.id, phenomenon=composite.id,
                    removed=removed_id)
        return composite

    # ── Orphans ──────────────────────────────────────────────────────────

    def is_referenced(self, session: Session, phenomenon_id: str) -> bool:
        checks = (
            select(ObservationTable.id).where(ObservationTable.observed_property == phenomenon_id),
            select(OfferingPhenomenonTable.offering).where(OfferingPhenomenonTable.phenomenon == phenomenon_id),
            select(ComponentTable.phenomenon).where(ComponentTable.component == phenomenon_id),
        )
        return any(session.scalar(stmt.limit(1)) is not None for stmt in checks)

    def delete_if_orphan(self, session: Session, phenomenon_id: str | None) -> bool:
        if phenomenon_id is None or session.get(PhenomenonTable, phenomenon_id) is None:
            return False
        session.flush()
        if self.is_referenced(session, phenomenon_id):
            return False
        delete_phenomenon(session, phenomenon_id)
        logger.info("phenomenon_orphan_deleted", phenomenon=phenomenon_id)
        return True


__all__ = ["COMPUTED_PREFIX", "PhenomenonComposer", "union_components"]
