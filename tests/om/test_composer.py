"""Tests for obspine.om.composer: composite phenomena and the naming ledger."""

import pytest

from obspine.om.composer import PhenomenonComposer, union_components
from obspine.om.entities import load_phenomenon, save_phenomenon
from obspine.om.model import Phenomenon, PhenomenonKind

TEMP = Phenomenon.simple("temperature")
SAL = Phenomenon.simple("salinity")
OXY = Phenomenon.simple("oxygen")


@pytest.fixture
def session(store):
    with store.transaction("test") as s:
        yield s


@pytest.fixture
def composer():
    return PhenomenonComposer()


class TestUnionComponents:
    def test_existing_order_kept_new_appended(self):
        current = Phenomenon.composite("c", [SAL, TEMP])
        assert [p.id for p in union_components(current, [TEMP, OXY])] == ["salinity", "temperature", "oxygen"]

    def test_simple_current(self):
        assert [p.id for p in union_components(TEMP, [SAL])] == ["temperature", "salinity"]

    def test_no_current(self):
        assert [p.id for p in union_components(None, [TEMP, TEMP])] == ["temperature"]


class TestComposeFor:
    def test_single_field_is_simple(self, session, composer):
        phen = composer.compose_for(session, "ts-1", [TEMP])
        assert phen.kind is PhenomenonKind.SIMPLE
        assert load_phenomenon(session, "temperature") is not None

    def test_subset_keeps_current(self, session, composer):
        current = composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert composer.compose_for(session, "ts-1", [SAL], current) == current

    def test_first_generation_name(self, session, composer):
        phen = composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert phen.id == "computed-phen-ts-1"
        assert phen.component_ids == ("temperature", "salinity")

    def test_extension_gets_next_generation(self, session, composer):
        first = composer.compose_for(session, "ts-1", [TEMP, SAL])
        second = composer.compose_for(session, "ts-1", [OXY], first)
        assert second.id == "computed-phen-ts-1-1"
        assert second.component_ids == ("temperature", "salinity", "oxygen")

    def test_stored_composite_reused(self, session, composer):
        first = composer.compose_for(session, "ts-1", [TEMP, SAL])
        other = composer.compose_for(session, "ts-2", [SAL, TEMP])
        assert other.id == first.id

    def test_supplied_phenomenon_wins(self, session, composer):
        supplied = Phenomenon.composite("ctd", [TEMP, SAL], name="CTD")
        phen = composer.compose_for(session, "ts-1", [TEMP, SAL], None, supplied)
        assert phen.id == "ctd"
        assert load_phenomenon(session, "ctd").name == "CTD"

    def test_naming_skips_taken_ids(self, session, composer):
        save_phenomenon(session, Phenomenon.composite("computed-phen-ts-1-1", [OXY, SAL]))
        composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert composer.next_composite_id(session, "ts-1") == "computed-phen-ts-1-2"


class TestUnionView:
    def test_covering_phenomenon_returned(self, session, composer):
        big = Phenomenon.composite("big", [TEMP, SAL])
        assert composer.union_view(session, "ts-1", [TEMP, big]) is big

    def test_unsaved_composite_peeks_next_id(self, session, composer):
        view = composer.union_view(session, "ts-1", [TEMP, SAL])
        assert view.id == "computed-phen-ts-1"
        assert load_phenomenon(session, view.id) is None

    def test_empty(self, session, composer):
        assert composer.union_view(session, "ts-1", []) is None


class TestDecompose:
    def test_two_components_collapse_to_simple(self, session, composer):
        comp = composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert composer.decompose(session, comp, "salinity") == TEMP

    def test_remaining_composite_is_regenerated_from_base(self, session, composer):
        comp = composer.compose_for(session, "ts-1", [TEMP, SAL, OXY])
        left = composer.decompose(session, comp, "oxygen")
        assert left.id == "computed-phen-ts-1-1"
        assert left.component_ids == ("temperature", "salinity")

    def test_only_uncounted_left(self, session, composer):
        depth = Phenomenon.simple("depth")
        comp = composer.compose_for(session, "pr-1", [depth, TEMP])
        assert composer.decompose(session, comp, "temperature", uncounted=["depth"]) is None

    def test_unrelated_removal(self, session, composer):
        comp = composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert composer.decompose(session, comp, "oxygen") is comp

    def test_simple_removed(self, session, composer):
        assert composer.decompose(session, TEMP, "temperature") is None


class TestOrphans:
    def test_delete_if_orphan(self, session, composer):
        save_phenomenon(session, OXY)
        assert composer.delete_if_orphan(session, "oxygen")
        assert load_phenomenon(session, "oxygen") is None

    def test_component_is_referenced(self, session, composer):
        composer.compose_for(session, "ts-1", [TEMP, SAL])
        assert not composer.delete_if_orphan(session, "temperature")

    def test_unknown(self, session, composer):
        assert not composer.delete_if_orphan(session, "nope")
        assert not composer.delete_if_orphan(session, None)
