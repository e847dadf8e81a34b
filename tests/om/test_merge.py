"""Tests for the observation merge path (ObservationStore.write_observation)."""

import datetime

import pytest
from shapely.geometry import Point

from obspine.core.errors import ValidationError
from obspine.om.fields import Field, FieldType
from obspine.om.merge import MergeEngine, field_for_phenomenon, parse_time
from obspine.om.model import (
    ComplexResult,
    MeasureResult,
    Observation,
    ObservationType,
    Phenomenon,
    Procedure,
    SamplingFeature,
    TimeInstant,
    TimePeriod,
)

T0 = datetime.datetime(2024, 3, 1)
BASE = "urn:ogc:object:sensor:GEOM:"
TS = BASE + "ts-1"


def hour(h: float) -> datetime.datetime:
    return T0 + datetime.timedelta(hours=h)


def only(store):
    found = store.get_observations()
    assert len(found) == 1
    return found[0]


class TestHelpers:
    def test_field_for_phenomenon(self):
        assert field_for_phenomenon("urn:ogc:def:phenomenon:GEOM:temperature", "urn:ogc:def:phenomenon:GEOM:") == "temperature"
        assert field_for_phenomenon("temperature", "urn:ogc:def:phenomenon:GEOM:") == "temperature"

    def test_parse_time(self):
        assert parse_time("2024-03-01T01:00:00+01:00", "time") == T0
        with pytest.raises(ValidationError):
            parse_time("yesterday", "time")


class TestPrepare:
    def test_rows_keyed_sorted_and_folded(self, settings, make_timeseries):
        prep = MergeEngine(settings).prepare(make_timeseries(rows=[
            {"time": hour(2), "temperature": 3.0},
            {"time": hour(0), "temperature": 1.0},
            {"time": hour(2), "temperature": 4.0},
        ]))
        assert [r.time for r in prep.rows] == [hour(0), hour(2)]
        assert prep.rows[1].cells == {"temperature": 4.0}
        assert prep.sampling_time == TimePeriod(hour(0), hour(2))
        assert prep.om_type is ObservationType.TIMESERIES

    def test_profile_keyed_by_depth(self, settings, make_profile):
        prep = MergeEngine(settings).prepare(make_profile(rows=[{"depth": "5", "temperature": 1}]))
        assert [r.key for r in prep.rows] == [5.0]
        assert prep.rows[0].time == T0
        assert prep.om_type is ObservationType.PROFILE

    def test_existing_type_enforced(self, settings, make_profile):
        with pytest.raises(ValidationError):
            MergeEngine(settings).prepare(
                make_profile(rows=[{"depth": 1, "temperature": 1}]), ObservationType.TIMESERIES
            )

    def test_nan_depth_is_a_missing_main_value(self, settings, make_profile):
        with pytest.raises(ValidationError, match="main value"):
            MergeEngine(settings).prepare(make_profile(rows=[{"depth": "NaN", "temperature": 1}]))

    def test_missing_main_value(self, settings, make_timeseries):
        with pytest.raises(ValidationError, match="main value"):
            MergeEngine(settings).prepare(make_timeseries(rows=[{"temperature": 1.0}]))


class TestTimeSeries:
    def test_first_write(self, store, make_timeseries, hourly_rows):
        identifier = store.write_observation(make_timeseries(rows=hourly_rows))
        assert identifier == "urn:ogc:object:observation:GEOM:1"
        obs = only(store)
        assert obs.observed_property.id == "temperature"
        assert obs.sampling_time == TimePeriod(hour(0), hour(9))
        assert [r["temperature"] for r in obs.result.rows] == [10.0 + h for h in range(10)]
        assert obs.procedure.om_type is ObservationType.TIMESERIES

    def test_overlapping_write_merges(self, store, make_timeseries, hourly_rows):
        store.write_observation(make_timeseries(rows=hourly_rows[:6]))
        second = store.write_observation(make_timeseries(rows=hourly_rows[4:]))
        assert second == "urn:ogc:object:observation:GEOM:1"
        obs = only(store)
        assert len(obs.result.rows) == 10
        assert obs.sampling_time == TimePeriod(hour(0), hour(9))

    def test_later_value_wins_per_field(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 2.0}]))
        assert only(store).result.rows[0]["temperature"] == 2.0

    def test_null_and_nan_never_overwrite(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": None}]))
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": float("nan")}]))
        assert only(store).result.rows[0]["temperature"] == 1.0

    def test_nan_text_never_overwrites(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(rows=[
            {"time": hour(0), "temperature": "NaN"},
            {"time": hour(1), "temperature": 2.0},
        ]))
        assert [r["temperature"] for r in only(store).result.rows] == [1.0, 2.0]

    def test_row_without_values_ignored(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[
            {"time": hour(0), "temperature": None},
            {"time": hour(1), "temperature": 1.0},
        ]))
        obs = only(store)
        assert [r["time"] for r in obs.result.rows] == [hour(1)]
        assert obs.sampling_time == TimeInstant(hour(1))

    def test_new_field_extends_phenomenon(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(
            fields=["salinity"], rows=[{"time": hour(1), "salinity": 35.0}],
        ))
        obs = only(store)
        assert obs.observed_property.id == "computed-phen-ts-1"
        assert obs.observed_property.component_ids == ("temperature", "salinity")
        assert [f.name for f in obs.result.fields] == ["time", "temperature", "salinity"]
        assert obs.result.rows == [
            {"time": hour(0), "temperature": 1.0, "salinity": None},
            {"time": hour(1), "temperature": None, "salinity": 35.0},
        ]
        assert [p.id for p in store.get_phenomenon()] == ["computed-phen-ts-1", "salinity", "temperature"]

    def test_replaced_phenomenon_kept_while_referenced(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(fields=["salinity"], rows=[{"time": hour(0), "salinity": 2.0}]))
        # "temperature" survives as a component of the composite
        assert store.exist_entity("phenomenon", "temperature")

    def test_distinct_features_are_distinct_observations(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(make_timeseries(
            rows=[{"time": hour(0), "temperature": 2.0}],
            feature=SamplingFeature("station-2", geometry=Point(6.0, 44.0)),
        ))
        assert store.get_count() == 2
        assert [f.id for f in store.get_feature_of_interest()] == ["station-1", "station-2"]

    def test_observation_name_used_as_identifier(self, store, make_timeseries):
        identifier = store.write_observation(
            make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}], name="campaign-a")
        )
        assert identifier == "campaign-a"

    def test_supplied_phenomenon_metadata_kept(self, store, make_timeseries):
        phen = Phenomenon.composite(
            "urn:ogc:def:phenomenon:GEOM:ctd",
            [Phenomenon.simple("temperature", name="Sea temperature"), Phenomenon.simple("salinity")],
        )
        store.write_observation(make_timeseries(
            fields=["temperature", "salinity"],
            rows=[{"time": hour(0), "temperature": 1.0, "salinity": 35.0}],
            phenomenon=phen,
        ))
        obs = only(store)
        assert obs.observed_property.id == "urn:ogc:def:phenomenon:GEOM:ctd"
        assert obs.observed_property.components[0].name == "Sea temperature"

    def test_offering_refreshed(self, store, make_timeseries, hourly_rows):
        store.write_observation(make_timeseries(rows=hourly_rows))
        (offering,) = store.get_offerings()
        assert offering.id == "offering-ts-1"
        assert offering.time == TimePeriod(hour(0), hour(9))
        assert offering.observed_properties == ("temperature",)
        assert offering.features_of_interest == ("station-1",)

    def test_procedure_geometry_recorded(self, store, make_timeseries):
        obs = make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}])
        obs.procedure.geometry = Point(5.0, 43.0)
        store.write_observation(obs)
        (proc,) = store.get_procedures()
        assert proc.geometry.equals(Point(5.0, 43.0))
        assert [loc.time for loc in proc.locations] == [hour(0)]


class TestMultiTable:
    def test_fields_spread_over_tables_read_back_joined(self, narrow_store, make_timeseries):
        narrow_store.write_observation(make_timeseries(
            fields=["a", "b", "c", "d", "e"],
            rows=[
                {"time": hour(0), "a": 1, "b": 2, "c": 3, "d": 4, "e": 5},
                {"time": hour(1), "a": 6, "e": 10},
            ],
        ))
        obs = only(narrow_store)
        assert obs.result.rows == [
            {"time": hour(0), "a": 1.0, "b": 2.0, "c": 3.0, "d": 4.0, "e": 5.0},
            {"time": hour(1), "a": 6.0, "b": None, "c": None, "d": None, "e": 10.0},
        ]
        assert narrow_store.stats()["fields"] == 6

    def test_row_present_only_in_later_table(self, narrow_store, make_timeseries):
        narrow_store.write_observation(make_timeseries(
            fields=["a", "b", "c"], rows=[{"time": hour(0), "c": 3}],
        ))
        assert only(narrow_store).result.rows == [{"time": hour(0), "a": None, "b": None, "c": 3.0}]


class TestProfiles:
    def test_same_instant_merges_by_depth(self, store, make_profile):
        store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 10}, {"depth": 5, "temperature": 8}]))
        store.write_observation(make_profile(rows=[{"depth": 5, "temperature": 7.5}, {"depth": 10, "temperature": 6}]))
        obs = only(store)
        assert [(r["depth"], r["temperature"]) for r in obs.result.rows] == [(1.0, 10.0), (5.0, 7.5), (10.0, 6.0)]
        assert obs.sampling_time == TimeInstant(T0)

    def test_profile_phenomenon_includes_main_field(self, store, make_profile):
        store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 10}]))
        assert only(store).observed_property.component_ids == ("depth", "temperature")

    def test_new_instant_is_new_observation(self, store, make_profile):
        store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 10}]))
        store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 9}], time=hour(6)))
        assert store.get_count() == 2

    def test_profiles_share_phenomenon(self, store, make_profile):
        store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 10}]))
        store.write_observation(make_profile(fields=["salinity"], rows=[{"depth": 1, "salinity": 35}], time=hour(6)))
        phenomena = {o.observed_property.id for o in store.get_observations()}
        assert len(phenomena) == 1

    def test_profile_needs_sampling_time(self, store, make_profile):
        obs = make_profile(rows=[{"depth": 1, "temperature": 10}])
        obs.sampling_time = None
        with pytest.raises(ValidationError, match="sampling time"):
            store.write_observation(obs)


class TestMeasurementWrite:
    def test_measurement_merges_into_series(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        store.write_observation(Observation(
            procedure=Procedure(TS),
            feature_of_interest=make_timeseries().feature_of_interest,
            sampling_time=TimeInstant(hour(1)),
            result=MeasureResult(Field("temperature"), 2.0),
        ))
        assert [r["temperature"] for r in only(store).result.rows] == [1.0, 2.0]


class TestValidation:
    def test_no_procedure(self, store):
        with pytest.raises(ValidationError):
            store.write_observation(Observation(procedure=None))

    def test_main_only(self, store):
        obs = Observation(Procedure(TS), result=ComplexResult([Field("time", FieldType.TIME)], []))
        with pytest.raises(ValidationError, match="only its main field"):
            store.write_observation(obs)

    def test_unknown_column(self, store, make_timeseries):
        with pytest.raises(ValidationError, match="unknown columns"):
            store.write_observation(make_timeseries(rows=[{"time": hour(0), "pressure": 1.0}]))

    def test_type_mismatch_leaves_store_untouched(self, store, make_timeseries):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        before = store.stats()
        bad = make_timeseries(
            fields=[Field("temperature", FieldType.TEXT), "salinity"],
            rows=[{"time": hour(1), "temperature": "warm", "salinity": 3.0}],
        )
        with pytest.raises(ValidationError):
            store.write_observation(bad)
        assert store.stats() == before

    def test_profile_into_timeseries_procedure(self, store, make_timeseries, make_profile):
        store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": 1.0}]))
        with pytest.raises(ValidationError) as exc:
            store.write_observation(make_profile(procedure=TS, rows=[{"depth": 1, "temperature": 2}]))
        assert exc.value.constraint == "observation_type"

    def test_bad_cell_value(self, store, make_timeseries):
        with pytest.raises(ValidationError):
            store.write_observation(make_timeseries(rows=[{"time": hour(0), "temperature": "warm"}]))
        assert store.get_procedures() == []


class TestConcurrentWrites:
    def test_parallel_writes_to_one_procedure(self, store, make_timeseries):
        from concurrent.futures import ThreadPoolExecutor

        writes = [make_timeseries(rows=[{"time": hour(n), "temperature": float(n)}]) for n in range(8)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            identifiers = set(pool.map(store.write_observation, writes))
        assert identifiers == {"urn:ogc:object:observation:GEOM:1"}
        assert [r["temperature"] for r in only(store).result.rows] == [float(n) for n in range(8)]

    def test_parallel_new_fields_share_one_ledger(self, store, make_timeseries):
        from concurrent.futures import ThreadPoolExecutor

        names = [f"field_{n}" for n in range(6)]
        writes = [make_timeseries(fields=[name], rows=[{"time": hour(0), name: 1.0}]) for name in names]
        with ThreadPoolExecutor(max_workers=3) as pool:
            list(pool.map(store.write_observation, writes))
        obs = only(store)
        assert sorted(f.name for f in obs.result.fields[1:]) == names
        assert sorted(obs.observed_property.component_ids) == names
