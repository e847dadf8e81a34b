"""Tests for the obspine CLI via typer's CliRunner, on a temporary SQLite file."""

from __future__ import annotations

import datetime
import json
import logging

import pytest
import structlog
from shapely.geometry import Point
from typer.testing import CliRunner

from obspine.cli.app import app
from obspine.core.settings import ObsSpineSettings
from obspine.om.model import Location, Procedure
from obspine.om.store import ObservationStore

runner = CliRunner()

BASE = "urn:ogc:object:sensor:GEOM:"
TS = BASE + "ts-1"
QUIET = {"OBSPINE_LOG_LEVEL": "WARNING"}


@pytest.fixture(autouse=True)
def _reset_logging():
    """The CLI points logging at the runner's streams; detach them afterwards."""
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "obs.db")


@pytest.fixture
def populated(db_path, make_timeseries, make_profile, hourly_rows):
    store = ObservationStore(ObsSpineSettings(database_url=f"sqlite:///{db_path}"))
    store.init_schema()
    store.write_observation(make_timeseries(rows=hourly_rows))
    store.write_observation(make_profile(rows=[{"depth": 1, "temperature": 10}, {"depth": 5, "temperature": 8}]))
    store.close()
    return db_path


def invoke(*args: str):
    return runner.invoke(app, list(args), env=QUIET)


def invoke_json(*args: str):
    result = invoke(*args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


# ─── Root ────────────────────────────────────────────────────────────────


class TestRoot:
    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert result.stdout.startswith("obspine ")

    def test_help(self):
        result = invoke("--help")
        assert result.exit_code == 0
        assert "obs" in result.stdout


# ─── db ──────────────────────────────────────────────────────────────────


class TestDbCommands:
    def test_init(self, db_path):
        result = invoke("db", "init", "--database", db_path)
        assert result.exit_code == 0
        assert "Schema ready" in result.stdout

    def test_stats_json(self, populated):
        stats = invoke_json("db", "stats", "-d", populated)
        assert stats["procedures"] == 2
        assert stats["observations"] == 2
        assert stats["offerings"] == 2

    def test_stats_table(self, populated):
        result = invoke("db", "stats", "-d", populated)
        assert result.exit_code == 0
        assert "Table Counts" in result.stdout

    def test_invalid_settings(self, db_path):
        result = runner.invoke(app, ["db", "stats", "-d", db_path], env={"OBSPINE_MAX_FIELD_BY_TABLE": "0"})
        assert result.exit_code == 1


# ─── obs listings ────────────────────────────────────────────────────────


class TestListings:
    def test_procedures(self, populated):
        rows = invoke_json("obs", "procedures", "-d", populated)
        assert [r["id"] for r in rows] == [BASE + "pr-1", TS]
        assert rows[1]["fields"] == "time, temperature"
        assert rows[1]["type"] == "timeseries"

    def test_procedures_paging(self, populated):
        rows = invoke_json("obs", "procedures", "-d", populated, "--limit", "1", "--offset", "1")
        assert [r["id"] for r in rows] == [TS]

    def test_phenomena(self, populated):
        rows = invoke_json("obs", "phenomena", "-d", populated)
        assert [r["id"] for r in rows] == ["computed-phen-pr-1", "depth", "temperature"]
        assert rows[0]["components"] == "depth, temperature"
        leaves = invoke_json("obs", "phenomena", "--leaves", "-d", populated)
        assert [r["id"] for r in leaves] == ["depth", "temperature"]

    def test_features_and_offerings(self, populated):
        features = invoke_json("obs", "features", "-d", populated)
        assert [f["id"] for f in features] == ["station-1"]
        assert features[0]["geometry"] == "POINT (5 43)"
        offerings = invoke_json("obs", "offerings", "-d", populated)
        assert [o["id"] for o in offerings] == ["offering-pr-1", "offering-ts-1"]
        assert offerings[1]["time"] == "2024-03-01T00:00:00/2024-03-01T09:00:00"

    def test_locations(self, db_path):
        store = ObservationStore(ObsSpineSettings(database_url=f"sqlite:///{db_path}"))
        store.init_schema()
        t0 = datetime.datetime(2024, 3, 1)
        track = [Location(t0 + datetime.timedelta(hours=h), Point(float(h), 0.0)) for h in range(4)]
        store.write_procedure(Procedure(BASE + "buoy", locations=track))
        store.close()
        rows = invoke_json("obs", "locations", BASE + "buoy", "-d", db_path)
        assert [r["geometry"] for r in rows] == ["POINT (0 0)", "POINT (1 0)", "POINT (2 0)", "POINT (3 0)"]
        assert rows[0] == {"time": "2024-03-01T00:00:00", "geometry": "POINT (0 0)", "srid": 4326}
        thinned = invoke_json("obs", "locations", BASE + "buoy", "--decimate", "2", "-d", db_path)
        assert len(thinned) == 2
        assert invoke("obs", "locations", BASE + "nope", "-d", db_path).exit_code == 1

    def test_empty_table_output(self, db_path):
        result = invoke("obs", "procedures", "-d", db_path)
        assert result.exit_code == 0
        assert "No items." in result.stdout


# ─── template and results ────────────────────────────────────────────────


class TestTemplateAndResults:
    def test_template(self, populated):
        data = invoke_json("obs", "template", TS, "-d", populated)
        assert data["id"] == "urn:ogc:object:observation:template:GEOM:ts-1"
        assert data["fields"] == ["time", "temperature"]
        assert data["feature_of_interest"] == "station-1"

    def test_template_unknown(self, populated):
        result = invoke("obs", "template", BASE + "nope", "-d", populated)
        assert result.exit_code == 1

    def test_results_csv(self, populated):
        result = invoke("obs", "results", TS, "-d", populated)
        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert lines[:2] == ["time,temperature", "2024-03-01T00:00:00,10"]
        assert len(lines) == 11

    def test_results_count_and_decimation(self, populated):
        result = invoke("obs", "results", TS, "-f", "count", "--decimate", "5", "-d", populated)
        assert result.stdout == "5"

    def test_results_array(self, populated):
        result = invoke("obs", "results", BASE + "pr-1", "--format", "resultArray", "--include-time", "-d", populated)
        assert result.stdout.splitlines() == ["2024-03-01 00:00:00,1.0,10.0", "2024-03-01 00:00:00,5.0,8.0"]

    def test_results_unknown_procedure(self, populated):
        result = invoke("obs", "results", BASE + "nope", "-d", populated)
        assert result.exit_code == 1


# ─── removals ────────────────────────────────────────────────────────────


class TestRemovals:
    def test_remove_procedure(self, populated):
        result = invoke("obs", "remove-procedure", TS, "-d", populated)
        assert result.exit_code == 0
        assert "Removed" in result.stdout
        rows = invoke_json("obs", "procedures", "-d", populated)
        assert [r["id"] for r in rows] == [BASE + "pr-1"]

    def test_remove_unknown_procedure(self, populated):
        assert invoke("obs", "remove-procedure", BASE + "nope", "-d", populated).exit_code == 1

    def test_remove_phenomenon(self, populated):
        result = invoke("obs", "remove-phenomenon", "temperature", "-d", populated)
        assert result.exit_code == 0
        stats = invoke_json("db", "stats", "-d", populated)
        assert stats["procedures"] == 0
        assert stats["observations"] == 0

    def test_remove_unknown_phenomenon(self, populated):
        assert invoke("obs", "remove-phenomenon", "nope", "-d", populated).exit_code == 1
