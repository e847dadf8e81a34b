"""
Shared pytest fixtures for obs-spine tests.

This module provides:
- An in-memory ObservationStore per test
- Fixed timestamps
- Small sensor factories: time-series and profile procedures with
  observations ready to write
"""

from __future__ import annotations

import datetime
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import pytest
from shapely.geometry import Point

from obspine.core.settings import ObsSpineSettings, clear_settings_cache
from obspine.om.fields import Field, FieldType
from obspine.om.model import (
    ComplexResult,
    Observation,
    Phenomenon,
    Procedure,
    SamplingFeature,
    TimeInstant,
)
from obspine.om.store import ObservationStore

SENSOR_BASE = "urn:ogc:object:sensor:GEOM:"
T0 = datetime.datetime(2024, 3, 1, 0, 0, 0)


def at(hours: float = 0, days: int = 0) -> datetime.datetime:
    """Fixed timestamp ``T0 + days + hours``."""
    return T0 + datetime.timedelta(days=days, hours=hours)


# =============================================================================
# Settings / store
# =============================================================================


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate tests from OBSPINE_* variables and the settings cache."""
    import os

    for key in list(os.environ):
        if key.startswith("OBSPINE_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> ObsSpineSettings:
    return ObsSpineSettings(database_url="sqlite:///:memory:", max_field_by_table=10)


@pytest.fixture
def store(settings: ObsSpineSettings) -> Iterator[ObservationStore]:
    s = ObservationStore.in_memory(settings)
    yield s
    s.close()


@pytest.fixture
def narrow_store() -> Iterator[ObservationStore]:
    """Store whose tables hold two data columns each."""
    s = ObservationStore.in_memory(ObsSpineSettings(database_url="sqlite:///:memory:", max_field_by_table=2))
    yield s
    s.close()


# =============================================================================
# Sensor factories
# =============================================================================


def station(feature_id: str = "station-1", lon: float = 5.0, lat: float = 43.0) -> SamplingFeature:
    return SamplingFeature(id=feature_id, name=feature_id, geometry=Point(lon, lat))


def timeseries(
    procedure: str = SENSOR_BASE + "ts-1",
    fields: Sequence[str | Field] = ("temperature",),
    rows: Sequence[dict[str, Any]] = (),
    feature: SamplingFeature | None = None,
    phenomenon: Phenomenon | None = None,
    name: str | None = None,
) -> Observation:
    """Time-series observation; ``rows`` map field name → value and carry ``time``."""
    data = [f if isinstance(f, Field) else Field(f, FieldType.QUANTITY) for f in fields]
    result = ComplexResult([Field("time", FieldType.TIME), *data], [dict(r) for r in rows])
    return Observation(
        procedure=Procedure(procedure),
        observed_property=phenomenon,
        feature_of_interest=feature if feature is not None else station(),
        result=result,
        name=name,
    )


def profile(
    procedure: str = SENSOR_BASE + "pr-1",
    fields: Sequence[str | Field] = ("temperature",),
    rows: Sequence[dict[str, Any]] = (),
    time: datetime.datetime = T0,
    feature: SamplingFeature | None = None,
) -> Observation:
    """Profile observation indexed by ``depth`` at one sampling instant."""
    data = [f if isinstance(f, Field) else Field(f, FieldType.QUANTITY) for f in fields]
    result = ComplexResult([Field("depth", FieldType.QUANTITY, uom="m"), *data], [dict(r) for r in rows])
    return Observation(
        procedure=Procedure(procedure),
        feature_of_interest=feature if feature is not None else station(),
        sampling_time=TimeInstant(time),
        result=result,
    )


@pytest.fixture
def make_timeseries() -> Callable[..., Observation]:
    return timeseries


@pytest.fixture
def make_profile() -> Callable[..., Observation]:
    return profile


@pytest.fixture
def hourly_rows() -> list[dict[str, Any]]:
    """Ten hourly temperature rows, 10.0 .. 19.0."""
    return [{"time": at(h), "temperature": 10.0 + h} for h in range(10)]
