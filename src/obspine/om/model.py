"""
Domain model of the observation store.

Manifesto:
    The store speaks in Observations, Procedures, Phenomena and Features of
    Interest. These classes are plain values: no session, no lazy loading.
    The reader builds them from the ORM rows and the merge engine consumes
    them.

Architecture:
    ::

        Observation ──► Procedure          (sensor, field ledger, locations)
             │
             ├──────► Phenomenon           SIMPLE | COMPOSITE(components...)
             ├──────► SamplingFeature      (geometry, properties)
             ├──────► TimeInstant | TimePeriod
             └──────► ComplexResult        (fields + rows keyed by column name)
                      MeasureResult        (one field, one value)

Phenomenon is a tagged variant. Composer code matches on ``kind`` rather
than on a class hierarchy, so "a component" and "a whole" never get
confused.

Tags:
    domain-model, observation, phenomenon, procedure
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from shapely.geometry.base import BaseGeometry

from obspine.core.errors import ValidationError
from obspine.om.fields import Field, FieldType, to_naive_utc

Properties = dict[str, tuple[str, ...]]


def normalize_properties(props: Mapping[str, Any] | None) -> Properties:
    """Multimap normalization: every value becomes a tuple of strings."""
    result: Properties = {}
    for key, value in (props or {}).items():
        if isinstance(value, (list, tuple, set)):
            result[key] = tuple(str(v) for v in value)
        else:
            result[key] = (str(value),)
    return result


# =============================================================================
# Time
# =============================================================================


@dataclass(frozen=True)
class TimeInstant:
    position: datetime.datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", to_naive_utc(self.position))

    @property
    def begin(self) -> datetime.datetime:
        return self.position

    @property
    def end(self) -> datetime.datetime:
        return self.position


@dataclass(frozen=True)
class TimePeriod:
    begin: datetime.datetime
    end: datetime.datetime

    def __post_init__(self) -> None:
        begin, end = to_naive_utc(self.begin), to_naive_utc(self.end)
        if end < begin:
            raise ValidationError("period ends before it begins", constraint="time_order")
        object.__setattr__(self, "begin", begin)
        object.__setattr__(self, "end", end)


Time = Union[TimeInstant, TimePeriod]


def build_time(begin: datetime.datetime | None, end: datetime.datetime | None = None) -> Time | None:
    """Instant when ``end`` is missing or equal to ``begin``, period otherwise."""
    if begin is None:
        return TimeInstant(end) if end is not None else None
    if end is None or end == begin:
        return TimeInstant(begin)
    return TimePeriod(begin, end)


def union_time(first: Time | None, second: Time | None) -> Time | None:
    if first is None:
        return second
    if second is None:
        return first
    return build_time(min(first.begin, second.begin), max(first.end, second.end))


# =============================================================================
# Phenomenon (tagged variant)
# =============================================================================


class PhenomenonKind(str, Enum):
    SIMPLE = "simple"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class Phenomenon:
    """Simple phenomenon, or composite bundle of ordered, unique components."""

    kind: PhenomenonKind
    id: str
    name: str | None = None
    definition: str | None = None
    description: str | None = None
    properties: Properties = field(default_factory=dict, compare=False, hash=False)
    components: tuple[Phenomenon, ...] = ()

    @classmethod
    def simple(
        cls,
        id: str,
        name: str | None = None,
        definition: str | None = None,
        description: str | None = None,
        properties: Mapping[str, Any] | None = None,
    ) -> Phenomenon:
        return cls(PhenomenonKind.SIMPLE, id, name, definition, description, normalize_properties(properties))

    @classmethod
    def composite(
        cls,
        id: str,
        components: Iterable[Phenomenon],
        name: str | None = None,
        definition: str | None = None,
        description: str | None = None,
        properties: Mapping[str, Any] | None = None,
    ) -> Phenomenon:
        comps = tuple(components)
        ids = [c.id for c in comps]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"composite {id!r} has duplicate components", constraint="unique_components")
        return cls(
            PhenomenonKind.COMPOSITE, id, name, definition, description, normalize_properties(properties), comps
        )

    @property
    def is_composite(self) -> bool:
        return self.kind is PhenomenonKind.COMPOSITE

    @property
    def component_ids(self) -> tuple[str, ...]:
        if self.kind is PhenomenonKind.SIMPLE:
            return (self.id,)
        return tuple(c.id for c in self.components)

    def leaves(self) -> list[Phenomenon]:
        """Simple phenomena reachable from this one, in component order."""
        if self.kind is PhenomenonKind.SIMPLE:
            return [self]
        out: list[Phenomenon] = []
        for comp in self.components:
            for leaf in comp.leaves():
                if all(leaf.id != o.id for o in out):
                    out.append(leaf)
        return out

    def leaf_ids(self) -> list[str]:
        return [leaf.id for leaf in self.leaves()]


# =============================================================================
# Procedure and feature of interest
# =============================================================================


class SensorType(str, Enum):
    SYSTEM = "system"
    COMPONENT = "component"


class ObservationType(str, Enum):
    """Shape of a procedure's series, decided by the type of its main field."""

    TIMESERIES = "timeseries"
    PROFILE = "profile"

    @classmethod
    def of(cls, main_field: Field) -> ObservationType:
        return cls.TIMESERIES if main_field.type is FieldType.TIME else cls.PROFILE


@dataclass(frozen=True)
class Location:
    time: datetime.datetime
    geometry: BaseGeometry
    srid: int = 4326


@dataclass
class Procedure:
    id: str
    name: str | None = None
    description: str | None = None
    sensor_type: SensorType = SensorType.SYSTEM
    om_type: ObservationType | None = None
    parent: str | None = None
    properties: Properties = field(default_factory=dict)
    geometry: BaseGeometry | None = None
    srid: int = 4326
    # ordered data fields, main field first
    fields: list[Field] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.properties = normalize_properties(self.properties)
        if not isinstance(self.sensor_type, SensorType):
            self.sensor_type = SensorType(self.sensor_type)

    @property
    def main_field(self) -> Field | None:
        return self.fields[0] if self.fields else None

    @property
    def data_fields(self) -> list[Field]:
        return self.fields[1:]


@dataclass
class SamplingFeature:
    id: str
    name: str | None = None
    description: str | None = None
    sampled_feature: str | None = None
    geometry: BaseGeometry | None = None
    srid: int = 4326
    axis_order: str = "lonlat"
    properties: Properties = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.properties = normalize_properties(self.properties)


# =============================================================================
# Results
# =============================================================================


Row = dict[str, Any]


@dataclass
class ComplexResult:
    """
    Ordered matrix of rows. Each row maps column name → value; the first
    field is the main (indexing) field. ``rows is None`` marks a template.

    Formatted outputs fill ``values`` (text formats) or ``data_array``.
    """

    fields: list[Field]
    rows: list[Row] | None = None
    nb_values: int | None = None
    values: str | None = None
    data_array: list[list[Any]] | None = None

    def __post_init__(self) -> None:
        if self.nb_values is None and self.rows is not None:
            self.nb_values = len(self.rows)

    @property
    def main_field(self) -> Field:
        return self.fields[0]

    @property
    def is_template(self) -> bool:
        return self.rows is None and self.values is None and self.data_array is None


@dataclass(frozen=True)
class MeasureResult:
    field: Field
    value: Any
    field_index: int | None = None


Result = Union[ComplexResult, MeasureResult]


# =============================================================================
# Observation, offering, dataset extract
# =============================================================================


@dataclass
class Observation:
    procedure: Procedure
    observed_property: Phenomenon | None = None
    feature_of_interest: SamplingFeature | None = None
    sampling_time: Time | None = None
    result: Result | None = None
    id: str | None = None
    name: str | None = None

    @property
    def is_measurement(self) -> bool:
        return isinstance(self.result, MeasureResult)

    @property
    def fields(self) -> list[Field]:
        if isinstance(self.result, ComplexResult):
            return list(self.result.fields)
        if isinstance(self.result, MeasureResult):
            return [self.result.field]
        return []

    def with_result(self, result: Result | None) -> Observation:
        return replace(self, result=result)


@dataclass
class Offering:
    id: str
    procedure: str
    name: str | None = None
    description: str | None = None
    time: Time | None = None
    observed_properties: tuple[str, ...] = ()
    features_of_interest: tuple[str, ...] = ()


@dataclass
class DatasetExtract:
    observations: list[Observation] = field(default_factory=list)
    phenomenons: list[Phenomenon] = field(default_factory=list)
    features_of_interest: list[SamplingFeature] = field(default_factory=list)
    procedures: list[Procedure] = field(default_factory=list)
    # (minx, miny, maxx, maxy) over the features of interest, lon/lat
    spatial_bound: tuple[float, float, float, float] | None = None
    time_bound: Time | None = None


__all__ = [
    "ComplexResult",
    "DatasetExtract",
    "Location",
    "MeasureResult",
    "Observation",
    "ObservationType",
    "Offering",
    "Phenomenon",
    "PhenomenonKind",
    "Procedure",
    "Properties",
    "Result",
    "Row",
    "SamplingFeature",
    "SensorType",
    "Time",
    "TimeInstant",
    "TimePeriod",
    "build_time",
    "normalize_properties",
    "union_time",
]
