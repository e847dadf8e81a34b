"""Query value objects accepted by :class:`obspine.om.store.ObservationStore`."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from obspine.core.errors import ValidationError
from obspine.om.filters import Filter, validate_filter
from obspine.om.model import Time


class EntityKind(str, Enum):
    OBSERVATION = "observation"
    MEASUREMENT = "measurement"


class EntityType(str, Enum):
    """Entity kinds accepted by ``exist_entity``."""

    PROCEDURE = "procedure"
    PHENOMENON = "phenomenon"
    FEATURE_OF_INTEREST = "featureOfInterest"
    OFFERING = "offering"
    OBSERVATION = "observation"


class ResponseMode(str, Enum):
    INLINE = "inline"
    RESULT_TEMPLATE = "resultTemplate"


class ResultFormat(str, Enum):
    CSV = "csv"
    CSV_FLAT = "text/csv-flat"
    COUNT = "count"
    RESULT_ARRAY = "resultArray"


@dataclass(frozen=True)
class TextEncoding:
    decimal_separator: str = "."
    token_separator: str = ","
    block_separator: str = "\n"


def _check_paging(limit: int | None, offset: int) -> None:
    if limit is not None and limit < 0:
        raise ValidationError("limit must not be negative", field="limit", value=limit, constraint="paging")
    if offset < 0:
        raise ValidationError("offset must not be negative", field="offset", value=offset, constraint="paging")


@dataclass(frozen=True)
class ObservationQuery:
    kind: EntityKind = EntityKind.OBSERVATION
    mode: ResponseMode = ResponseMode.INLINE
    filter: Filter | None = None
    limit: int | None = None
    offset: int = 0
    include_foi_in_template: bool = True
    include_time_in_template: bool = False
    include_quality_fields: bool = True
    include_parameter_fields: bool = True
    separated_profile_observation: bool = True
    separated_measure: bool = False

    def __post_init__(self) -> None:
        _check_paging(self.limit, self.offset)
        validate_filter(self.filter)


@dataclass(frozen=True)
class ResultQuery:
    procedure: str
    filter: Filter | None = None
    format: ResultFormat = ResultFormat.CSV
    decimation_size: int | None = None
    include_id: bool = False
    include_time_for_profile: bool = False
    include_quality_fields: bool = True
    include_parameter_fields: bool = True
    kind: EntityKind = EntityKind.OBSERVATION
    encoding: TextEncoding = field(default_factory=TextEncoding)

    def __post_init__(self) -> None:
        if self.decimation_size is not None and self.decimation_size < 1:
            raise ValidationError("decimation size must be at least 1", field="decimation_size",
                                  value=self.decimation_size, constraint="positive")
        validate_filter(self.filter)


@dataclass(frozen=True)
class EntityQuery:
    """Listing query for procedures, phenomena, features and offerings."""

    filter: Filter | None = None
    limit: int | None = None
    offset: int = 0
    no_composite_phenomenon: bool = False

    def __post_init__(self) -> None:
        _check_paging(self.limit, self.offset)
        validate_filter(self.filter)


@dataclass(frozen=True)
class DatasetQuery:
    """Selects observations by procedure, feature of interest, time and phenomenon.

    Empty selectors select everything.
    """

    procedures: Sequence[str] = ()
    features_of_interest: Sequence[str] = ()
    observed_properties: Sequence[str] = ()
    time: Time | None = None


def page(items: list, limit: int | None, offset: int) -> list:
    end = None if limit is None else offset + limit
    return items[offset:end]


__all__ = [
    "DatasetQuery",
    "EntityKind",
    "EntityQuery",
    "EntityType",
    "ObservationQuery",
    "ResponseMode",
    "ResultFormat",
    "ResultQuery",
    "TextEncoding",
    "page",
]
