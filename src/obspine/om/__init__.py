"""Observation & Measurement layer: domain model, merge, filters and the store facade.

Architecture::

    model.py        Phenomenon, Procedure, Observation, results (plain values)
    fields.py       Field model, column naming, value coercion
    composer.py     Composite phenomena and their naming ledger
    allocator.py    Field → (table, column) placement, append-only
    merge.py        Observation merge engine
    filters.py      Filter AST and property paths
    compiler.py     Filter → SQL prefilter
    evaluator.py    Filter → exact in-memory test
    reader.py       ORM rows → Observation, outer join by key
    decimation.py   Bucketed down-sampling
    results.py      csv, csv-flat, count, data array
    assembler.py    Templates, extracts, removal cascades
    store.py        ObservationStore facade
"""

from obspine.om.model import (
    ComplexResult,
    DatasetExtract,
    Location,
    MeasureResult,
    Observation,
    ObservationType,
    Offering,
    Phenomenon,
    PhenomenonKind,
    Procedure,
    SamplingFeature,
    SensorType,
    TimeInstant,
    TimePeriod,
)
from obspine.om.fields import Field, FieldKind, FieldType
from obspine.om.queries import (
    DatasetQuery,
    EntityKind,
    EntityQuery,
    EntityType,
    ObservationQuery,
    ResponseMode,
    ResultFormat,
    ResultQuery,
    TextEncoding,
)
from obspine.om.store import ObservationStore

__all__ = [
    # model
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
    "SamplingFeature",
    "SensorType",
    "TimeInstant",
    "TimePeriod",
    # fields
    "Field",
    "FieldKind",
    "FieldType",
    # queries
    "DatasetQuery",
    "EntityKind",
    "EntityQuery",
    "EntityType",
    "ObservationQuery",
    "ResponseMode",
    "ResultFormat",
    "ResultQuery",
    "TextEncoding",
    # store
    "ObservationStore",
]
