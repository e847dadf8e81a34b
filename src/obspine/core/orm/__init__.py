"""SQLAlchemy ORM layer for the observation store."""

from obspine.core.orm.base import ObsBase
from obspine.core.orm.session import (
    ObsSession,
    create_obs_engine,
    is_memory_url,
    obs_session_factory,
)
from obspine.core.orm.tables import (
    ComponentTable,
    EntityPropertyTable,
    HistoricalLocationTable,
    MeasureRowTable,
    ObservationTable,
    OfferingFeatureTable,
    OfferingPhenomenonTable,
    OfferingTable,
    PhenomenonSequenceTable,
    PhenomenonTable,
    ProcedureFieldTable,
    ProcedureTable,
    SamplingFeatureTable,
)

__all__ = [
    "ObsBase",
    "ObsSession",
    "create_obs_engine",
    "is_memory_url",
    "obs_session_factory",
    "ComponentTable",
    "EntityPropertyTable",
    "HistoricalLocationTable",
    "MeasureRowTable",
    "ObservationTable",
    "OfferingFeatureTable",
    "OfferingPhenomenonTable",
    "OfferingTable",
    "PhenomenonSequenceTable",
    "PhenomenonTable",
    "ProcedureFieldTable",
    "ProcedureTable",
    "SamplingFeatureTable",
]
