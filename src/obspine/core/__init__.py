"""Obs-spine core: errors, logging, settings, locks and the ORM layer.

Architecture::

    errors.py      Structured error hierarchy (ObsSpineError and subclasses)
    logging.py     structlog configuration and context binding
    settings.py    pydantic-settings configuration (OBSPINE_* env vars)
    locks.py       Per-procedure keyed locks
    orm/           SQLAlchemy 2.0 tables, engine and session factory
"""

from obspine.core.errors import (
    ConfigError,
    DecimationUnsupportedError,
    ErrorCategory,
    ErrorContext,
    NotFoundError,
    ObsSpineError,
    StorageError,
    UnsupportedFilterError,
    ValidationError,
)
from obspine.core.locks import KeyedLock
from obspine.core.settings import ObsSpineSettings, clear_settings_cache, get_settings

__all__ = [
    "ConfigError",
    "DecimationUnsupportedError",
    "ErrorCategory",
    "ErrorContext",
    "NotFoundError",
    "ObsSpineError",
    "StorageError",
    "UnsupportedFilterError",
    "ValidationError",
    "KeyedLock",
    "ObsSpineSettings",
    "clear_settings_cache",
    "get_settings",
]
