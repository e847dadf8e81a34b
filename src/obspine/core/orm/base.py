"""Declarative base and type-map for all observation store tables.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Float, Integer, LargeBinary, Text
from sqlalchemy.orm import DeclarativeBase


class ObsBase(DeclarativeBase):
    """Shared declarative base for every ``om_*`` table.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``float`` → ``Float``
    * ``bool``  → ``Integer``  (SQLite has no native BOOLEAN)
    * ``bytes`` → ``LargeBinary`` (WKB geometries)
    * ``datetime.datetime`` → ``DateTime``
    * ``dict``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        float: Float,
        bool: Integer,
        bytes: LargeBinary,
        datetime.datetime: DateTime,
        dict: JSON,
    }
