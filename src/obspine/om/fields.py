"""
Field model: one measured quantity and its physical column names.

A field is identified by its name. Its position in a result is its column
position, so field lists are always ordered. Quality and parameter
sub-fields are stored in their own columns, named
``<field>_quality_<sub>`` and ``<field>_parameter_<sub>``.

Examples:
    >>> temp = Field("temperature", FieldType.QUANTITY, uom="°C",
    ...              quality_fields=(Field("flag", FieldType.TEXT),))
    >>> [c.name for c in flat_columns([temp])]
    ['temperature', 'temperature_quality_flag']
    >>> Field("temperature") == temp
    True
"""

from __future__ import annotations

import datetime
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from obspine.core.errors import ValidationError


class FieldType(str, Enum):
    QUANTITY = "quantity"
    TEXT = "text"
    BOOLEAN = "boolean"
    TIME = "time"


class FieldKind(str, Enum):
    """Role of a physical column."""

    MEASURE = "measure"
    QUALITY = "quality"
    PARAMETER = "parameter"


@dataclass(frozen=True)
class Field:
    """A measured quantity. Equality and hashing use the name only."""

    name: str
    type: FieldType = field(default=FieldType.QUANTITY, compare=False)
    uom: str | None = field(default=None, compare=False)
    label: str | None = field(default=None, compare=False)
    description: str | None = field(default=None, compare=False)
    quality_fields: tuple[Field, ...] = field(default=(), compare=False)
    parameter_fields: tuple[Field, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("field name must not be empty", constraint="field_name")
        # tolerate lists from callers
        object.__setattr__(self, "quality_fields", tuple(self.quality_fields))
        object.__setattr__(self, "parameter_fields", tuple(self.parameter_fields))
        if not isinstance(self.type, FieldType):
            object.__setattr__(self, "type", FieldType(self.type))

    @property
    def is_numeric(self) -> bool:
        return self.type is FieldType.QUANTITY

    def without_sub_fields(self, *, quality: bool = True, parameter: bool = True) -> Field:
        return Field(
            self.name,
            self.type,
            uom=self.uom,
            label=self.label,
            description=self.description,
            quality_fields=() if quality else self.quality_fields,
            parameter_fields=() if parameter else self.parameter_fields,
        )


@dataclass(frozen=True)
class Column:
    """One physical column: a measure field or one of its sub-fields."""

    name: str
    type: FieldType
    kind: FieldKind = FieldKind.MEASURE
    parent: str | None = None
    uom: str | None = None
    label: str | None = None
    description: str | None = None
    sub_name: str | None = None


def quality_column(parent: str, sub: str) -> str:
    return f"{parent}_quality_{sub}"


def parameter_column(parent: str, sub: str) -> str:
    return f"{parent}_parameter_{sub}"


def columns_of(f: Field) -> list[Column]:
    """The field's own column followed by its quality then parameter columns."""
    cols = [Column(f.name, f.type, uom=f.uom, label=f.label, description=f.description)]
    for q in f.quality_fields:
        cols.append(Column(
            quality_column(f.name, q.name), q.type, FieldKind.QUALITY, parent=f.name,
            uom=q.uom, label=q.label, description=q.description, sub_name=q.name,
        ))
    for p in f.parameter_fields:
        cols.append(Column(
            parameter_column(f.name, p.name), p.type, FieldKind.PARAMETER, parent=f.name,
            uom=p.uom, label=p.label, description=p.description, sub_name=p.name,
        ))
    return cols


def flat_columns(fields: Iterable[Field]) -> list[Column]:
    cols: list[Column] = []
    for f in fields:
        cols.extend(columns_of(f))
    return cols


def check_unique(fields: Sequence[Field]) -> None:
    seen: set[str] = set()
    for f in fields:
        if f.name in seen:
            raise ValidationError(f"duplicate field {f.name!r}", field=f.name, constraint="unique_field_name")
        seen.add(f.name)


def field_names(fields: Iterable[Field]) -> list[str]:
    return [f.name for f in fields]


# ── Value handling ───────────────────────────────────────────────────────


def is_missing(value: Any) -> bool:
    """None and NaN both mean "no value" and never overwrite stored data."""
    if value is None:
        return True
    return isinstance(value, float) and math.isnan(value)


def coerce_value(value: Any, field_type: FieldType, name: str = "") -> Any:
    """Validate and normalize a cell value for storage.

    Time values are stored as ISO strings; everything else as JSON scalars.
    """
    if is_missing(value):
        return None
    try:
        if field_type is FieldType.QUANTITY:
            if isinstance(value, bool):
                raise TypeError("boolean given for a quantity")
            number = float(value)
            return None if math.isnan(number) else number
        if field_type is FieldType.BOOLEAN:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("true", "1"):
                    return True
                if lowered in ("false", "0"):
                    return False
                raise ValueError(value)
            return bool(value)
        if field_type is FieldType.TIME:
            if isinstance(value, datetime.datetime):
                return to_naive_utc(value).isoformat()
            return to_naive_utc(datetime.datetime.fromisoformat(str(value))).isoformat()
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"value {value!r} does not match field type {field_type.value}",
            field=name or None,
            value=value,
            constraint="field_type",
            cause=exc,
        ) from exc


def decode_value(value: Any, field_type: FieldType) -> Any:
    """Inverse of :func:`coerce_value` for values read back from storage."""
    if value is None:
        return None
    if field_type is FieldType.TIME:
        return datetime.datetime.fromisoformat(value)
    if field_type is FieldType.QUANTITY:
        return float(value)
    return value


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


_EPOCH = datetime.datetime(1970, 1, 1)


def time_key(value: datetime.datetime) -> float:
    """Numeric row key of a timestamp: seconds since the epoch (UTC)."""
    return (to_naive_utc(value) - _EPOCH).total_seconds()


def key_time(key: float) -> datetime.datetime:
    return _EPOCH + datetime.timedelta(seconds=key)


__all__ = [
    "Column",
    "Field",
    "FieldKind",
    "FieldType",
    "check_unique",
    "coerce_value",
    "columns_of",
    "decode_value",
    "field_names",
    "flat_columns",
    "is_missing",
    "key_time",
    "parameter_column",
    "quality_column",
    "time_key",
    "to_naive_utc",
]
