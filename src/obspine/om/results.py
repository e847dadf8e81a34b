"""
Result formats.

csv:
    one header line, then one line per row. Columns are the optional id,
    the optional profile time, the main field, then every data column
    (sub-field columns follow their field).
text/csv-flat:
    one line per non-null (row, data field), with sensor and phenomenon
    metadata repeated on each line. A profile's main value goes to
    ``z_value``; quality and parameter values are rendered ``name:value``
    joined by ``|``.
count:
    the row count only.
resultArray:
    the csv matrix as a list of lists, without header.
"""

from __future__ import annotations

import datetime
from collections.abc import Mapping, Sequence
from typing import Any

from obspine.om.fields import Field, FieldType, flat_columns, parameter_column, quality_column
from obspine.om.model import Phenomenon, Procedure, Row
from obspine.om.queries import TextEncoding

ID_COLUMN = "id"
PROFILE_TIME_COLUMN = "time"

FLAT_HEADER = (
    "time",
    "sensor_id",
    "sensor_name",
    "sensor_description",
    "obsprop_id",
    "obsprop_name",
    "obsprop_desc",
    "obsprop_unit",
    "z_value",
    "value",
    "value_quality",
    "value_parameter",
)


def format_value(value: Any, encoding: TextEncoding | None = None) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, float):
        text = str(int(value)) if value.is_integer() else repr(value)
        if encoding is not None and encoding.decimal_separator != ".":
            text = text.replace(".", encoding.decimal_separator)
        return text
    return str(value)


def columns(fields: Sequence[Field], *, include_id: bool = False, include_time: bool = False) -> list[str]:
    names = []
    if include_id:
        names.append(ID_COLUMN)
    if include_time:
        names.append(PROFILE_TIME_COLUMN)
    names.append(fields[0].name)
    names.extend(c.name for c in flat_columns(fields[1:]))
    return names


def result_fields(fields: Sequence[Field], *, include_id: bool = False, include_time: bool = False) -> list[Field]:
    """Field list matching :func:`columns`, with the synthetic id and time fields in front."""
    out = []
    if include_id:
        out.append(Field(ID_COLUMN, FieldType.TEXT))
    if include_time:
        out.append(Field(PROFILE_TIME_COLUMN, FieldType.TIME))
    out.extend(fields)
    return out


def to_array(names: Sequence[str], rows: Sequence[Row]) -> list[list[Any]]:
    return [[row.get(n) for n in names] for row in rows]


def to_csv(names: Sequence[str], rows: Sequence[Row], encoding: TextEncoding | None = None) -> str:
    enc = encoding or TextEncoding()
    lines = [enc.token_separator.join(names)]
    for row in rows:
        lines.append(enc.token_separator.join(format_value(row.get(n), enc) for n in names))
    return "".join(line + enc.block_separator for line in lines)


def _sub_values(row: Row, parent: str, subs: Sequence[Field], column_name, enc: TextEncoding) -> str:
    parts = []
    for sub in subs:
        value = row.get(column_name(parent, sub.name))
        if value is not None:
            parts.append(f"{sub.name}:{format_value(value, enc)}")
    return "|".join(parts)


def to_csv_flat(
    procedure: Procedure,
    fields: Sequence[Field],
    rows: Sequence[Row],
    phenomena: Mapping[str, Phenomenon],
    *,
    profile: bool,
    encoding: TextEncoding | None = None,
) -> str:
    """Flat csv. ``phenomena`` maps a field name to the phenomenon it measures."""
    enc = encoding or TextEncoding()
    main = fields[0]
    lines = [enc.token_separator.join(FLAT_HEADER)]
    for row in rows:
        if profile:
            time, z_value = row.get(PROFILE_TIME_COLUMN), row.get(main.name)
        else:
            time, z_value = row.get(main.name), None
        for f in fields[1:]:
            value = row.get(f.name)
            if value is None:
                continue
            phen = phenomena.get(f.name)
            cells = [
                time,
                procedure.id,
                procedure.name,
                procedure.description,
                phen.id if phen else f.name,
                (phen.name if phen else None) or f.label or f.name,
                (phen.description if phen else None) or f.description,
                f.uom,
                z_value,
                value,
                _sub_values(row, f.name, f.quality_fields, quality_column, enc),
                _sub_values(row, f.name, f.parameter_fields, parameter_column, enc),
            ]
            lines.append(enc.token_separator.join(format_value(c, enc) for c in cells))
    return "".join(line + enc.block_separator for line in lines)


__all__ = [
    "FLAT_HEADER",
    "ID_COLUMN",
    "PROFILE_TIME_COLUMN",
    "columns",
    "format_value",
    "result_fields",
    "to_array",
    "to_csv",
    "to_csv_flat",
]
