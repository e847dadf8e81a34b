"""
Result Decimator: deterministic down-sampling of a result series.

The key extent of a series (timestamps, or depths for a profile) is cut in
``size`` equal-width buckets. Each non-empty bucket emits one point: the
main value of its first row and, per field, the first non-null value met
in the bucket. Nothing is averaged or interpolated, so the same rows and
size always give the same output.

Only quantity fields survive decimation. Quality, parameter, text and
boolean columns are dropped; a series with no quantity field left cannot
be decimated.

Location histories use the same buckets on a time by space grid, see
``LocationDecimator``.

Examples:
    >>> dec = ResultDecimator([Field("depth"), Field("temp")], size=2, procedure_id="p")
    >>> [r["depth"] for r in dec.decimate([{"depth": d, "temp": d} for d in (0.0, 1.0, 9.0)])]
    [0.0, 9.0]
"""

from __future__ import annotations

import datetime
from collections.abc import Sequence
from typing import Any

from shapely.geometry import MultiPoint, Point

from obspine.core.errors import DecimationUnsupportedError, ValidationError
from obspine.core.logging import get_logger
from obspine.om.fields import Field, FieldType, is_missing, time_key
from obspine.om.geometry import union_bounds
from obspine.om.model import Location, Row
from obspine.om.results import ID_COLUMN, PROFILE_TIME_COLUMN

logger = get_logger(__name__)


def decimated_id(procedure_id: str, index: int) -> str:
    return f"{procedure_id}-dec-{index}"


def _key(value: Any) -> float:
    if isinstance(value, datetime.datetime):
        return time_key(value)
    return float(value)


def bucket_index(key: float, lo: float, width: float, size: int) -> int:
    """Index of the equal-width bucket holding ``key``. The last bucket is closed."""
    if width == 0:
        return 0
    return min(int((key - lo) / width), size - 1)


class ResultDecimator:
    """Buckets rows of one procedure. Stateless between calls."""

    def __init__(self, fields: Sequence[Field], size: int, procedure_id: str):
        if size < 1:
            raise ValidationError("decimation size must be at least 1", field="decimation_size",
                                  value=size, constraint="positive")
        if not fields:
            raise ValidationError("nothing to decimate", constraint="non_empty_fields")
        self.size = size
        self.procedure_id = procedure_id
        self.main = fields[0]
        self.data = [f.without_sub_fields() for f in fields[1:] if f.type is FieldType.QUANTITY]

    @property
    def fields(self) -> list[Field]:
        """Fields of the decimated output, main field first."""
        return [self.main, *self.data]

    def needed(self, groups: Sequence[Sequence[Row]]) -> bool:
        return any(len(rows) > self.size for rows in groups)

    def check(self) -> None:
        if not self.data:
            raise DecimationUnsupportedError(
                f"procedure {self.procedure_id!r} has no numeric field to decimate",
            ).with_context(procedure=self.procedure_id, operation="decimate")

    def decimate(self, rows: Sequence[Row], offset: int = 0) -> list[Row]:
        """Decimate one series. ``offset`` shifts the synthetic id index."""
        if len(rows) <= self.size:
            return list(rows)
        return self._bucketize(rows, offset)

    def decimate_groups(self, groups: Sequence[Sequence[Row]]) -> list[Row]:
        """Decimate each series separately (one per profile) and concatenate.

        Once any series needs decimation, every series is projected onto the
        decimated fields so the output stays one homogeneous matrix.
        """
        if not self.needed(groups):
            return [row for rows in groups for row in rows]
        self.check()
        out: list[Row] = []
        for number, rows in enumerate(groups):
            out.extend(self._bucketize(rows, number * self.size))
        logger.debug("result_decimated", procedure=self.procedure_id, size=self.size,
                     groups=len(groups), rows=len(out))
        return out

    def _bucketize(self, rows: Sequence[Row], offset: int) -> list[Row]:
        self.check()
        if not rows:
            return []
        main = self.main.name
        ordered = sorted(rows, key=lambda r: _key(r[main]))
        lo = _key(ordered[0][main])
        hi = _key(ordered[-1][main])
        width = (hi - lo) / self.size

        buckets: dict[int, list[Row]] = {}
        for row in ordered:
            index = bucket_index(_key(row[main]), lo, width, self.size)
            buckets.setdefault(index, []).append(row)

        out = []
        for position, index in enumerate(sorted(buckets)):
            members = buckets[index]
            point: Row = {main: members[0][main]}
            if PROFILE_TIME_COLUMN in members[0] and main != PROFILE_TIME_COLUMN:
                point[PROFILE_TIME_COLUMN] = members[0][PROFILE_TIME_COLUMN]
            for f in self.data:
                point[f.name] = next(
                    (r[f.name] for r in members if not is_missing(r.get(f.name))), None
                )
            point[ID_COLUMN] = decimated_id(self.procedure_id, offset + position)
            out.append(point)
        return out


class LocationDecimator:
    """Thins a location history on a time by space grid.

    The time extent is cut in ``size`` buckets and the spatial extent
    (``bounds``, or the locations' own envelope) in ``size`` x ``size``
    cells. Each occupied (bucket, cell) emits one location: the time of its
    first member and the centroid of its points. Non-point geometries are
    left out.
    """

    def __init__(self, size: int, bounds: tuple[float, float, float, float] | None = None):
        if size < 1:
            raise ValidationError("decimation size must be at least 1", field="decimation_size",
                                  value=size, constraint="positive")
        self.size = size
        self.bounds = bounds

    def decimate(self, locations: Sequence[Location]) -> list[Location]:
        if len(locations) <= self.size:
            return list(locations)
        points = [loc for loc in locations if isinstance(loc.geometry, Point)]
        if len(points) < len(locations):
            logger.warning("non_point_locations_skipped", skipped=len(locations) - len(points))
        if not points:
            return []
        ordered = sorted(points, key=lambda loc: loc.time)
        lo = time_key(ordered[0].time)
        width = (time_key(ordered[-1].time) - lo) / self.size
        minx, miny, maxx, maxy = self.bounds or union_bounds([loc.geometry for loc in ordered])
        x_step = (maxx - minx) / self.size
        y_step = (maxy - miny) / self.size

        cells: dict[tuple[int, int, int], list[Location]] = {}
        for loc in ordered:
            x, y = loc.geometry.x, loc.geometry.y
            if not (minx <= x <= maxx and miny <= y <= maxy):
                continue
            key = (
                bucket_index(time_key(loc.time), lo, width, self.size),
                bucket_index(x, minx, x_step, self.size),
                bucket_index(y, miny, y_step, self.size),
            )
            cells.setdefault(key, []).append(loc)

        out = []
        for key in sorted(cells, key=lambda k: (k[0], cells[k][0].time, k)):
            members = cells[key]
            first = members[0]
            if len(members) == 1:
                geometry = first.geometry
            else:
                geometry = MultiPoint([m.geometry for m in members]).centroid
            out.append(Location(first.time, geometry, first.srid))
        logger.debug("locations_decimated", size=self.size, locations=len(locations), kept=len(out))
        return out


__all__ = ["ID_COLUMN", "LocationDecimator", "ResultDecimator", "bucket_index", "decimated_id"]
