"""Geometry codec and bbox tests (shapely).

Stored geometries are WKB in lon/lat axis order. EPSG:4326 input given in
lat/lon order is swapped once, on the way in, so every comparison below
runs in a single axis order. srid 0 (unknown) is read as EPSG:4326.
"""

from __future__ import annotations

from shapely import wkb
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform

WGS84 = 4326


def normalize_srid(srid: int | None, default: int = WGS84) -> int:
    if not srid:
        return default
    return srid


def swap_axes(geometry: BaseGeometry) -> BaseGeometry:
    return transform(lambda x, y, z=None: (y, x) if z is None else (y, x, z), geometry)


def normalize_geometry(
    geometry: BaseGeometry, srid: int | None, axis_order: str = "lonlat"
) -> tuple[BaseGeometry, int]:
    """Return the geometry in lon/lat order with its effective srid."""
    srid = normalize_srid(srid)
    if srid == WGS84 and axis_order == "latlon":
        geometry = swap_axes(geometry)
    return geometry, srid


def to_wkb(geometry: BaseGeometry | None) -> bytes | None:
    if geometry is None:
        return None
    return wkb.dumps(geometry)


def from_wkb(data: bytes | None) -> BaseGeometry | None:
    if data is None:
        return None
    return wkb.loads(bytes(data))


def envelope(
    minx: float, miny: float, maxx: float, maxy: float, srid: int | None = WGS84, axis_order: str = "lonlat"
) -> BaseGeometry:
    geom, _ = normalize_geometry(box(minx, miny, maxx, maxy), srid, axis_order)
    return geom.envelope


def intersects_bbox(geometry: BaseGeometry | None, bbox: BaseGeometry) -> bool:
    return geometry is not None and geometry.intersects(bbox)


def union_bounds(geometries: list[BaseGeometry]) -> tuple[float, float, float, float] | None:
    bounds = [g.bounds for g in geometries if g is not None and not g.is_empty]
    if not bounds:
        return None
    return (
        min(b[0] for b in bounds),
        min(b[1] for b in bounds),
        max(b[2] for b in bounds),
        max(b[3] for b in bounds),
    )


__all__ = [
    "WGS84",
    "envelope",
    "from_wkb",
    "intersects_bbox",
    "normalize_geometry",
    "normalize_srid",
    "swap_axes",
    "to_wkb",
    "union_bounds",
]
