"""Marker geometry: tagged shape variants and the pure math that works on them.

Every shape carries a ``kind`` discriminator ("point", "rectangle" or
"polygon") and is matched on that tag rather than through subclassing.
Coordinates are image-space unless a function says otherwise.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Iterable, Sequence, Union

POINT = "point"
RECTANGLE = "rectangle"
POLYGON = "polygon"
KINDS = (POINT, RECTANGLE, POLYGON)

NEIGHBOR_THRESHOLD = 30.0


# -- Shapes -------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Point:
  x: float
  y: float
  kind: str = dataclasses.field(default=POINT, init=False)


@dataclasses.dataclass(frozen=True)
class Rectangle:
  x: float
  y: float
  w: float
  h: float
  kind: str = dataclasses.field(default=RECTANGLE, init=False)


@dataclasses.dataclass(frozen=True)
class Polygon:
  points: tuple[Point, ...]
  kind: str = dataclasses.field(default=POLYGON, init=False)

  def __post_init__(self) -> None:
    # Accept any iterable of points or (x, y) pairs
    pts = tuple(p if isinstance(p, Point) else Point(p[0], p[1]) for p in self.points)
    object.__setattr__(self, "points", pts)


Geometry = Union[Point, Rectangle, Polygon]


def _unknown(geometry) -> ValueError:
  return ValueError("Unknown geometry kind: %r" % (getattr(geometry, "kind", None),))


def to_dict(geometry: Geometry) -> dict:
  """Plain-dict form handed to collaborators."""
  if geometry.kind == POINT:
    return {"type": POINT, "x": geometry.x, "y": geometry.y}
  elif geometry.kind == RECTANGLE:
    return {"type": RECTANGLE, "x": geometry.x, "y": geometry.y,
            "width": geometry.w, "height": geometry.h}
  elif geometry.kind == POLYGON:
    return {"type": POLYGON, "points": [{"x": p.x, "y": p.y} for p in geometry.points]}
  raise _unknown(geometry)


def from_dict(d: dict) -> Geometry:
  kind = d.get("type")
  if kind == POINT:
    return Point(float(d["x"]), float(d["y"]))
  elif kind == RECTANGLE:
    return Rectangle(float(d["x"]), float(d["y"]),
                     float(d.get("width", d.get("w", 0.0))),
                     float(d.get("height", d.get("h", 0.0))))
  elif kind == POLYGON:
    return Polygon(tuple(Point(float(p["x"]), float(p["y"])) for p in d.get("points", [])))
  raise ValueError("Unknown geometry type: %r" % (kind,))


# -- Rectangles ---------------------------------------------------------------

def rect_from_corners(x1: float, y1: float, x2: float, y2: float) -> Rectangle:
  """Rectangle spanning two opposite corners, in any order."""
  return Rectangle(min(x1, x2), min(y1, y2), abs(x2 - x1), abs(y2 - y1))


def normalize_rect(rect: Rectangle) -> Rectangle:
  """Return an equivalent rectangle with non-negative width and height.

  Idempotent: normalizing an already normalized rectangle returns an equal one.
  """
  return rect_from_corners(rect.x, rect.y, rect.x + rect.w, rect.y + rect.h)


def rect_bounds(rect: Rectangle) -> tuple[float, float, float, float]:
  r = normalize_rect(rect)
  return r.x, r.y, r.x + r.w, r.y + r.h


def point_in_rectangle(px: float, py: float, rect: Rectangle,
                       scale_x: float = 1.0, scale_y: float = 1.0) -> bool:
  """Bounds check against *rect* scaled by (scale_x, scale_y), edges inclusive."""
  left, top, right, bottom = rect_bounds(rect)
  return (left * scale_x <= px <= right * scale_x
          and top * scale_y <= py <= bottom * scale_y)


# -- Polygons -----------------------------------------------------------------

def polygon_area(points: Sequence[Point]) -> float:
  """Shoelace formula: absolute value of the summed cross products, halved."""
  n = len(points)
  if n < 3:
    return 0.0
  total = 0.0
  for i in range(n):
    j = (i + 1) % n
    total += points[i].x * points[j].y
    total -= points[j].x * points[i].y
  return abs(total / 2.0)


def point_in_polygon(px: float, py: float, points: Sequence[Point]) -> bool:
  """Even-odd ray casting test."""
  inside = False
  n = len(points)
  j = n - 1
  for i in range(n):
    xi, yi = points[i].x, points[i].y
    xj, yj = points[j].x, points[j].y
    if (yi > py) != (yj > py):
      x_cross = (xj - xi) * (py - yi) / (yj - yi) + xi
      if px < x_cross:
        inside = not inside
    j = i
  return inside


# -- Any shape ----------------------------------------------------------------

def area(geometry: Geometry) -> float:
  if geometry.kind == POINT:
    return 0.0
  elif geometry.kind == RECTANGLE:
    r = normalize_rect(geometry)
    return r.w * r.h
  elif geometry.kind == POLYGON:
    return polygon_area(geometry.points)
  raise _unknown(geometry)


def bounds(geometry: Geometry) -> tuple[float, float, float, float]:
  """(left, top, right, bottom) of a shape."""
  if geometry.kind == POINT:
    return geometry.x, geometry.y, geometry.x, geometry.y
  elif geometry.kind == RECTANGLE:
    return rect_bounds(geometry)
  elif geometry.kind == POLYGON:
    if not geometry.points:
      return 0.0, 0.0, 0.0, 0.0
    xs = [p.x for p in geometry.points]
    ys = [p.y for p in geometry.points]
    return min(xs), min(ys), max(xs), max(ys)
  raise _unknown(geometry)


def centroid(geometry: Geometry) -> Point:
  """Label anchor of a shape (vertex average for polygons)."""
  if geometry.kind == POINT:
    return Point(geometry.x, geometry.y)
  elif geometry.kind == RECTANGLE:
    r = normalize_rect(geometry)
    return Point(r.x + r.w / 2.0, r.y + r.h / 2.0)
  elif geometry.kind == POLYGON:
    n = len(geometry.points)
    if n == 0:
      return Point(0.0, 0.0)
    return Point(sum(p.x for p in geometry.points) / n,
                 sum(p.y for p in geometry.points) / n)
  raise _unknown(geometry)


def scale_geometry(geometry: Geometry, sx: float, sy: float) -> Geometry:
  if geometry.kind == POINT:
    return Point(geometry.x * sx, geometry.y * sy)
  elif geometry.kind == RECTANGLE:
    return Rectangle(geometry.x * sx, geometry.y * sy, geometry.w * sx, geometry.h * sy)
  elif geometry.kind == POLYGON:
    return Polygon(tuple(Point(p.x * sx, p.y * sy) for p in geometry.points))
  raise _unknown(geometry)


def translate_geometry(geometry: Geometry, dx: float, dy: float) -> Geometry:
  if geometry.kind == POINT:
    return Point(geometry.x + dx, geometry.y + dy)
  elif geometry.kind == RECTANGLE:
    return Rectangle(geometry.x + dx, geometry.y + dy, geometry.w, geometry.h)
  elif geometry.kind == POLYGON:
    return Polygon(tuple(Point(p.x + dx, p.y + dy) for p in geometry.points))
  raise _unknown(geometry)


# -- Points -------------------------------------------------------------------

def distance(a: Point, b: Point) -> float:
  return math.hypot(b.x - a.x, b.y - a.y)


def are_neighbors(a: Point, b: Point, threshold: float = NEIGHBOR_THRESHOLD) -> bool:
  """Label-placement proximity: both axis distances within *threshold*."""
  return abs(a.x - b.x) <= threshold and abs(a.y - b.y) <= threshold


def interpolate_points(start: Point, end: Point, count: int) -> list[Point]:
  """*count* evenly spaced points strictly between *start* and *end*."""
  if count <= 0:
    return []
  result = []
  for i in range(1, count + 1):
    t = i / (count + 1)
    result.append(Point(start.x + t * (end.x - start.x), start.y + t * (end.y - start.y)))
  return result


def count_for_spacing(distance_px: float, pixels_per_meter: float, spacing_m: float) -> int:
  """How many intermediate points a line of *distance_px* gets at *spacing_m*."""
  if not pixels_per_meter or not spacing_m or pixels_per_meter <= 0 or spacing_m <= 0:
    return 1
  real = distance_px / pixels_per_meter
  return max(1, math.floor(real / spacing_m) - 1)


def area_in_square_meters(area_px: float, pixels_per_meter: float | None) -> float | None:
  if not pixels_per_meter or pixels_per_meter <= 0:
    return None
  return area_px / (pixels_per_meter * pixels_per_meter)


def as_points(pairs: Iterable[tuple[float, float]]) -> tuple[Point, ...]:
  return tuple(Point(float(x), float(y)) for x, y in pairs)
