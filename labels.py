"""Label side selection for point markers.

Picks top/bottom/left/right per point so labels of close, aligned points
alternate instead of stacking on each other. Purely a function of the point
set and the rotation; nothing is remembered between calls.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from geometry import NEIGHBOR_THRESHOLD, POINT, are_neighbors

TOP = "top"
BOTTOM = "bottom"
LEFT = "left"
RIGHT = "right"
SIDES = (TOP, BOTTOM, LEFT, RIGHT)

ALIGN_TOLERANCE = 5.0

_ROTATED_SIDE = {
  0: {TOP: TOP, BOTTOM: BOTTOM, LEFT: LEFT, RIGHT: RIGHT},
  90: {TOP: LEFT, BOTTOM: RIGHT, LEFT: BOTTOM, RIGHT: TOP},
  180: {TOP: BOTTOM, BOTTOM: TOP, LEFT: RIGHT, RIGHT: LEFT},
  270: {TOP: RIGHT, BOTTOM: LEFT, LEFT: TOP, RIGHT: BOTTOM},
}


def rotate_side(side: str, rotation: int) -> str:
  """Relabel a side for display under *rotation* (0/90/180/270)."""
  return _ROTATED_SIDE[rotation % 360][side]


def _index_in_line(marker, line: list, axis: str) -> int:
  if axis == "x":
    line.sort(key=lambda m: (m.geometry.x, m.geometry.y, m.id))
  else:
    line.sort(key=lambda m: (m.geometry.y, m.geometry.x, m.id))
  return next(i for i, m in enumerate(line) if m.id == marker.id)


def base_side(marker, points: Sequence, rotation: int = 0,
              threshold: float = NEIGHBOR_THRESHOLD) -> str:
  """Side chosen in image orientation, before the rotation relabeling."""
  here = marker.geometry
  neighbors = [
    p for p in points
    if p.id != marker.id and are_neighbors(here, p.geometry, threshold)
  ]
  if not neighbors:
    return TOP

  in_row = any(abs(n.geometry.y - here.y) < ALIGN_TOLERANCE for n in neighbors)
  in_column = any(abs(n.geometry.x - here.x) < ALIGN_TOLERANCE for n in neighbors)
  if rotation % 180 == 90:
    in_row, in_column = in_column, in_row

  # Rows win when a point is aligned both ways
  if in_row:
    line = [p for p in points if abs(p.geometry.y - here.y) < ALIGN_TOLERANCE]
    return TOP if _index_in_line(marker, line, "x") % 2 == 0 else BOTTOM
  if in_column:
    line = [p for p in points if abs(p.geometry.x - here.x) < ALIGN_TOLERANCE]
    return LEFT if _index_in_line(marker, line, "y") % 2 == 0 else RIGHT
  return TOP


def place_label(marker, points: Iterable, rotation: int = 0,
                threshold: float = NEIGHBOR_THRESHOLD) -> str:
  """Screen side for *marker*'s label among *points* under *rotation*."""
  pts = [p for p in points if p.geometry.kind == POINT]
  if all(p.id != marker.id for p in pts):
    pts.append(marker)
  return rotate_side(base_side(marker, pts, rotation, threshold), rotation)


def place_labels(points: Iterable, rotation: int = 0,
                 threshold: float = NEIGHBOR_THRESHOLD) -> dict[str, str]:
  """Screen side per point marker id."""
  pts = [p for p in points if p.geometry.kind == POINT]
  return {
    p.id: rotate_side(base_side(p, pts, rotation, threshold), rotation)
    for p in pts
  }
