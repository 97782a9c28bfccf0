"""Guide lines and snapping.

Guides are named horizontal or vertical reference lines (floor levels,
section boundaries) placed at a percentage of the native image size, so
their position never depends on pan, zoom or rotation.
"""

from __future__ import annotations

import dataclasses
from typing import Iterable, Iterator

from geometry import POINT

HORIZONTAL = "horizontal"
VERTICAL = "vertical"
AXES = (HORIZONTAL, VERTICAL)

SNAP_THRESHOLD = 15.0
ALIGNMENT_SNAP_THRESHOLD = 10.0


@dataclasses.dataclass(frozen=True)
class GuideLine:
  name: str
  axis: str
  position_percent: float

  def __post_init__(self) -> None:
    if self.axis not in AXES:
      raise ValueError("Guide axis must be one of %s, got %r" % (AXES, self.axis))
    if not 0.0 <= self.position_percent <= 100.0:
      raise ValueError("Guide position must be within [0, 100], got %r" % (self.position_percent,))

  def position_on(self, extent: float) -> float:
    """Position along an axis of length *extent* (surface or image units)."""
    return self.position_percent * extent / 100.0


@dataclasses.dataclass(frozen=True)
class SnapResult:
  x: float
  y: float
  snapped_x: bool = False
  snapped_y: bool = False
  vertical: tuple[float, ...] = ()    # x positions of lines the point is near
  horizontal: tuple[float, ...] = ()  # y positions of lines the point is near

  @property
  def snapped(self) -> bool:
    return self.snapped_x or self.snapped_y


class GuideLineIndex:
  """Ordered collection of guide lines with nearest-line snapping."""

  def __init__(self, guides: Iterable[GuideLine] = ()):
    self._guides: list[GuideLine] = []
    for g in guides:
      self.add(g)

  @classmethod
  def from_positions(cls, vertical: dict[str, float] | None = None,
                     horizontal: dict[str, float] | None = None) -> GuideLineIndex:
    """Build from ``{name: percent}`` maps (floors are vertical, divisions horizontal)."""
    index = cls()
    for name, pos in (vertical or {}).items():
      index.add(GuideLine(name, VERTICAL, float(pos)))
    for name, pos in (horizontal or {}).items():
      index.add(GuideLine(name, HORIZONTAL, float(pos)))
    return index

  def add(self, guide: GuideLine) -> None:
    self._guides = [g for g in self._guides if not (g.name == guide.name and g.axis == guide.axis)]
    self._guides.append(guide)

  def remove(self, name: str, axis: str | None = None) -> bool:
    before = len(self._guides)
    self._guides = [
      g for g in self._guides
      if not (g.name == name and (axis is None or g.axis == axis))
    ]
    return len(self._guides) != before

  def clear(self) -> None:
    self._guides.clear()

  def __iter__(self) -> Iterator[GuideLine]:
    return iter(list(self._guides))

  def __len__(self) -> int:
    return len(self._guides)

  def by_axis(self, axis: str) -> list[GuideLine]:
    return [g for g in self._guides if g.axis == axis]

  def nearest(self, axis: str, value: float, extent: float,
              threshold: float = SNAP_THRESHOLD) -> tuple[GuideLine, float] | None:
    """Closest guide on *axis* within *threshold* of *value*; ties go to the first added."""
    best = None
    best_dist = None
    for g in self.by_axis(axis):
      pos = g.position_on(extent)
      dist = abs(value - pos)
      if dist <= threshold and (best_dist is None or dist < best_dist):
        best = (g, pos)
        best_dist = dist
    return best

  def snap(self, x: float, y: float, surface_width: float, surface_height: float,
           threshold: float = SNAP_THRESHOLD,
           threshold_y: float | None = None) -> SnapResult:
    """Snap x to the nearest vertical guide and y to the nearest horizontal one.

    *threshold_y* applies to horizontal guides when the two axes are
    measured in different units; it defaults to *threshold*.
    """
    if threshold_y is None:
      threshold_y = threshold
    vertical = tuple(
      g.position_on(surface_width) for g in self.by_axis(VERTICAL)
      if abs(x - g.position_on(surface_width)) <= threshold
    )
    horizontal = tuple(
      g.position_on(surface_height) for g in self.by_axis(HORIZONTAL)
      if abs(y - g.position_on(surface_height)) <= threshold_y
    )
    hit_x = self.nearest(VERTICAL, x, surface_width, threshold)
    hit_y = self.nearest(HORIZONTAL, y, surface_height, threshold_y)
    return SnapResult(
      x=hit_x[1] if hit_x else x,
      y=hit_y[1] if hit_y else y,
      snapped_x=hit_x is not None,
      snapped_y=hit_y is not None,
      vertical=vertical,
      horizontal=horizontal,
    )


def alignment_snap(x: float, y: float, markers: Iterable, exclude_id: str | None = None,
                   threshold: float = ALIGNMENT_SNAP_THRESHOLD) -> SnapResult:
  """Snap to the X/Y of existing point markers (image space).

  Archived points and the point being moved (*exclude_id*) are not targets.
  """
  vertical: list[float] = []
  horizontal: list[float] = []
  for m in markers:
    if m.id == exclude_id or m.archived or m.geometry.kind != POINT:
      continue
    if abs(m.geometry.x - x) < threshold and m.geometry.x not in vertical:
      vertical.append(m.geometry.x)
    if abs(m.geometry.y - y) < threshold and m.geometry.y not in horizontal:
      horizontal.append(m.geometry.y)

  new_x, new_y = x, y
  if vertical:
    new_x = min(vertical, key=lambda v: abs(v - x))
  if horizontal:
    new_y = min(horizontal, key=lambda v: abs(v - y))
  return SnapResult(
    x=new_x, y=new_y,
    snapped_x=bool(vertical), snapped_y=bool(horizontal),
    vertical=tuple(vertical), horizontal=tuple(horizontal),
  )
