"""Interactive creation of rectangle and polygon markers.

Input points are surface coordinates: the unrotated image fitted to the
drawing surface. They are snapped to guide lines there, then scaled into
image space (image size / surface size) before they reach the store.

Size, closing and snap thresholds are screen pixels. The widget sets the
pixel scale (screen pixels per surface unit) so they hold at any zoom.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Any

import geometry as geo
from geometry import Point, Polygon, Rectangle
from guides import SNAP_THRESHOLD, GuideLineIndex
from log import get_logger
from markers import CategoryCatalog, Marker, MarkerStore

log = get_logger("drawing")

RECTANGLE_MODE = "rectangle"
POLYGON_MODE = "polygon"
MODES = (RECTANGLE_MODE, POLYGON_MODE)

IDLE = "idle"
ARMED = "armed"
DRAWING = "drawing"

COMMITTED = "committed"
CANCELLED = "cancelled"
DISCARDED = "discarded"
REJECTED = "rejected"

MIN_RECTANGLE_SIZE = 10.0
CLOSE_DISTANCE = 10.0


class InputError(Exception):
  """The pending shape cannot become a marker (too small, too few vertices)."""


@dataclasses.dataclass
class DrawingSession:
  mode: str
  vertices: list[Point] = dataclasses.field(default_factory=list)
  anchor: Point | None = None
  current: Point | None = None

  def preview_rect(self) -> Rectangle | None:
    if self.anchor is None or self.current is None:
      return None
    return geo.rect_from_corners(self.anchor.x, self.anchor.y, self.current.x, self.current.y)

  def to_dict(self) -> dict[str, Any]:
    return {
      "mode": self.mode,
      "vertices": [(p.x, p.y) for p in self.vertices],
      "anchor": (self.anchor.x, self.anchor.y) if self.anchor else None,
      "current": (self.current.x, self.current.y) if self.current else None,
    }


class DrawingStateMachine:
  """Idle -> Armed(category) -> Drawing -> committed/cancelled.

  After a commit or cancel the session is dropped and the machine goes back
  to Armed while a category stays selected (or Idle if ``stay_armed`` is off).
  """

  def __init__(self, store: MarkerStore, guides: GuideLineIndex | None = None,
               catalog: CategoryCatalog | None = None, *,
               mode: str = RECTANGLE_MODE,
               snap_threshold: float = SNAP_THRESHOLD,
               min_rectangle_size: float = MIN_RECTANGLE_SIZE,
               close_distance: float = CLOSE_DISTANCE,
               stay_armed: bool = True):
    if mode not in MODES:
      raise ValueError("Unknown drawing mode %r" % (mode,))
    self.store = store
    self.guides = guides if guides is not None else GuideLineIndex()
    self.catalog = catalog
    self.mode = mode
    self.snap_threshold = snap_threshold
    self.min_rectangle_size = min_rectangle_size
    self.close_distance = close_distance
    self.stay_armed = stay_armed
    self.enabled = True

    self.state = IDLE
    self.category_id: str | None = None
    self.last_outcome: str | None = None
    self._session: DrawingSession | None = None
    self._surface = (0.0, 0.0)
    self._image = (0.0, 0.0)
    self._pixel_scale = (1.0, 1.0)  # screen px per surface unit (x, y)

  # -- Setup ------------------------------------------------------------------

  @property
  def session(self) -> DrawingSession | None:
    return self._session

  @property
  def ready(self) -> bool:
    return min(self._surface + self._image) > 0

  @property
  def active(self) -> bool:
    return self.ready and self.enabled

  def set_frame(self, surface_width: float, surface_height: float,
                image_width: float, image_height: float) -> None:
    """Surface and native image sizes used for snapping and scaling."""
    self._surface = (float(surface_width), float(surface_height))
    self._image = (float(image_width), float(image_height))

  def set_pixel_scale(self, sx: float, sy: float) -> None:
    """Screen pixels per surface unit along each surface axis."""
    if sx <= 0 or sy <= 0:
      raise ValueError("Pixel scale must be positive, got %s, %s" % (sx, sy))
    self._pixel_scale = (float(sx), float(sy))

  @property
  def pixel_scale(self) -> tuple[float, float]:
    return self._pixel_scale

  @property
  def snap_thresholds(self) -> tuple[float, float]:
    """Guide snap threshold converted to surface units (x, y)."""
    sx, sy = self._pixel_scale
    return self.snap_threshold / sx, self.snap_threshold / sy

  def screen_distance(self, a: Point, b: Point) -> tuple[float, float]:
    """On-screen extent of the surface vector a -> b, per surface axis."""
    sx, sy = self._pixel_scale
    return abs(b.x - a.x) * sx, abs(b.y - a.y) * sy

  def set_mode(self, mode: str) -> None:
    if mode not in MODES:
      raise ValueError("Unknown drawing mode %r" % (mode,))
    if mode != self.mode and self.state == DRAWING:
      self.cancel()
    self.mode = mode

  def arm(self, category_id: str | None) -> None:
    if self.state == DRAWING:
      self.cancel()
    self.category_id = category_id
    self.state = ARMED

  def disarm(self) -> None:
    if self.state == DRAWING:
      self.cancel()
    self.category_id = None
    self.state = IDLE

  def disable(self) -> None:
    if self.state == DRAWING:
      self.cancel()
    self.enabled = False

  def enable(self) -> None:
    self.enabled = True

  # -- Coordinates ------------------------------------------------------------

  def snap(self, p: Point) -> Point:
    sw, sh = self._surface
    tx, ty = self.snap_thresholds
    res = self.guides.snap(p.x, p.y, sw, sh, tx, threshold_y=ty)
    return Point(res.x, res.y)

  def to_image(self, p: Point) -> Point:
    sw, sh = self._surface
    iw, ih = self._image
    return Point(p.x * iw / sw, p.y * ih / sh)

  # -- Rectangle mode ---------------------------------------------------------

  def pointer_down(self, p: Point) -> bool:
    if not self.active or self.mode != RECTANGLE_MODE or self.state != ARMED:
      return False
    self._session = DrawingSession(RECTANGLE_MODE, anchor=p, current=p)
    self.state = DRAWING
    return True

  def pointer_move(self, p: Point) -> bool:
    if self.state != DRAWING or self._session is None or self.mode != RECTANGLE_MODE:
      return False
    self._session.current = p
    return True

  def pointer_up(self, p: Point) -> Marker | None:
    if self.state != DRAWING or self._session is None or self.mode != RECTANGLE_MODE:
      return None
    self._session.current = p
    try:
      rect = self._rectangle_geometry()
    except InputError as e:
      log.debug("Rectangle discarded: %s", e)
      self._finish(DISCARDED)
      return None
    return self._create(rect)

  def _rectangle_geometry(self) -> Rectangle:
    start = self._session.anchor
    end = self._session.current
    dx, dy = self.screen_distance(start, end)
    if not (dx > self.min_rectangle_size and dy > self.min_rectangle_size):
      raise InputError("rectangle %.1fx%.1f px is below %.0f" % (dx, dy, self.min_rectangle_size))
    a = self.to_image(self.snap(start))
    b = self.to_image(self.snap(end))
    return geo.rect_from_corners(a.x, a.y, b.x, b.y)

  # -- Polygon mode -----------------------------------------------------------

  def click(self, p: Point) -> Marker | None:
    """Add a snapped vertex, or close the polygon near its first vertex."""
    if not self.active or self.mode != POLYGON_MODE or self.state not in (ARMED, DRAWING):
      return None
    vertex = self.snap(p)
    if self.state == ARMED or self._session is None:
      self._session = DrawingSession(POLYGON_MODE)
      self.state = DRAWING

    vertices = self._session.vertices
    if len(vertices) >= 3:
      first = vertices[0]
      if math.hypot(*self.screen_distance(first, vertex)) < self.close_distance:
        return self.commit()

    if not vertices or vertices[-1] != vertex:
      vertices.append(vertex)
    return None

  def double_click(self) -> Marker | None:
    if self.mode != POLYGON_MODE:
      return None
    return self.commit()

  def commit(self) -> Marker | None:
    """Finish the pending polygon. Fewer than 3 vertices: silently kept drawing."""
    if self.state != DRAWING or self._session is None or self.mode != POLYGON_MODE:
      return None
    try:
      poly = self._polygon_geometry()
    except InputError as e:
      log.debug("Polygon commit ignored: %s", e)
      return None
    return self._create(poly)

  def _polygon_geometry(self) -> Polygon:
    vertices = self._session.vertices
    if len(vertices) < 3:
      raise InputError("polygon needs 3 vertices, has %d" % len(vertices))
    return Polygon(tuple(self.to_image(v) for v in vertices))

  # -- Both -------------------------------------------------------------------

  def cancel(self) -> None:
    if self.state == DRAWING:
      self._finish(CANCELLED)

  def _create(self, geometry) -> Marker | None:
    marker = self.store.create(
      geometry, self.category_id, catalog=self.catalog, area=geo.area(geometry),
    )
    if marker is None:
      self._finish(REJECTED)
      return None
    log.info("Committed %s marker %s (area %.1f px^2)", geometry.kind, marker.id, marker.area)
    self._finish(COMMITTED)
    return marker

  def _finish(self, outcome: str) -> None:
    self.last_outcome = outcome
    self._session = None
    if self.stay_armed:
      self.state = ARMED
    else:
      self.state = IDLE
      self.category_id = None
