"""Screen <-> image coordinate mapping.

The viewport is a view box (x, y, width, height) in image units, shown on a
surface of surface_width x surface_height pixels with uniform "meet" scaling
(letterboxed and centred, like an SVG viewBox). The image itself is rotated
about its centre by ``rotation`` degrees before the view box is applied.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Any

from geometry import Point
from log import get_logger

log = get_logger("transform")

ROTATIONS = (0, 90, 180, 270)

# Exact values for the quarter turns so round trips stay clean
_COS_SIN = {0: (1.0, 0.0), 90: (0.0, 1.0), 180: (-1.0, 0.0), 270: (0.0, -1.0)}


class TransformUnavailable(Exception):
  """The surface or image size is not known yet, so no invertible transform exists."""


@dataclasses.dataclass
class ViewportState:
  image_width: float = 0.0
  image_height: float = 0.0
  surface_width: float = 0.0
  surface_height: float = 0.0
  x: float = 0.0
  y: float = 0.0
  width: float = 0.0
  height: float = 0.0
  rotation: int = 0

  @property
  def initialized(self) -> bool:
    return (self.image_width > 0 and self.image_height > 0
            and self.surface_width > 0 and self.surface_height > 0
            and self.width > 0 and self.height > 0)

  @property
  def zoom(self) -> float:
    """1.0 when the view box covers the whole image width."""
    if self.width <= 0:
      return 1.0
    return self.image_width / self.width

  def to_dict(self) -> dict[str, Any]:
    return dataclasses.asdict(self)

  @classmethod
  def from_dict(cls, d: dict[str, Any]) -> ViewportState:
    fields = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in fields})


def normalize_rotation(degrees: float) -> int:
  """Map any multiple of 90 onto 0/90/180/270."""
  deg = int(round(degrees)) % 360
  if deg not in ROTATIONS:
    raise ValueError("Rotation must be a multiple of 90 degrees, got %r" % (degrees,))
  return deg


def rotate_about(p: Point, degrees: float, cx: float, cy: float) -> Point:
  """Rotate *p* about (cx, cy); positive degrees turn clockwise on a y-down surface."""
  deg = int(round(degrees)) % 360
  if deg in _COS_SIN and deg == degrees % 360:
    cos_a, sin_a = _COS_SIN[deg]
  else:
    rad = math.radians(degrees)
    cos_a, sin_a = math.cos(rad), math.sin(rad)
  tx = p.x - cx
  ty = p.y - cy
  return Point(cx + tx * cos_a - ty * sin_a, cy + tx * sin_a + ty * cos_a)


def _meet(state: ViewportState) -> tuple[float, float, float]:
  """Uniform scale and letterbox offsets for the current view box."""
  if not state.initialized:
    raise TransformUnavailable(
      "viewport not initialized (image %sx%s, surface %sx%s, view %sx%s)" % (
        state.image_width, state.image_height, state.surface_width,
        state.surface_height, state.width, state.height,
      )
    )
  scale = min(state.surface_width / state.width, state.surface_height / state.height)
  off_x = (state.surface_width - state.width * scale) / 2.0
  off_y = (state.surface_height - state.height * scale) / 2.0
  return scale, off_x, off_y


def screen_scale(state: ViewportState) -> float:
  """Screen pixels per image unit."""
  scale, _, _ = _meet(state)
  return scale


def screen_to_user(p: Point, state: ViewportState) -> Point:
  """Screen -> view-box coordinates (pan/zoom undone, rotation still applied)."""
  scale, off_x, off_y = _meet(state)
  return Point(state.x + (p.x - off_x) / scale, state.y + (p.y - off_y) / scale)


def user_to_screen(p: Point, state: ViewportState) -> Point:
  scale, off_x, off_y = _meet(state)
  return Point((p.x - state.x) * scale + off_x, (p.y - state.y) * scale + off_y)


def clamp_to_image(p: Point, state: ViewportState) -> Point:
  x = max(0.0, min(state.image_width, p.x)) if state.image_width > 0 else max(0.0, p.x)
  y = max(0.0, min(state.image_height, p.y)) if state.image_height > 0 else max(0.0, p.y)
  return Point(x, y)


def screen_to_image(p: Point, state: ViewportState, clamp: bool = True) -> Point:
  """Map a surface-relative screen point into image space.

  Falls back to the raw surface-relative position (clamped) when the
  transform cannot be built yet.
  """
  try:
    user = screen_to_user(p, state)
  except TransformUnavailable as e:
    log.warning("Transform unavailable, using surface-relative fallback: %s", e)
    return clamp_to_image(p, state) if clamp else Point(p.x, p.y)
  cx = state.image_width / 2.0
  cy = state.image_height / 2.0
  image = rotate_about(user, -state.rotation, cx, cy)
  if clamp:
    return clamp_to_image(image, state)
  return image


def image_to_screen(p: Point, state: ViewportState) -> Point:
  """Forward composition: rotate about the image centre, then apply the view box."""
  if not state.initialized:
    return Point(p.x, p.y)
  cx = state.image_width / 2.0
  cy = state.image_height / 2.0
  user = rotate_about(p, state.rotation, cx, cy)
  return user_to_screen(user, state)
