"""Viewport state and pointer-gesture handling (pan, wheel zoom, pinch zoom)."""

from __future__ import annotations

import math

from geometry import Point
from log import get_logger
from transform import (
  TransformUnavailable, ViewportState, image_to_screen, normalize_rotation,
  screen_scale, screen_to_image, screen_to_user,
)

log = get_logger("viewport")

ZOOM_LIMIT = 5.0  # view width stays within [base / 5, base * 5]
WHEEL_ZOOM_OUT = 1.1
WHEEL_ZOOM_IN = 0.9
CLICK_EPSILON = 3.0
MAX_POINTERS = 2

IDLE = "idle"
POSSIBLE_CLICK = "possible_click"
DRAGGING = "dragging"


class GestureRecognizer:
  """Tells clicks from drags: Idle -> PossibleClick -> Dragging.

  Moving further than *epsilon* from the press position turns the gesture
  into a drag, which suppresses the click for that gesture only.
  """

  def __init__(self, epsilon: float = CLICK_EPSILON):
    self.epsilon = epsilon
    self.state = IDLE
    self._start: Point | None = None

  def press(self, p: Point) -> None:
    self.state = POSSIBLE_CLICK
    self._start = p

  def move(self, p: Point) -> bool:
    """Feed a move; returns True while the gesture is a drag."""
    if self.state == POSSIBLE_CLICK and self._start is not None:
      if math.hypot(p.x - self._start.x, p.y - self._start.y) > self.epsilon:
        self.state = DRAGGING
    return self.state == DRAGGING

  def release(self) -> bool:
    """End the gesture; returns True if it was a click."""
    was_click = self.state == POSSIBLE_CLICK
    self.state = IDLE
    self._start = None
    return was_click

  def cancel(self) -> None:
    self.state = IDLE
    self._start = None


class ViewportController:
  """Owns the viewport state and turns pointer input into pan and zoom.

  Nothing happens until an image size has been set (``ready``), and nothing
  happens while the controller is disabled (invalid background).
  """

  def __init__(self, click_epsilon: float = CLICK_EPSILON,
               wheel_requires_shift: bool = True):
    self.state = ViewportState()
    self.ready = False
    self.enabled = True
    self.wheel_requires_shift = wheel_requires_shift
    self.recognizer = GestureRecognizer(click_epsilon)

    self._pointers: dict[int, Point] = {}
    self._last_pan: Point | None = None
    self._pinch_distance = 0.0
    self._multi_touch = False  # set once a gesture used two pointers

  # -- Setup ------------------------------------------------------------------

  @property
  def interactive(self) -> bool:
    return self.ready and self.enabled

  def set_image_size(self, width: float, height: float) -> None:
    """Image finished loading: show all of it and lift the loading guard."""
    if width <= 0 or height <= 0:
      raise ValueError("Image size must be positive, got %sx%s" % (width, height))
    self.state.image_width = float(width)
    self.state.image_height = float(height)
    self.reset()
    self.ready = True
    log.info("Viewport ready for %dx%d image", width, height)

  def set_surface_size(self, width: float, height: float) -> None:
    self.state.surface_width = float(max(0, width))
    self.state.surface_height = float(max(0, height))

  def disable(self, reason: str = "") -> None:
    if self.enabled:
      log.warning("Viewport interaction disabled: %s", reason or "no reason given")
    self.enabled = False
    self.cancel_gesture()

  def enable(self) -> None:
    self.enabled = True

  def reset(self) -> None:
    """Zoom to fit: the view box covers the whole image."""
    self.state.x = 0.0
    self.state.y = 0.0
    self.state.width = self.state.image_width
    self.state.height = self.state.image_height

  # -- Mapping ----------------------------------------------------------------

  def to_image(self, p: Point, clamp: bool = True) -> Point:
    return screen_to_image(p, self.state, clamp=clamp)

  def to_screen(self, p: Point) -> Point:
    return image_to_screen(p, self.state)

  # -- Rotation ---------------------------------------------------------------

  def rotate(self, degrees: float) -> None:
    self.state.rotation = normalize_rotation(degrees)

  def rotate_clockwise(self) -> int:
    self.state.rotation = (self.state.rotation + 90) % 360
    return self.state.rotation

  # -- Zoom / pan -------------------------------------------------------------

  def zoom(self, factor: float, pivot: Point) -> bool:
    """Scale the view box by *factor* keeping *pivot* (screen) fixed.

    Factors above 1 zoom out. Returns False when the new width would leave
    the allowed range.
    """
    if not self.interactive or factor <= 0:
      return False
    base = self.state.image_width
    new_width = self.state.width * factor
    new_height = self.state.height * factor
    if new_width > base * ZOOM_LIMIT or new_width < base / ZOOM_LIMIT:
      return False

    try:
      anchor = screen_to_user(pivot, self.state)
      new_x = self.state.x + (anchor.x - self.state.x) * (1 - factor)
      new_y = self.state.y + (anchor.y - self.state.y) * (1 - factor)
    except TransformUnavailable as e:
      log.warning("Zoom pivot unavailable, zooming about the centre: %s", e)
      new_x = self.state.x + self.state.width * (1 - factor) / 2.0
      new_y = self.state.y + self.state.height * (1 - factor) / 2.0

    self.state.x = new_x
    self.state.y = new_y
    self.state.width = new_width
    self.state.height = new_height
    return True

  def pan(self, dx: float, dy: float) -> bool:
    """Move the content by a screen-space delta. Unbounded."""
    if not self.interactive:
      return False
    try:
      scale = screen_scale(self.state)
    except TransformUnavailable as e:
      log.warning("Pan ignored: %s", e)
      return False
    self.state.x -= dx / scale
    self.state.y -= dy / scale
    return True

  def wheel(self, delta_y: float, pivot: Point, shift: bool = False) -> bool:
    if self.wheel_requires_shift and not shift:
      return False
    if delta_y == 0:
      return False
    return self.zoom(WHEEL_ZOOM_OUT if delta_y > 0 else WHEEL_ZOOM_IN, pivot)

  # -- Pointers ---------------------------------------------------------------

  @property
  def active_pointers(self) -> int:
    return len(self._pointers)

  @property
  def dragging(self) -> bool:
    return self.recognizer.state == DRAGGING

  @property
  def pinching(self) -> bool:
    return len(self._pointers) == MAX_POINTERS

  def pointer_down(self, pointer_id: int, p: Point) -> None:
    if not self.interactive or pointer_id in self._pointers:
      return
    if len(self._pointers) >= MAX_POINTERS:
      log.debug("Ignoring extra pointer %s", pointer_id)
      return
    self._pointers[pointer_id] = p
    if len(self._pointers) == 1:
      self._multi_touch = False
      self.recognizer.press(p)
      self._last_pan = p
    else:
      self._multi_touch = True
      self.recognizer.cancel()
      self._last_pan = None
      a, b = self._pointers.values()
      self._pinch_distance = math.hypot(a.x - b.x, a.y - b.y)

  def pointer_move(self, pointer_id: int, p: Point) -> None:
    if not self.interactive or pointer_id not in self._pointers:
      return
    self._pointers[pointer_id] = p

    if len(self._pointers) == MAX_POINTERS:
      a, b = self._pointers.values()
      current = math.hypot(a.x - b.x, a.y - b.y)
      if current > 0 and self._pinch_distance > 0:
        midpoint = Point((a.x + b.x) / 2.0, (a.y + b.y) / 2.0)
        self.zoom(self._pinch_distance / current, midpoint)
      self._pinch_distance = current
      return

    if self._multi_touch:
      return
    if self.recognizer.move(p) and self._last_pan is not None:
      self.pan(p.x - self._last_pan.x, p.y - self._last_pan.y)
      self._last_pan = p

  def pointer_up(self, pointer_id: int, p: Point) -> Point | None:
    """Release a pointer; returns the screen point if the gesture was a click."""
    if pointer_id not in self._pointers:
      return None
    del self._pointers[pointer_id]
    if len(self._pointers) < MAX_POINTERS:
      self._pinch_distance = 0.0
    if self._pointers:
      return None

    was_click = self.recognizer.release() and not self._multi_touch
    self._last_pan = None
    self._multi_touch = False
    if was_click and self.interactive:
      return p
    return None

  def cancel_gesture(self) -> None:
    self._pointers.clear()
    self._last_pan = None
    self._pinch_distance = 0.0
    self._multi_touch = False
    self.recognizer.cancel()
