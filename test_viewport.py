"""Tests for pan, zoom, pinch and click detection."""

import pytest

from geometry import Point
from viewport import (
  DRAGGING, IDLE, POSSIBLE_CLICK, GestureRecognizer, ViewportController,
)


def make_controller(**kwargs):
  vc = ViewportController(**kwargs)
  vc.set_surface_size(800, 600)
  vc.set_image_size(1200, 900)
  return vc


def assert_close(a, b, tol=1e-6):
  assert abs(a.x - b.x) <= tol and abs(a.y - b.y) <= tol, (a, b)


class TestGestureRecognizer:
  def test_click(self):
    g = GestureRecognizer(epsilon=3)
    g.press(Point(10, 10))
    assert g.state == POSSIBLE_CLICK
    assert not g.move(Point(12, 11))
    assert g.release() is True
    assert g.state == IDLE

  def test_drag_suppresses_click(self):
    g = GestureRecognizer(epsilon=3)
    g.press(Point(10, 10))
    assert g.move(Point(20, 10))
    assert g.state == DRAGGING
    # Coming back near the start does not turn it into a click again
    g.move(Point(10, 10))
    assert g.release() is False

  def test_next_gesture_starts_fresh(self):
    g = GestureRecognizer()
    g.press(Point(0, 0))
    g.move(Point(50, 50))
    g.release()
    g.press(Point(0, 0))
    assert g.release() is True


class TestLoadingGuard:
  def test_no_op_before_image(self):
    vc = ViewportController()
    vc.set_surface_size(800, 600)
    assert not vc.zoom(0.9, Point(0, 0))
    assert not vc.pan(10, 10)
    vc.pointer_down(1, Point(0, 0))
    assert vc.active_pointers == 0

  def test_disabled_ignores_input(self):
    vc = make_controller()
    vc.disable("invalid background")
    assert not vc.interactive
    assert not vc.zoom(0.9, Point(400, 300))
    vc.enable()
    assert vc.zoom(0.9, Point(400, 300))

  def test_set_image_size_rejects_empty(self):
    with pytest.raises(ValueError):
      ViewportController().set_image_size(0, 100)


class TestZoom:
  def test_pivot_stays_fixed(self):
    vc = make_controller()
    pivot = Point(200, 150)
    before = vc.to_image(pivot)
    assert vc.zoom(0.5, pivot)
    assert_close(vc.to_image(pivot), before)

  def test_width_stays_within_limits(self):
    vc = make_controller()
    for _ in range(60):
      vc.wheel(1, Point(400, 300), shift=True)
      assert 240 <= vc.state.width <= 6000
    for _ in range(120):
      vc.wheel(-1, Point(400, 300), shift=True)
      assert 240 <= vc.state.width <= 6000

  def test_rejected_zoom_leaves_state(self):
    vc = make_controller()
    before = vc.state.to_dict()
    assert not vc.zoom(10, Point(400, 300))
    assert vc.state.to_dict() == before

  def test_wheel_requires_shift_by_default(self):
    vc = make_controller()
    assert not vc.wheel(1, Point(400, 300))
    assert vc.wheel(1, Point(400, 300), shift=True)
    assert vc.state.width == pytest.approx(1320)

  def test_wheel_without_shift_when_configured(self):
    vc = make_controller(wheel_requires_shift=False)
    assert vc.wheel(-1, Point(400, 300))
    assert vc.state.width == pytest.approx(1080)

  def test_reset(self):
    vc = make_controller()
    vc.zoom(0.5, Point(100, 100))
    vc.reset()
    assert (vc.state.x, vc.state.y, vc.state.width) == (0, 0, 1200)


class TestPan:
  def test_pan_moves_content(self):
    vc = make_controller()
    before = vc.to_screen(Point(600, 450))
    vc.pan(40, -20)
    after = vc.to_screen(Point(600, 450))
    assert_close(after, Point(before.x + 40, before.y - 20))

  def test_single_pointer_drag_pans(self):
    vc = make_controller()
    vc.pointer_down(1, Point(100, 100))
    vc.pointer_move(1, Point(150, 100))
    assert vc.dragging
    click = vc.pointer_up(1, Point(150, 100))
    assert click is None
    assert vc.state.x == pytest.approx(-50 * 1200 / 800)

  def test_click_reports_point(self):
    vc = make_controller()
    vc.pointer_down(1, Point(100, 100))
    vc.pointer_move(1, Point(101, 101))
    assert vc.pointer_up(1, Point(101, 101)) == Point(101, 101)
    assert vc.state.x == 0


class TestPinch:
  def test_pinch_zooms_about_midpoint(self):
    vc = make_controller()
    vc.pointer_down(1, Point(300, 300))
    vc.pointer_down(2, Point(500, 300))
    assert vc.pinching
    # After the move the midpoint is (500, 300)
    mid_before = vc.to_image(Point(500, 300))
    vc.pointer_move(2, Point(700, 300))
    assert vc.state.width < 1200
    assert_close(vc.to_image(Point(500, 300)), mid_before)
    assert vc.pointer_up(1, Point(300, 300)) is None
    assert vc.pointer_up(2, Point(700, 300)) is None

  def test_pinch_factor(self):
    vc = make_controller()
    vc.pointer_down(1, Point(300, 300))
    vc.pointer_down(2, Point(500, 300))
    vc.pointer_move(2, Point(700, 300))
    # distance 200 -> 400: factor 0.5
    assert vc.state.width == pytest.approx(600)

  def test_third_pointer_ignored(self):
    vc = make_controller()
    vc.pointer_down(1, Point(300, 300))
    vc.pointer_down(2, Point(500, 300))
    vc.pointer_down(3, Point(400, 400))
    assert vc.active_pointers == 2
    before = vc.state.to_dict()
    vc.pointer_move(3, Point(0, 0))
    assert vc.state.to_dict() == before

  def test_no_pan_or_click_after_pinch(self):
    vc = make_controller()
    vc.pointer_down(1, Point(300, 300))
    vc.pointer_down(2, Point(500, 300))
    vc.pointer_up(2, Point(500, 300))
    before = vc.state.to_dict()
    vc.pointer_move(1, Point(380, 300))
    assert vc.state.to_dict() == before
    assert vc.pointer_up(1, Point(380, 300)) is None


class TestRotation:
  def test_rotate_clockwise_cycles(self):
    vc = make_controller()
    assert [vc.rotate_clockwise() for _ in range(4)] == [90, 180, 270, 0]

  def test_rotation_round_trip(self):
    vc = make_controller()
    vc.rotate(270)
    vc.zoom(0.8, Point(123, 321))
    p = Point(321, 654)
    assert_close(vc.to_image(vc.to_screen(p)), p)
