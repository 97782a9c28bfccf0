"""Tests for the annotation canvas widget (input routing, tools, rendering)."""

from unittest.mock import MagicMock

import pytest
from PySide6.QtCore import QEvent, QPointF, Qt
from PySide6.QtGui import QColor, QImage, QKeyEvent, QMouseEvent
from PySide6.QtWidgets import QApplication

app = QApplication.instance() or QApplication([])

from canvas import (
  HIGHLIGHT_COLOR, MOUSE_POINTER, SELECTED_COLOR, STATUS_COLORS, TOOL_POINT,
  TOOL_SELECT, AnnotationCanvas, CanvasToolbar,
)
from drawing import ARMED, POLYGON_MODE, RECTANGLE_MODE
import geometry as geo
from geometry import Point, Rectangle
from guides import GuideLineIndex
from markers import Category, CategoryCatalog, MarkerStore


def make_test_image(w=1600, h=1200):
  img = QImage(w, h, QImage.Format.Format_ARGB32)
  img.fill(QColor(255, 255, 255))
  return img


def make_canvas(config=None, **kwargs):
  """800x600 canvas over a 1600x1200 image: screen * 2 == image at fit."""
  catalog = CategoryCatalog([Category("crack", "Crack", "#ff0000", "high")])
  canvas = AnnotationCanvas(catalog=catalog, config=config, **kwargs)
  canvas.resize(800, 600)
  assert canvas.set_background(make_test_image())
  return canvas


def click(canvas, x, y):
  canvas._press(MOUSE_POINTER, Point(x, y))
  canvas._release(MOUSE_POINTER, Point(x, y))


def drag(canvas, start, end):
  canvas._press(MOUSE_POINTER, Point(*start))
  canvas._move(MOUSE_POINTER, Point(*end))
  canvas._release(MOUSE_POINTER, Point(*end))


def key(canvas, k):
  canvas.keyPressEvent(QKeyEvent(QEvent.Type.KeyPress, k, Qt.KeyboardModifier.NoModifier))


# -- Background ---------------------------------------------------------------

class TestBackground:
  def test_ready_signal(self):
    canvas = AnnotationCanvas()
    canvas.resize(800, 600)
    ready = MagicMock()
    canvas.ready.connect(ready)
    canvas.set_background(make_test_image(300, 200))
    ready.assert_called_once_with(300, 200)
    assert canvas.viewport.interactive

  def test_invalid_background_disables_input(self):
    canvas = AnnotationCanvas()
    canvas.resize(800, 600)
    failed = MagicMock()
    canvas.background_failed.connect(failed)
    assert not canvas.set_background("undefined")
    assert not canvas.has_valid_background
    assert not canvas.viewport.interactive
    failed.assert_called_once()
    canvas.set_tool(TOOL_POINT, "crack")
    click(canvas, 100, 100)
    assert len(canvas.store) == 0

  def test_placeholder_renders(self):
    canvas = AnnotationCanvas()
    canvas.resize(200, 150)
    canvas.set_background(None)
    pixmap = canvas.grab()
    assert not pixmap.isNull()

  def test_valid_background_after_invalid(self):
    canvas = AnnotationCanvas()
    canvas.resize(800, 600)
    canvas.set_background("null")
    assert canvas.set_background(make_test_image())
    assert canvas.viewport.interactive
    assert canvas.drawing.enabled


# -- Tools --------------------------------------------------------------------

class TestPointTool:
  def test_click_places_labeled_point(self):
    canvas = make_canvas()
    created = MagicMock()
    canvas.marker_created.connect(created)
    canvas.set_tool(TOOL_POINT, "crack")
    click(canvas, 100, 150)
    [marker] = canvas.store.markers()
    assert marker.geometry == Point(200, 300)
    assert marker.label == "1"
    assert marker.severity == "high"
    created.assert_called_once_with(marker)
    assert canvas.selected_id == marker.id

  def test_alignment_snap_to_existing_point(self):
    canvas = make_canvas()
    canvas.set_tool(TOOL_POINT, "crack")
    click(canvas, 100, 100)
    click(canvas, 103, 200)
    second = canvas.store.markers()[-1]
    assert second.geometry.x == 200
    assert second.label == "2"

  def test_drag_pans_instead_of_placing(self):
    canvas = make_canvas()
    canvas.set_tool(TOOL_POINT, "crack")
    drag(canvas, (100, 100), (200, 100))
    assert len(canvas.store) == 0
    assert canvas.viewport.state.x == pytest.approx(-200)

  def test_clicking_existing_point_selects(self):
    canvas = make_canvas()
    selected = MagicMock()
    canvas.point_selected.connect(selected)
    canvas.set_tool(TOOL_POINT, "crack")
    click(canvas, 100, 100)
    canvas.selected_id = None
    click(canvas, 102, 101)
    assert len(canvas.store) == 1
    assert canvas.selected_id == canvas.store.markers()[0].id
    assert selected.call_count == 2

  def test_drag_selected_point_moves_it(self):
    canvas = make_canvas()
    updated = MagicMock()
    canvas.marker_updated.connect(updated)
    canvas.set_tool(TOOL_POINT, "crack")
    click(canvas, 100, 100)
    marker = canvas.store.markers()[0]
    drag(canvas, (100, 100), (300, 250))
    assert marker.geometry == Point(600, 500)
    updated.assert_called_once()
    assert canvas.viewport.state.x == 0


class TestRectangleTool:
  def test_drag_creates_rectangle(self):
    canvas = make_canvas()
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (100, 100), (200, 180))
    [marker] = canvas.store.markers()
    assert marker.geometry == Rectangle(200, 200, 200, 160)
    assert marker.area == 200 * 160
    assert canvas.drawing.state == ARMED
    assert canvas.viewport.state.x == 0

  def test_small_drag_creates_nothing(self):
    canvas = make_canvas()
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (100, 100), (105, 300))
    assert len(canvas.store) == 0

  def test_guides_snap_corners(self):
    guides = GuideLineIndex.from_positions(vertical={"mid": 50})
    canvas = make_canvas(guides=guides)
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (390, 100), (600, 200))
    assert canvas.store.markers()[0].geometry.x == 800

  def test_escape_cancels_in_progress(self):
    canvas = make_canvas()
    canvas.set_tool(RECTANGLE_MODE, "crack")
    canvas._press(MOUSE_POINTER, Point(100, 100))
    canvas._move(MOUSE_POINTER, Point(200, 200))
    key(canvas, Qt.Key.Key_Escape)
    assert canvas.drawing.session is None
    canvas._release(MOUSE_POINTER, Point(200, 200))
    assert len(canvas.store) == 0


class TestPolygonTool:
  def test_clicks_then_enter(self):
    canvas = make_canvas()
    canvas.set_tool(POLYGON_MODE, "crack")
    for x, y in ((100, 100), (300, 100), (300, 300)):
      click(canvas, x, y)
    key(canvas, Qt.Key.Key_Return)
    [marker] = canvas.store.markers()
    assert marker.area == pytest.approx(400 * 400 / 2)

  def test_close_on_first_vertex(self):
    canvas = make_canvas()
    canvas.set_tool(POLYGON_MODE, "crack")
    for x, y in ((100, 100), (300, 100), (300, 300), (102, 101)):
      click(canvas, x, y)
    assert len(canvas.store) == 1

  def test_drag_still_pans(self):
    canvas = make_canvas()
    canvas.set_tool(POLYGON_MODE, "crack")
    drag(canvas, (100, 100), (150, 100))
    assert canvas.drawing.session is None
    assert canvas.viewport.state.x == pytest.approx(-100)


class TestDrawingAfterViewChange:
  """Thresholds are screen pixels whatever the zoom, pan or rotation."""

  def zoomed_in(self, **kwargs):
    # View box 400x300 at (600, 450): 2 screen px per image px
    canvas = make_canvas(**kwargs)
    assert canvas.viewport.zoom(0.25, Point(400, 300))
    return canvas

  def test_rectangle_commits_when_zoomed_in(self):
    canvas = self.zoomed_in()
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (300, 200), (340, 240))
    [marker] = canvas.store.markers()
    g = marker.geometry
    assert (g.x, g.y, g.w, g.h) == pytest.approx((750, 550, 20, 20))

  def test_small_rectangle_discarded_when_zoomed_out(self):
    canvas = make_canvas()
    assert canvas.viewport.zoom(2, Point(400, 300))
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (300, 200), (308, 208))
    assert len(canvas.store) == 0
    drag(canvas, (300, 200), (340, 240))
    g = canvas.store.markers()[0].geometry
    assert (g.x, g.y, g.w, g.h) == pytest.approx((400, 200, 160, 160))

  def test_polygon_close_distance_in_screen_pixels(self):
    canvas = self.zoomed_in()
    canvas.set_tool(POLYGON_MODE, "crack")
    for x, y in ((300, 200), (360, 200), (360, 260)):
      click(canvas, x, y)
    # 20 screen px from the first vertex: another vertex, not a close
    click(canvas, 320, 200)
    assert len(canvas.store) == 0
    assert len(canvas.drawing.session.vertices) == 4
    click(canvas, 303, 202)
    [marker] = canvas.store.markers()
    assert len(marker.geometry.points) == 4

  def test_guide_snap_window_in_screen_pixels(self):
    guides = GuideLineIndex.from_positions(vertical={"mid": 50})
    canvas = self.zoomed_in(guides=guides)
    canvas.set_tool(POLYGON_MODE, "crack")
    # The guide (image x 800) is at screen x 400
    click(canvas, 340, 200)
    click(canvas, 392, 260)
    first, second = canvas.drawing.session.vertices
    assert canvas.surface_to_image(first).x == pytest.approx(770)
    assert canvas.surface_to_image(second).x == pytest.approx(800)

  def test_rectangle_after_rotation_and_zoom(self):
    canvas = make_canvas()
    key(canvas, Qt.Key.Key_R)
    assert canvas.viewport.zoom(0.25, Point(400, 300))
    canvas.set_tool(RECTANGLE_MODE, "crack")
    a = canvas.viewport.to_image(Point(300, 200))
    b = canvas.viewport.to_image(Point(340, 250))
    drag(canvas, (300, 200), (340, 250))
    [marker] = canvas.store.markers()
    expected = geo.rect_from_corners(a.x, a.y, b.x, b.y)
    g = marker.geometry
    assert (g.x, g.y, g.w, g.h) == pytest.approx((expected.x, expected.y, expected.w, expected.h))
    # 40x50 screen px at 2 px per image px, axes swapped by the quarter turn
    assert (g.w, g.h) == pytest.approx((25, 20))

  def test_rectangle_after_pan(self):
    canvas = make_canvas()
    canvas.viewport.pan(-100, -50)
    canvas.set_tool(RECTANGLE_MODE, "crack")
    drag(canvas, (100, 100), (200, 180))
    g = canvas.store.markers()[0].geometry
    assert (g.x, g.y, g.w, g.h) == pytest.approx((400, 300, 200, 160))

  def test_point_alignment_in_screen_pixels(self):
    canvas = self.zoomed_in()
    canvas.store.create(Point(800, 600), label="1")
    canvas.set_tool(TOOL_POINT, "crack")
    # 16 screen px away (8 image px): no snap
    click(canvas, 416, 200)
    assert canvas.store.markers()[-1].geometry.x == pytest.approx(808)
    # 8 screen px away: snaps onto the existing column
    click(canvas, 392, 100)
    assert canvas.store.markers()[-1].geometry.x == 800


class TestPointStyling:
  def test_outline_follows_status(self):
    canvas = make_canvas()
    m = canvas.store.create(Point(100, 100), "crack", label="1")
    _, outline = canvas._point_colors(m)
    assert outline.name() == STATUS_COLORS["PENDING"].name()
    canvas.store.update(m.id, status="RESOLVED")
    _, outline = canvas._point_colors(m)
    assert outline.name() == STATUS_COLORS["RESOLVED"].name()

  def test_selected_outline_wins(self):
    canvas = make_canvas()
    m = canvas.store.create(Point(100, 100), "crack", label="1")
    canvas.selected_id = m.id
    _, outline = canvas._point_colors(m)
    assert outline.name() == SELECTED_COLOR.name()

  def test_search_highlights_matching_labels(self):
    canvas = make_canvas()
    a = canvas.store.create(Point(100, 100), "crack", label="12")
    canvas.store.create(Point(300, 100), "crack", label="3")
    c = canvas.store.create(Point(500, 100), "crack", label="A12b")
    canvas.store.create(Rectangle(0, 0, 50, 50), "crack")
    canvas.set_search_query(" a12 ")
    assert canvas.highlighted_ids() == [c.id]
    canvas.set_search_query("12")
    assert canvas.highlighted_ids() == [a.id, c.id]
    fill, _ = canvas._point_colors(a)
    assert fill.name() == HIGHLIGHT_COLOR.name()
    assert not canvas.grab().isNull()

  def test_empty_query_highlights_nothing(self):
    canvas = make_canvas()
    m = canvas.store.create(Point(100, 100), "crack", label="1")
    canvas.set_search_query("")
    assert not canvas.is_highlighted(m)
    fill, _ = canvas._point_colors(m)
    assert fill.name() == QColor("#ff0000").name()


# -- Selection and editing ----------------------------------------------------

class TestEditing:
  def setup_method(self):
    self.canvas = make_canvas()
    self.a = self.canvas.store.create(Rectangle(0, 0, 400, 400))
    self.b = self.canvas.store.create(Rectangle(200, 200, 400, 400))

  def test_click_selects_topmost(self):
    click(self.canvas, 150, 150)
    assert self.canvas.selected_id == self.b.id

  def test_click_empty_clears_selection(self):
    click(self.canvas, 150, 150)
    click(self.canvas, 700, 50)
    assert self.canvas.selected_id is None

  def test_page_keys_change_z_order(self):
    click(self.canvas, 150, 150)
    key(self.canvas, Qt.Key.Key_PageDown)
    assert self.b.z_index < self.a.z_index
    click(self.canvas, 150, 150)
    assert self.canvas.selected_id == self.a.id

  def test_delete_key(self):
    deleted = MagicMock()
    self.canvas.marker_deleted.connect(deleted)
    click(self.canvas, 150, 150)
    key(self.canvas, Qt.Key.Key_Delete)
    assert self.b.id not in self.canvas.store
    deleted.assert_called_once_with(self.b.id)
    assert self.canvas.selected_id is None

  def test_rotate_key(self):
    key(self.canvas, Qt.Key.Key_R)
    assert self.canvas.viewport.state.rotation == 90

  def test_render_with_markers(self):
    self.canvas.store.create(Point(100, 100), label="1")
    self.canvas.store.create(Point(130, 100), label="2")
    pixmap = self.canvas.grab()
    assert pixmap.width() == 800


class TestArchived:
  def test_archived_point_hidden_from_hit_test(self):
    canvas = make_canvas()
    p = canvas.store.create(Point(200, 200), label="1")
    canvas.store.archive(p.id)
    click(canvas, 100, 100)
    assert canvas.selected_id is None
    canvas.set_show_archived(True)
    click(canvas, 100, 100)
    assert canvas.selected_id == p.id


class TestLineTool:
  def test_insert_count(self):
    canvas = make_canvas()
    a = canvas.store.create(Point(0, 0), "crack", label="1")
    b = canvas.store.create(Point(400, 0), "crack", label="2")
    created = canvas.insert_line_points(a.id, b.id, count=3)
    assert [m.geometry for m in created] == [Point(100, 0), Point(200, 0), Point(300, 0)]
    assert [m.label for m in created] == ["3", "4", "5"]

  def test_insert_by_spacing(self):
    canvas = make_canvas(config={"pixels_per_meter": 100})
    a = canvas.store.create(Point(0, 0), label="1")
    b = canvas.store.create(Point(1000, 0), label="2")
    assert len(canvas.insert_line_points(a.id, b.id, spacing_m=2)) == 4

  def test_needs_points(self):
    canvas = make_canvas()
    r = canvas.store.create(Rectangle(0, 0, 10, 10))
    p = canvas.store.create(Point(0, 0))
    assert canvas.insert_line_points(r.id, p.id, count=2) == []

  def test_area_label(self):
    canvas = make_canvas(config={"pixels_per_meter": 10})
    m = canvas.store.create(Rectangle(0, 0, 100, 40))
    assert canvas.area_label(m) == "40.00 m²"


# -- Error handling -----------------------------------------------------------

class TestHandlerErrors:
  def test_exception_in_handler_is_logged(self, monkeypatch):
    canvas = make_canvas()
    monkeypatch.setattr(canvas, "_press", MagicMock(side_effect=RuntimeError("boom")))
    event = QMouseEvent(
      QEvent.Type.MouseButtonPress, QPointF(10, 10), QPointF(10, 10),
      Qt.MouseButton.LeftButton, Qt.MouseButton.LeftButton, Qt.KeyboardModifier.NoModifier,
    )
    # Should not raise
    canvas.mousePressEvent(event)
    assert canvas.viewport.active_pointers == 0


class TestToolbar:
  def test_categories_listed(self):
    catalog = CategoryCatalog([Category("a", "Alpha"), Category("b", "Beta")])
    toolbar = CanvasToolbar(catalog)
    assert toolbar.category_combo.count() == 2
    assert toolbar.current_category() == "a"
    assert toolbar.current_tool() == TOOL_SELECT

  def test_tool_signal(self):
    toolbar = CanvasToolbar()
    changed = MagicMock()
    toolbar.tool_changed.connect(changed)
    toolbar._tool_buttons[POLYGON_MODE].click()
    changed.assert_called_once_with(POLYGON_MODE)

  def test_search_signal(self):
    toolbar = CanvasToolbar()
    changed = MagicMock()
    toolbar.search_changed.connect(changed)
    toolbar.search_edit.setText("7")
    changed.assert_called_once_with("7")
