"""Annotation canvas: renders the background and markers, routes input."""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

from PySide6.QtCore import Qt, QEvent, QPointF, QRectF, Signal
from PySide6.QtGui import (
  QColor, QPainter, QPen, QBrush, QFont, QFontMetricsF, QPolygonF,
  QPixmap, QIcon, QEventPoint, QTransform,
)
from PySide6.QtWidgets import (
  QWidget, QHBoxLayout, QPushButton, QButtonGroup, QComboBox, QCheckBox, QLabel,
  QLineEdit,
)

import geometry as geo
from background import BackgroundImage, InvalidBackgroundImage, load_background
from drawing import (
  ARMED, DRAWING, POLYGON_MODE, RECTANGLE_MODE, DrawingStateMachine,
)
from geometry import Point
from guides import (
  ALIGNMENT_SNAP_THRESHOLD, HORIZONTAL, SNAP_THRESHOLD, VERTICAL,
  GuideLineIndex, alignment_snap,
)
from labels import BOTTOM, LEFT, RIGHT, TOP, place_labels
from log import get_logger
from markers import POINT_HIT_RADIUS, CategoryCatalog, Marker, MarkerStore
from transform import screen_scale
from viewport import CLICK_EPSILON, ViewportController

if TYPE_CHECKING:
  from PySide6.QtGui import (
    QPaintEvent, QMouseEvent, QKeyEvent, QWheelEvent, QResizeEvent, QTouchEvent,
  )

log = get_logger("canvas")

TOOL_SELECT = "select"
TOOL_POINT = "point"
TOOLS = (TOOL_SELECT, TOOL_POINT, RECTANGLE_MODE, POLYGON_MODE)

MOUSE_POINTER = -1
DEFAULT_MARKER_SIZE = 4
DEFAULT_LABEL_FONT_SIZE = 10
LABEL_GAP = 6
ICON_SIZE = 24

PLACEHOLDER_TEXT = "No valid background"
BACKDROP_COLOR = QColor(40, 40, 40)
GUIDE_COLOR = QColor(0, 170, 255, 160)
SNAP_LINE_COLOR = QColor(255, 64, 129)
PREVIEW_COLOR = QColor(255, 196, 0)
HOVER_COLOR = QColor(255, 255, 255)
SELECTED_COLOR = QColor(255, 235, 59)
HIGHLIGHT_COLOR = QColor("#3b82f6")

# Point marker outline by inspection status
STATUS_COLORS = {
  "PENDING": QColor("#f59e0b"),
  "IN_PROGRESS": QColor("#0ea5e9"),
  "RESOLVED": QColor("#22c55e"),
  "IGNORED": QColor("#94a3b8"),
}


# -- Icon drawing helpers -----------------------------------------------------

def _make_icon(draw_fn) -> QIcon:
  """Create a QIcon by painting onto a 24x24 pixmap."""
  pixmap = QPixmap(ICON_SIZE, ICON_SIZE)
  pixmap.fill(QColor(0, 0, 0, 0))
  painter = QPainter(pixmap)
  painter.setRenderHint(QPainter.RenderHint.Antialiasing)
  draw_fn(painter, ICON_SIZE)
  painter.end()
  return QIcon(pixmap)


def _draw_select_icon(painter: QPainter, size: int) -> None:
  painter.setPen(Qt.PenStyle.NoPen)
  painter.setBrush(QColor(200, 200, 200))
  painter.drawPolygon(QPolygonF([
    QPointF(6, 3), QPointF(6, size - 4), QPointF(11, size - 9),
    QPointF(15, size - 2), QPointF(18, size - 4), QPointF(14, size - 11),
    QPointF(size - 5, size - 11),
  ]))


def _draw_point_icon(painter: QPainter, size: int) -> None:
  painter.setPen(QPen(QColor(200, 200, 200), 2))
  painter.setBrush(QColor(200, 200, 200))
  painter.drawEllipse(QPointF(size / 2, size / 2), 4, 4)


def _draw_rect_icon(painter: QPainter, size: int) -> None:
  painter.setPen(QPen(QColor(200, 200, 200), 2))
  painter.setBrush(Qt.BrushStyle.NoBrush)
  painter.drawRect(3, 5, size - 6, size - 10)


def _draw_polygon_icon(painter: QPainter, size: int) -> None:
  painter.setPen(QPen(QColor(200, 200, 200), 2))
  painter.setBrush(Qt.BrushStyle.NoBrush)
  painter.drawPolygon(QPolygonF([
    QPointF(4, size - 5), QPointF(7, 5), QPointF(size - 5, 8),
    QPointF(size - 8, size - 4),
  ]))


_TOOL_ICONS = {
  TOOL_SELECT: _draw_select_icon,
  TOOL_POINT: _draw_point_icon,
  RECTANGLE_MODE: _draw_rect_icon,
  POLYGON_MODE: _draw_polygon_icon,
}
_TOOL_TIPS = {
  TOOL_SELECT: "Select (click a marker)",
  TOOL_POINT: "Point (click to place)",
  RECTANGLE_MODE: "Rectangle (drag)",
  POLYGON_MODE: "Polygon (click vertices, double-click or Enter to finish)",
}


# -- Toolbar ------------------------------------------------------------------

class CanvasToolbar(QWidget):
  """Tool, category and view controls shown above the canvas."""

  tool_changed = Signal(str)
  category_changed = Signal(str)
  rotate_requested = Signal()
  reset_requested = Signal()
  finish_requested = Signal()
  show_archived_toggled = Signal(bool)
  search_changed = Signal(str)

  def __init__(self, catalog: CategoryCatalog | None = None,
               parent: QWidget | None = None):
    super().__init__(parent)
    self.setAttribute(Qt.WidgetAttribute.WA_StyledBackground, True)
    self.setStyleSheet(
      "CanvasToolbar { background: rgba(40, 40, 40, 220); }"
    )
    layout = QHBoxLayout(self)
    layout.setContentsMargins(6, 4, 6, 4)
    layout.setSpacing(4)

    btn_style = (
      "QPushButton { background: transparent; border: 1px solid transparent; border-radius: 4px; }"
      "QPushButton:hover { background: rgba(255, 255, 255, 30); }"
      "QPushButton:checked { background: rgba(255, 255, 255, 50); border-color: #888; }"
    )
    self._tool_group = QButtonGroup(self)
    self._tool_group.setExclusive(True)
    self._tool_buttons: dict[str, QPushButton] = {}
    for tool in TOOLS:
      btn = QPushButton()
      btn.setIcon(_make_icon(_TOOL_ICONS[tool]))
      btn.setFixedSize(32, 32)
      btn.setCheckable(True)
      btn.setToolTip(_TOOL_TIPS[tool])
      btn.setStyleSheet(btn_style)
      self._tool_group.addButton(btn)
      self._tool_buttons[tool] = btn
      layout.addWidget(btn)
    self._tool_buttons[TOOL_SELECT].setChecked(True)
    self._tool_group.buttonClicked.connect(self._on_tool_clicked)

    sep = QLabel("|")
    sep.setStyleSheet("QLabel { color: #555; }")
    layout.addWidget(sep)

    self.category_combo = QComboBox()
    self.category_combo.setToolTip("Category for new markers")
    for c in catalog or ():
      self.category_combo.addItem(c.name, c.id)
    self.category_combo.currentIndexChanged.connect(self._on_category_changed)
    layout.addWidget(self.category_combo)

    action_style = (
      "QPushButton { color: #ccc; border: 1px solid #555; border-radius: 4px; font-size: 11px; padding: 2px 8px; }"
      "QPushButton:hover { border-color: #aaa; }"
    )
    for text, tip, signal in (
      ("Finish", "Finish polygon (Enter)", self.finish_requested),
      ("Rotate", "Rotate 90° clockwise (R)", self.rotate_requested),
      ("Fit", "Show the whole image (0)", self.reset_requested),
    ):
      btn = QPushButton(text)
      btn.setFixedHeight(28)
      btn.setToolTip(tip)
      btn.setStyleSheet(action_style)
      btn.clicked.connect(signal.emit)
      layout.addWidget(btn)

    self.archived_check = QCheckBox("Show archived")
    self.archived_check.setStyleSheet("QCheckBox { color: #ccc; }")
    self.archived_check.toggled.connect(self.show_archived_toggled.emit)
    layout.addWidget(self.archived_check)

    self.search_edit = QLineEdit()
    self.search_edit.setPlaceholderText("Find point")
    self.search_edit.setClearButtonEnabled(True)
    self.search_edit.setFixedWidth(120)
    self.search_edit.textChanged.connect(self.search_changed.emit)
    layout.addWidget(self.search_edit)
    layout.addStretch(1)

  def _on_tool_clicked(self, btn: QPushButton) -> None:
    for tool, b in self._tool_buttons.items():
      if b is btn:
        self.tool_changed.emit(tool)
        return

  def _on_category_changed(self, index: int) -> None:
    category_id = self.category_combo.itemData(index)
    if category_id is not None:
      self.category_changed.emit(category_id)

  def current_tool(self) -> str:
    for tool, b in self._tool_buttons.items():
      if b.isChecked():
        return tool
    return TOOL_SELECT

  def current_category(self) -> str | None:
    return self.category_combo.currentData()

  def set_active_tool_button(self, tool: str) -> None:
    btn = self._tool_buttons.get(tool)
    if btn:
      btn.setChecked(True)


# -- Canvas -------------------------------------------------------------------

class AnnotationCanvas(QWidget):
  """Pan/zoom/rotate view of one background image with its markers.

  Mouse and touch input goes through the ViewportController (pan, pinch,
  click detection) and the DrawingStateMachine (rectangles, polygons).
  Point markers are placed by clicking with the point tool. All marker
  mutations go through the MarkerStore, whose callbacks are re-emitted as
  signals.
  """

  marker_created = Signal(object)
  marker_updated = Signal(str, object)
  marker_deleted = Signal(str)
  point_selected = Signal(str)
  selection_changed = Signal(object)
  ready = Signal(int, int)
  background_failed = Signal(str)

  def __init__(self, parent: QWidget | None = None, *,
               store: MarkerStore | None = None,
               catalog: CategoryCatalog | None = None,
               guides: GuideLineIndex | None = None,
               config: dict[str, Any] | None = None):
    super().__init__(parent)
    config = config or {}
    self.catalog = catalog or CategoryCatalog()
    self.guides = guides if guides is not None else GuideLineIndex()
    self.store = store if store is not None else MarkerStore()
    self.store.on_created = self._on_store_created
    self.store.on_updated = self._on_store_updated
    self.store.on_deleted = self._on_store_deleted

    self.viewport = ViewportController(
      click_epsilon=config.get("click_epsilon", CLICK_EPSILON),
      wheel_requires_shift=config.get("wheel_zoom_requires_shift", True),
    )
    self.drawing = DrawingStateMachine(
      self.store, self.guides, self.catalog,
      mode=config.get("default_drawing_mode", RECTANGLE_MODE),
      snap_threshold=config.get("snap_threshold", SNAP_THRESHOLD),
      min_rectangle_size=config.get("min_rectangle_size", 10),
      close_distance=config.get("polygon_close_distance", 10),
      stay_armed=config.get("drawing_stay_armed", True),
    )
    self.alignment_threshold = config.get("alignment_snap_threshold", ALIGNMENT_SNAP_THRESHOLD)
    self.neighbor_threshold = config.get("neighbor_threshold", geo.NEIGHBOR_THRESHOLD)
    self.point_hit_radius = config.get("point_hit_radius", POINT_HIT_RADIUS)
    self.marker_size = config.get("marker_size", DEFAULT_MARKER_SIZE)
    self.label_font_size = config.get("label_font_size", DEFAULT_LABEL_FONT_SIZE)
    self.show_archived = bool(config.get("show_archived", False))
    self.pixels_per_meter = config.get("pixels_per_meter")

    self.tool = TOOL_SELECT
    self.category_id: str | None = None
    self.selected_id: str | None = None
    self.hovered_id: str | None = None
    self.search_query = ""

    self._background: BackgroundImage | None = None
    self._background_error: str | None = None
    self._rect_drag = False
    self._point_drag_id: str | None = None
    self._point_drag_pos: Point | None = None  # image space
    self._snap_lines: tuple[tuple[float, ...], tuple[float, ...]] = ((), ())  # image x's, y's

    self.setMouseTracking(True)
    self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)
    self.setAttribute(Qt.WidgetAttribute.WA_AcceptTouchEvents, True)
    self.setMinimumSize(200, 150)

  # -- Background -------------------------------------------------------------

  @property
  def background(self) -> BackgroundImage | None:
    return self._background

  @property
  def has_valid_background(self) -> bool:
    return self._background is not None

  def set_background(self, ref) -> bool:
    """Decode and show a background. Returns False (and disables input) if invalid."""
    self._reset_interaction()
    try:
      bg = load_background(ref)
    except InvalidBackgroundImage as e:
      log.warning("Invalid background image: %s", e)
      self._background = None
      self._background_error = str(e)
      self.viewport.disable(str(e))
      self.drawing.disable()
      self.background_failed.emit(str(e))
      self.update()
      return False

    self._background = bg
    self._background_error = None
    self._sync_surface()
    self.viewport.enable()
    self.viewport.set_image_size(bg.width, bg.height)
    self.drawing.enable()
    self._sync_surface()
    self.ready.emit(bg.width, bg.height)
    self.update()
    return True

  def _sync_surface(self) -> None:
    w, h = self.width(), self.height()
    self.viewport.set_surface_size(w, h)
    if self._background is not None:
      self.drawing.set_frame(w, h, self._background.width, self._background.height)
      state = self.viewport.state
      if state.initialized:
        # Screen pixels per surface unit: surface -> image -> screen
        s = screen_scale(state)
        self.drawing.set_pixel_scale(
          s * self._background.width / w, s * self._background.height / h,
        )

  # -- Tools ------------------------------------------------------------------

  def set_tool(self, tool: str, category_id: str | None = None) -> None:
    if tool not in TOOLS:
      raise ValueError("Unknown tool %r" % (tool,))
    if category_id is not None:
      self.category_id = category_id
    self.tool = tool
    self._snap_lines = ((), ())
    if tool in (RECTANGLE_MODE, POLYGON_MODE):
      self.drawing.set_mode(tool)
      self.drawing.arm(self.category_id)
    else:
      self.drawing.disarm()
    log.debug("Tool set to %s (category %s)", tool, self.category_id)
    self.update()

  def set_category(self, category_id: str | None) -> None:
    self.category_id = category_id
    if self.drawing.state in (ARMED, DRAWING):
      self.drawing.arm(category_id)
    self.update()

  def set_show_archived(self, show: bool) -> None:
    self.show_archived = bool(show)
    if not self.show_archived and self.selected_id:
      m = self.store.get(self.selected_id)
      if m is not None and m.archived:
        self._select(None)
    self.update()

  def set_search_query(self, query: str | None) -> None:
    """Highlight point markers whose label contains *query* (case-insensitive)."""
    self.search_query = (query or "").strip()
    self.update()

  def is_highlighted(self, marker: Marker) -> bool:
    if not self.search_query or marker.kind != geo.POINT or not marker.label:
      return False
    return self.search_query.lower() in marker.label.lower()

  def highlighted_ids(self) -> list[str]:
    return [m.id for m in self.store.points(include_archived=self.show_archived)
            if self.is_highlighted(m)]

  # -- Coordinates ------------------------------------------------------------

  def image_to_surface(self, p: Point) -> Point:
    """Image space -> the unrotated, unzoomed image stretched over the widget."""
    if self._background is None:
      return p
    return Point(p.x * self.width() / self._background.width,
                 p.y * self.height() / self._background.height)

  def surface_to_image(self, p: Point) -> Point:
    if self._background is None:
      return p
    return Point(p.x * self._background.width / self.width(),
                 p.y * self._background.height / self.height())

  def screen_to_surface(self, p: Point) -> Point:
    return self.image_to_surface(self.viewport.to_image(p))

  def _image_transform(self) -> QTransform | None:
    """Painter transform from image space to widget coordinates."""
    state = self.viewport.state
    if not state.initialized:
      return None
    scale = min(state.surface_width / state.width, state.surface_height / state.height)
    off_x = (state.surface_width - state.width * scale) / 2.0
    off_y = (state.surface_height - state.height * scale) / 2.0
    cx = state.image_width / 2.0
    cy = state.image_height / 2.0
    t = QTransform()
    t.translate(off_x, off_y)
    t.scale(scale, scale)
    t.translate(-state.x, -state.y)
    t.translate(cx, cy)
    t.rotate(state.rotation)
    t.translate(-cx, -cy)
    return t

  # -- Actions ----------------------------------------------------------------

  def rotate_clockwise(self) -> None:
    self.viewport.rotate_clockwise()
    log.debug("Rotation now %d", self.viewport.state.rotation)
    self.update()

  def reset_view(self) -> None:
    self.viewport.reset()
    self.update()

  def finish_polygon(self) -> Marker | None:
    marker = self.drawing.commit()
    self.update()
    return marker

  def delete_selected(self) -> bool:
    if self.selected_id is None:
      return False
    marker_id = self.selected_id
    ok = self.store.delete(marker_id)
    if ok:
      self._select(None)
    self.update()
    return ok

  def bring_forward(self) -> bool:
    if self.selected_id is None:
      return False
    ok = self.store.bring_forward(self.selected_id)
    self.update()
    return ok

  def send_backward(self) -> bool:
    if self.selected_id is None:
      return False
    ok = self.store.send_backward(self.selected_id)
    self.update()
    return ok

  def archive_selected(self, archived: bool = True) -> bool:
    if self.selected_id is None:
      return False
    marker = self.store.archive(self.selected_id, archived)
    if marker is not None and archived and not self.show_archived:
      self._select(None)
    self.update()
    return marker is not None

  def insert_line_points(self, start_id: str, end_id: str,
                         spacing_m: float | None = None,
                         count: int | None = None) -> list[Marker]:
    """Place evenly spaced point markers between two existing points.

    With *spacing_m* and a known scale (pixels_per_meter) the count follows
    from the real distance; otherwise *count* points are placed (default 1).
    """
    start = self.store.get(start_id)
    end = self.store.get(end_id)
    if start is None or end is None or start.kind != geo.POINT or end.kind != geo.POINT:
      log.warning("Line tool needs two point markers, got %s and %s", start_id, end_id)
      return []
    if count is None:
      if spacing_m is not None and self.pixels_per_meter:
        count = geo.count_for_spacing(
          geo.distance(start.geometry, end.geometry), self.pixels_per_meter, spacing_m,
        )
      else:
        count = 1
    points = geo.interpolate_points(start.geometry, end.geometry, count)
    first = int(self.store.next_point_label())
    labels = [str(first + i) for i in range(len(points))]
    created = self.store.create_many(
      points, start.category_id, labels=labels, catalog=self.catalog,
    )
    log.info("Line tool placed %d points between %s and %s", len(created), start_id, end_id)
    self.update()
    return created

  def area_label(self, marker: Marker) -> str:
    m2 = geo.area_in_square_meters(marker.area, self.pixels_per_meter)
    if m2 is not None:
      return "%.2f m²" % m2
    return "%.0f px²" % marker.area

  # -- Store callbacks --------------------------------------------------------

  def _on_store_created(self, marker: Marker) -> None:
    self.marker_created.emit(marker)

  def _on_store_updated(self, marker_id: str, patch: dict[str, Any]) -> None:
    self.marker_updated.emit(marker_id, patch)

  def _on_store_deleted(self, marker_id: str) -> None:
    self.marker_deleted.emit(marker_id)

  # -- Selection --------------------------------------------------------------

  def _select(self, marker: Marker | None) -> None:
    new_id = marker.id if marker is not None else None
    if new_id == self.selected_id:
      return
    self.selected_id = new_id
    self.selection_changed.emit(marker)
    if marker is not None and marker.kind == geo.POINT:
      self.point_selected.emit(marker.id)

  def _hit(self, p: Point) -> Marker | None:
    return self.store.hit_test(
      p, self.viewport.state, include_archived=self.show_archived,
      point_radius=self.point_hit_radius,
    )

  # -- Input routing ----------------------------------------------------------

  def _press(self, pointer_id: int, p: Point) -> None:
    self._sync_surface()
    if not self.viewport.interactive:
      return

    if pointer_id == MOUSE_POINTER and self.viewport.active_pointers == 0:
      if self.tool == RECTANGLE_MODE and self.drawing.state == ARMED:
        if self.drawing.pointer_down(self.screen_to_surface(p)):
          self._rect_drag = True
          self._update_guide_snap_lines(self.screen_to_surface(p))
          self.update()
          return
      if self.tool in (TOOL_SELECT, TOOL_POINT):
        hit = self._hit(p)
        if hit is not None and hit.kind == geo.POINT and hit.id == self.selected_id:
          self._point_drag_id = hit.id
          self._point_drag_pos = hit.geometry
          return

    self.viewport.pointer_down(pointer_id, p)

  def _move(self, pointer_id: int, p: Point) -> None:
    if self._rect_drag:
      surface = self.screen_to_surface(p)
      self.drawing.pointer_move(surface)
      self._update_guide_snap_lines(surface)
      self.update()
      return

    if self._point_drag_id is not None:
      image = self.viewport.to_image(p)
      snapped = alignment_snap(
        image.x, image.y, self.store.points(include_archived=False),
        exclude_id=self._point_drag_id, threshold=self._alignment_threshold_image(),
      )
      self._point_drag_pos = Point(snapped.x, snapped.y)
      self._snap_lines = (snapped.vertical, snapped.horizontal)
      self.update()
      return

    before = self.viewport.state.to_dict()
    self.viewport.pointer_move(pointer_id, p)
    if pointer_id == MOUSE_POINTER and self.viewport.active_pointers == 0:
      self._update_hover(p)
    if self.viewport.state.to_dict() != before:
      self.update()

  def _release(self, pointer_id: int, p: Point) -> None:
    self._sync_surface()
    if self._rect_drag:
      self._rect_drag = False
      self._snap_lines = ((), ())
      self.drawing.pointer_up(self.screen_to_surface(p))
      self.update()
      return

    if self._point_drag_id is not None:
      marker_id, pos = self._point_drag_id, self._point_drag_pos
      self._point_drag_id = None
      self._point_drag_pos = None
      self._snap_lines = ((), ())
      marker = self.store.get(marker_id)
      if marker is not None and pos is not None and pos != marker.geometry:
        self.store.update(marker_id, geometry=Point(pos.x, pos.y))
      self.update()
      return

    click = self.viewport.pointer_up(pointer_id, p)
    if click is not None:
      self._handle_click(click)

  def _handle_click(self, p: Point) -> None:
    """A press/release that did not turn into a drag or pinch."""
    if self.tool == POLYGON_MODE and self.drawing.state in (ARMED, DRAWING):
      surface = self.screen_to_surface(p)
      self.drawing.click(surface)
      self._update_guide_snap_lines(surface)
      self.update()
      return

    hit = self._hit(p)
    if hit is not None:
      self._select(hit)
    elif self.tool == TOOL_POINT:
      self._place_point(p)
    else:
      self._select(None)
    self.update()

  def _place_point(self, p: Point) -> Marker | None:
    image = self.viewport.to_image(p)
    snapped = alignment_snap(
      image.x, image.y, self.store.points(include_archived=False),
      threshold=self._alignment_threshold_image(),
    )
    marker = self.store.create(
      Point(snapped.x, snapped.y), self.category_id, catalog=self.catalog,
      label=self.store.next_point_label(),
    )
    if marker is not None:
      self._select(marker)
    return marker

  def _alignment_threshold_image(self) -> float:
    """Point alignment threshold (screen px) in image units at the current zoom."""
    if not self.viewport.state.initialized:
      return self.alignment_threshold
    return self.alignment_threshold / screen_scale(self.viewport.state)

  def _update_hover(self, p: Point) -> None:
    hit = self._hit(p)
    hovered = hit.id if hit is not None else None
    if hovered != self.hovered_id:
      self.hovered_id = hovered
      self.update()

  def _update_guide_snap_lines(self, surface: Point) -> None:
    tx, ty = self.drawing.snap_thresholds
    res = self.guides.snap(
      surface.x, surface.y, self.width(), self.height(), tx, threshold_y=ty,
    )
    xs = tuple(self.surface_to_image(Point(x, 0)).x for x in res.vertical)
    ys = tuple(self.surface_to_image(Point(0, y)).y for y in res.horizontal)
    self._snap_lines = (xs, ys)

  def _reset_interaction(self) -> None:
    """Drop any half-finished gesture or drawing."""
    self._rect_drag = False
    self._point_drag_id = None
    self._point_drag_pos = None
    self._snap_lines = ((), ())
    self.viewport.cancel_gesture()
    self.drawing.cancel()

  # -- Qt events --------------------------------------------------------------

  def resizeEvent(self, event: QResizeEvent) -> None:
    super().resizeEvent(event)
    self._sync_surface()

  def mousePressEvent(self, event: QMouseEvent) -> None:
    if event.button() != Qt.MouseButton.LeftButton:
      return
    pos = event.position()
    try:
      self._press(MOUSE_POINTER, Point(pos.x(), pos.y()))
    except Exception as e:
      log.exception("Mouse press failed: %s", e)
      self._reset_interaction()

  def mouseMoveEvent(self, event: QMouseEvent) -> None:
    pos = event.position()
    try:
      self._move(MOUSE_POINTER, Point(pos.x(), pos.y()))
    except Exception as e:
      log.exception("Mouse move failed: %s", e)
      self._reset_interaction()

  def mouseReleaseEvent(self, event: QMouseEvent) -> None:
    if event.button() != Qt.MouseButton.LeftButton:
      return
    pos = event.position()
    try:
      self._release(MOUSE_POINTER, Point(pos.x(), pos.y()))
    except Exception as e:
      log.exception("Mouse release failed: %s", e)
      self._reset_interaction()

  def mouseDoubleClickEvent(self, event: QMouseEvent) -> None:
    if event.button() != Qt.MouseButton.LeftButton:
      return
    try:
      if self.tool == POLYGON_MODE:
        self.drawing.double_click()
        self._snap_lines = ((), ())
        self.update()
    except Exception as e:
      log.exception("Double click failed: %s", e)
      self._reset_interaction()

  def wheelEvent(self, event: QWheelEvent) -> None:
    # Qt reports wheel-up as positive; zooming out follows scroll-down
    delta = event.angleDelta()
    dy = -(delta.y() or delta.x())
    shift = bool(event.modifiers() & Qt.KeyboardModifier.ShiftModifier)
    pos = event.position()
    try:
      self._sync_surface()
      if self.viewport.wheel(dy, Point(pos.x(), pos.y()), shift=shift):
        self.update()
        event.accept()
        return
    except Exception as e:
      log.exception("Wheel zoom failed: %s", e)
    event.ignore()

  def event(self, event: QEvent) -> bool:
    if event.type() in (QEvent.Type.TouchBegin, QEvent.Type.TouchUpdate,
                        QEvent.Type.TouchEnd, QEvent.Type.TouchCancel):
      try:
        self._touch(event)
      except Exception as e:
        log.exception("Touch handling failed: %s", e)
        self._reset_interaction()
      event.accept()
      return True
    return super().event(event)

  def _touch(self, event: QTouchEvent) -> None:
    if event.type() == QEvent.Type.TouchCancel:
      self._reset_interaction()
      self.update()
      return
    for tp in event.points():
      pos = tp.position()
      p = Point(pos.x(), pos.y())
      state = tp.state()
      if state == QEventPoint.State.Pressed:
        self._press(tp.id(), p)
      elif state == QEventPoint.State.Released:
        self._release(tp.id(), p)
      elif state == QEventPoint.State.Updated:
        self._move(tp.id(), p)

  def keyPressEvent(self, event: QKeyEvent) -> None:
    key = event.key()
    try:
      if key == Qt.Key.Key_Escape:
        if self.drawing.state == DRAWING:
          self.drawing.cancel()
          self._rect_drag = False
        else:
          self._select(None)
        self._snap_lines = ((), ())
        self.update()
      elif key in (Qt.Key.Key_Return, Qt.Key.Key_Enter):
        self.finish_polygon()
      elif key in (Qt.Key.Key_Delete, Qt.Key.Key_Backspace):
        self.delete_selected()
      elif key == Qt.Key.Key_PageUp:
        self.bring_forward()
      elif key == Qt.Key.Key_PageDown:
        self.send_backward()
      elif key == Qt.Key.Key_R:
        self.rotate_clockwise()
      elif key in (Qt.Key.Key_0, Qt.Key.Key_Home):
        self.reset_view()
      else:
        super().keyPressEvent(event)
    except Exception as e:
      log.exception("Key handling failed: %s", e)

  # -- Paint ------------------------------------------------------------------

  def paintEvent(self, event: QPaintEvent) -> None:
    painter = QPainter(self)
    painter.setRenderHint(QPainter.RenderHint.Antialiasing)
    try:
      self._paint(painter)
    except Exception as e:
      log.exception("Paint failed: %s", e)
    finally:
      painter.end()

  def _paint(self, painter: QPainter) -> None:
    painter.fillRect(self.rect(), BACKDROP_COLOR)
    if self._background is None:
      self._paint_placeholder(painter)
      return

    self._sync_surface()
    transform = self._image_transform()
    if transform is None:
      return

    painter.setTransform(transform)
    painter.drawImage(QPointF(0, 0), self._background.image)
    self._paint_guides(painter)

    # Ascending z-index. Points are drawn untransformed so they keep
    # their on-screen size.
    for marker in self.store.markers(include_archived=self.show_archived):
      if marker.kind == geo.POINT:
        painter.resetTransform()
        self._paint_point(painter, marker)
      else:
        painter.setTransform(transform)
        self._paint_shape(painter, marker)

    painter.setTransform(transform)
    self._paint_preview(painter)
    self._paint_snap_lines(painter)
    painter.resetTransform()
    self._paint_vertex_handles(painter)
    self._paint_labels(painter)

  def _paint_placeholder(self, painter: QPainter) -> None:
    font = QFont(painter.font())
    font.setPointSize(14)
    painter.setFont(font)
    painter.setPen(QColor(200, 200, 200))
    painter.drawText(self.rect(), Qt.AlignmentFlag.AlignCenter, PLACEHOLDER_TEXT)

  def _cosmetic_pen(self, color: QColor, width: float = 2.0,
                    style: Qt.PenStyle = Qt.PenStyle.SolidLine) -> QPen:
    pen = QPen(color, width, style)
    pen.setCosmetic(True)
    return pen

  def _paint_guides(self, painter: QPainter) -> None:
    iw, ih = self._background.width, self._background.height
    painter.setPen(self._cosmetic_pen(GUIDE_COLOR, 1.0, Qt.PenStyle.DashLine))
    for g in self.guides:
      if g.axis == VERTICAL:
        x = g.position_on(iw)
        painter.drawLine(QPointF(x, 0), QPointF(x, ih))
      elif g.axis == HORIZONTAL:
        y = g.position_on(ih)
        painter.drawLine(QPointF(0, y), QPointF(iw, y))

  def _marker_color(self, marker: Marker) -> QColor:
    color = QColor(self.catalog.color_for(marker.category_id))
    if marker.archived:
      color.setAlpha(110)
    return color

  def _paint_shape(self, painter: QPainter, marker: Marker) -> None:
    color = self._marker_color(marker)
    fill = QColor(color)
    fill.setAlpha(60 if marker.id != self.hovered_id else 100)
    width = 3.0 if marker.id == self.selected_id else 2.0
    outline = SELECTED_COLOR if marker.id == self.selected_id else color
    painter.setPen(self._cosmetic_pen(outline, width))
    painter.setBrush(QBrush(fill))

    g = marker.geometry
    if g.kind == geo.RECTANGLE:
      painter.drawRect(QRectF(g.x, g.y, g.w, g.h))
    elif g.kind == geo.POLYGON:
      painter.drawPolygon(QPolygonF([QPointF(p.x, p.y) for p in g.points]))

  def _paint_preview(self, painter: QPainter) -> None:
    session = self.drawing.session
    if session is None:
      return
    painter.setPen(self._cosmetic_pen(PREVIEW_COLOR, 2.0, Qt.PenStyle.DashLine))
    painter.setBrush(Qt.BrushStyle.NoBrush)
    if session.mode == RECTANGLE_MODE:
      r = session.preview_rect()
      if r is not None:
        a = self.surface_to_image(Point(r.x, r.y))
        b = self.surface_to_image(Point(r.x + r.w, r.y + r.h))
        painter.drawRect(QRectF(QPointF(a.x, a.y), QPointF(b.x, b.y)))
    elif session.mode == POLYGON_MODE and session.vertices:
      pts = [self.surface_to_image(v) for v in session.vertices]
      painter.drawPolyline(QPolygonF([QPointF(p.x, p.y) for p in pts]))

  def _paint_vertex_handles(self, painter: QPainter) -> None:
    session = self.drawing.session
    if session is None or session.mode != POLYGON_MODE:
      return
    painter.setPen(QPen(PREVIEW_COLOR, 1))
    painter.setBrush(QBrush(PREVIEW_COLOR))
    for i, v in enumerate(session.vertices):
      sp = self.viewport.to_screen(self.surface_to_image(v))
      # First vertex is the closing target
      r = 5 if i == 0 else 3
      painter.drawEllipse(QPointF(sp.x, sp.y), r, r)

  def _paint_snap_lines(self, painter: QPainter) -> None:
    xs, ys = self._snap_lines
    if not xs and not ys:
      return
    iw, ih = self._background.width, self._background.height
    painter.setPen(self._cosmetic_pen(SNAP_LINE_COLOR, 1.0))
    for x in xs:
      painter.drawLine(QPointF(x, 0), QPointF(x, ih))
    for y in ys:
      painter.drawLine(QPointF(0, y), QPointF(iw, y))

  def _point_radius(self, marker: Marker) -> float:
    return self.marker_size + (2 if marker.id == self.hovered_id else 0)

  def _point_screen_pos(self, marker: Marker) -> Point:
    g = marker.geometry
    if marker.id == self._point_drag_id and self._point_drag_pos is not None:
      g = self._point_drag_pos
    return self.viewport.to_screen(g)

  def _point_colors(self, marker: Marker) -> tuple[QColor, QColor]:
    """Fill and outline of a point marker: category fill, status outline."""
    fill = HIGHLIGHT_COLOR if self.is_highlighted(marker) else self._marker_color(marker)
    if marker.id == self.selected_id:
      outline = SELECTED_COLOR
    else:
      outline = STATUS_COLORS.get(marker.status, HOVER_COLOR)
    return QColor(fill), QColor(outline)

  def _paint_point(self, painter: QPainter, marker: Marker) -> None:
    sp = self._point_screen_pos(marker)
    radius = self._point_radius(marker)
    center = QPointF(sp.x, sp.y)
    fill, outline = self._point_colors(marker)
    if self.is_highlighted(marker):
      halo = QColor(HIGHLIGHT_COLOR)
      halo.setAlpha(90)
      painter.setPen(Qt.PenStyle.NoPen)
      painter.setBrush(halo)
      painter.drawEllipse(center, radius + 6, radius + 6)
    painter.setPen(QPen(outline, 2))
    painter.setBrush(QBrush(fill))
    painter.drawEllipse(center, radius, radius)

  def _paint_labels(self, painter: QPainter) -> None:
    points = self.store.points(include_archived=self.show_archived)
    if not any(m.label for m in points):
      return
    sides = place_labels(points, self.viewport.state.rotation, self.neighbor_threshold)

    font = QFont(painter.font())
    font.setPointSize(self.label_font_size)
    painter.setFont(font)
    fm = QFontMetricsF(font)
    for marker in points:
      if not marker.label:
        continue
      self._paint_label(
        painter, fm, marker.label, self._point_screen_pos(marker),
        sides.get(marker.id, TOP), self._point_radius(marker),
      )

  def _paint_label(self, painter: QPainter, fm: QFontMetricsF, text: str,
                   anchor: Point, side: str, radius: float) -> None:
    w = fm.horizontalAdvance(text)
    h = fm.height()
    gap = radius + LABEL_GAP
    if side == TOP:
      x, y = anchor.x - w / 2, anchor.y - gap - h
    elif side == BOTTOM:
      x, y = anchor.x - w / 2, anchor.y + gap
    elif side == LEFT:
      x, y = anchor.x - gap - w, anchor.y - h / 2
    elif side == RIGHT:
      x, y = anchor.x + gap, anchor.y - h / 2
    else:
      return
    box = QRectF(x - 2, y, w + 4, h)
    painter.setPen(Qt.PenStyle.NoPen)
    painter.setBrush(QColor(0, 0, 0, 150))
    painter.drawRoundedRect(box, 3, 3)
    painter.setPen(QColor(255, 255, 255))
    painter.drawText(box, Qt.AlignmentFlag.AlignCenter, text)
