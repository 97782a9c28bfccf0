from __future__ import annotations

import copy
import json
import os
import sys
from typing import Any

from PySide6.QtWidgets import QApplication, QVBoxLayout, QWidget

from canvas import AnnotationCanvas, CanvasToolbar
from guides import GuideLineIndex
from log import LOG_LEVEL_ENV, get_logger, set_console_level
from markers import CategoryCatalog, MarkerStore

log = get_logger("main")

# When frozen as exe, config lives next to the executable
if getattr(sys, "frozen", False):
  APP_DIR = os.path.dirname(sys.executable)
else:
  APP_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(APP_DIR, "config.json")


CONFIG_VERSION = 2

DEFAULT_CONFIG = {
  "config_version": CONFIG_VERSION,
  "snap_threshold": 15,
  "alignment_snap_threshold": 10,
  "min_rectangle_size": 10,
  "polygon_close_distance": 10,
  "neighbor_threshold": 30,
  "click_epsilon": 3,
  "point_hit_radius": 8,
  "wheel_zoom_requires_shift": True,
  "default_drawing_mode": "rectangle",
  "drawing_stay_armed": True,
  "marker_size": 4,
  "label_font_size": 10,
  "show_archived": False,
  "pixels_per_meter": None,
  "log_level": "INFO",
  "categories": [
    {"id": "crack", "name": "Crack", "color": "#E53935", "severity": "high"},
    {"id": "moisture", "name": "Moisture", "color": "#1E88E5", "severity": "medium"},
    {"id": "spalling", "name": "Spalling", "color": "#FB8C00", "severity": "critical"},
    {"id": "note", "name": "Note", "color": "#6941DE", "severity": "low"},
  ],
  "guides": {"vertical": {}, "horizontal": {}},
}


def migrate_config(config: dict[str, Any]) -> bool:
  """Fill in missing keys from defaults and bump version. Returns True if changed."""
  version = config.get("config_version", 1)
  changed = False

  # Add any keys introduced in newer versions
  for key, default_val in DEFAULT_CONFIG.items():
    if key not in config:
      config[key] = copy.deepcopy(default_val)
      log.info("Config migration: added '%s' = %r", key, default_val)
      changed = True

  if version < CONFIG_VERSION:
    config["config_version"] = CONFIG_VERSION
    changed = True
    log.info("Config migrated from v%d to v%d", version, CONFIG_VERSION)

  return changed


def load_config() -> dict[str, Any]:
  if not os.path.exists(CONFIG_PATH):
    log.info("No config found, creating defaults at %s", CONFIG_PATH)
    save_config(DEFAULT_CONFIG)
    return copy.deepcopy(DEFAULT_CONFIG)
  try:
    with open(CONFIG_PATH) as f:
      config = json.load(f)
  except json.JSONDecodeError as e:
    log.error("Corrupted config file, resetting to defaults: %s", e)
    save_config(DEFAULT_CONFIG)
    return copy.deepcopy(DEFAULT_CONFIG)
  except OSError as e:
    log.error("Cannot read config file: %s", e)
    return copy.deepcopy(DEFAULT_CONFIG)

  if not isinstance(config, dict):
    log.error("Config root is not an object, resetting to defaults")
    save_config(DEFAULT_CONFIG)
    return copy.deepcopy(DEFAULT_CONFIG)

  if migrate_config(config):
    save_config(config)
  return config


def save_config(config: dict[str, Any]) -> None:
  try:
    with open(CONFIG_PATH, "w") as f:
      json.dump(config, f, indent=2)
      f.write("\n")
  except OSError as e:
    log.error("Failed to save config: %s", e)


def guides_from_config(config: dict[str, Any]) -> GuideLineIndex:
  raw = config.get("guides") or {}
  try:
    return GuideLineIndex.from_positions(
      vertical=raw.get("vertical"), horizontal=raw.get("horizontal"),
    )
  except (ValueError, TypeError, AttributeError) as e:
    log.warning("Ignoring invalid guide configuration: %s", e)
    return GuideLineIndex()


def catalog_from_config(config: dict[str, Any]) -> CategoryCatalog:
  try:
    return CategoryCatalog.from_dicts(config.get("categories") or [])
  except (KeyError, TypeError) as e:
    log.warning("Ignoring invalid category configuration: %s", e)
    return CategoryCatalog()


class AnnotationWindow(QWidget):
  """Toolbar plus canvas for one background image."""

  def __init__(self, config: dict[str, Any], store: MarkerStore | None = None):
    super().__init__()
    self.config = config
    self.setWindowTitle("FloorMark")
    self.resize(1200, 800)

    catalog = catalog_from_config(config)
    self.toolbar = CanvasToolbar(catalog, self)
    self.canvas = AnnotationCanvas(
      self, store=store, catalog=catalog,
      guides=guides_from_config(config), config=config,
    )
    self.canvas.category_id = self.toolbar.current_category()
    self.toolbar.archived_check.setChecked(self.canvas.show_archived)

    layout = QVBoxLayout(self)
    layout.setContentsMargins(0, 0, 0, 0)
    layout.setSpacing(0)
    layout.addWidget(self.toolbar)
    layout.addWidget(self.canvas, 1)

    self.toolbar.tool_changed.connect(self._on_tool_changed)
    self.toolbar.category_changed.connect(self.canvas.set_category)
    self.toolbar.rotate_requested.connect(self.canvas.rotate_clockwise)
    self.toolbar.reset_requested.connect(self.canvas.reset_view)
    self.toolbar.finish_requested.connect(self.canvas.finish_polygon)
    self.toolbar.show_archived_toggled.connect(self.canvas.set_show_archived)
    self.toolbar.search_changed.connect(self.canvas.set_search_query)

    self.canvas.marker_created.connect(
      lambda m: log.info("Marker %s created (%s, %s)", m.id, m.kind, self.canvas.area_label(m))
    )
    self.canvas.background_failed.connect(
      lambda reason: self.setWindowTitle("FloorMark - no valid background")
    )

  def _on_tool_changed(self, tool: str) -> None:
    self.canvas.set_tool(tool, self.toolbar.current_category())
    self.canvas.setFocus()

  def open_image(self, ref) -> bool:
    ok = self.canvas.set_background(ref)
    if ok and isinstance(ref, str):
      self.setWindowTitle("FloorMark - %s" % os.path.basename(ref))
    return ok


def main(argv: list[str] | None = None) -> int:
  argv = list(sys.argv if argv is None else argv)
  app = QApplication.instance() or QApplication(argv)
  config = load_config()
  # The environment variable wins over the config file
  if not os.environ.get(LOG_LEVEL_ENV):
    try:
      set_console_level(config.get("log_level") or "INFO")
    except (ValueError, TypeError, AttributeError) as e:
      log.warning("Ignoring invalid log_level: %s", e)

  window = AnnotationWindow(config)
  window.show()
  window.open_image(argv[1] if len(argv) > 1 else None)

  log.info("FloorMark running (config %s)", CONFIG_PATH)
  exit_code = app.exec()
  log.info("FloorMark exiting")
  return exit_code


if __name__ == "__main__":
  sys.exit(main())
