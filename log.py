"""Logging for FloorMark.

Module loggers are children of the ``floormark`` logger, which owns the
handlers: a rotating log file (always DEBUG) and stderr (INFO unless
$FLOORMARK_LOG_LEVEL or the ``log_level`` config key says otherwise).
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from logging.handlers import RotatingFileHandler

ROOT_LOGGER = "floormark"
LOG_FILENAME = "floormark.log"
LOG_DIR_ENV = "FLOORMARK_LOG_DIR"
LOG_LEVEL_ENV = "FLOORMARK_LOG_LEVEL"
MAX_BYTES = 1_000_000
BACKUP_COUNT = 3

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _writable(directory: str) -> bool:
  try:
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, LOG_FILENAME), "a"):
      pass
    return True
  except OSError:
    return False


def _resolve_log_dir() -> str:
  """Pick a writable directory for the log file.

  Priority: $FLOORMARK_LOG_DIR > app dir (next to exe) > %APPDATA%/FloorMark
  or the XDG state dir > temp dir.
  """
  candidates = []
  override = os.environ.get(LOG_DIR_ENV)
  if override:
    candidates.append(override)

  if getattr(sys, "frozen", False):
    candidates.append(os.path.dirname(sys.executable))
  else:
    candidates.append(os.path.dirname(os.path.abspath(__file__)))

  if sys.platform == "win32":
    appdata = os.environ.get("APPDATA", "")
    if appdata:
      candidates.append(os.path.join(appdata, "FloorMark"))
  else:
    xdg = os.environ.get("XDG_STATE_HOME", os.path.expanduser("~/.local/state"))
    candidates.append(os.path.join(xdg, "floormark"))

  for directory in candidates:
    if _writable(directory):
      return directory
  return tempfile.gettempdir()


def _level_from_env(default: int = logging.INFO) -> int:
  name = os.environ.get(LOG_LEVEL_ENV, "")
  level = logging.getLevelName(name.upper()) if name else default
  return level if isinstance(level, int) else default


LOG_PATH = os.path.join(_resolve_log_dir(), LOG_FILENAME)

_console_handler: logging.Handler | None = None


def _configure_root() -> logging.Logger:
  global _console_handler
  root = logging.getLogger(ROOT_LOGGER)
  if root.handlers:
    return root
  root.setLevel(logging.DEBUG)
  root.propagate = False
  formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

  try:
    file_handler = RotatingFileHandler(
      LOG_PATH, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
  except OSError as e:
    sys.stderr.write("floormark: file logging disabled (%s)\n" % e)

  _console_handler = logging.StreamHandler()
  _console_handler.setFormatter(formatter)
  _console_handler.setLevel(_level_from_env())
  root.addHandler(_console_handler)
  return root


def get_logger(name: str) -> logging.Logger:
  """Get the ``floormark.<name>`` logger."""
  _configure_root()
  return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def set_console_level(level: int | str) -> None:
  """Change how much reaches stderr; the log file always gets DEBUG."""
  _configure_root()
  if isinstance(level, str):
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
      raise ValueError("Unknown log level %r" % (level,))
    level = resolved
  _console_handler.setLevel(level)
