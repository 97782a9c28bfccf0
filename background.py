"""Background image references: validation and decoding."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import os
from typing import Union

from PySide6.QtGui import QImage

from log import get_logger

log = get_logger("background")

# Values that leak in from unset fields upstream
_PLACEHOLDER_REFS = ("undefined", "null", "none")
_DATA_URL_PREFIX = "data:image/"

ImageRef = Union[str, bytes, bytearray, QImage, None]


class InvalidBackgroundImage(Exception):
  """The reference is empty, a placeholder string or not decodable image data."""


@dataclasses.dataclass
class BackgroundImage:
  image: QImage
  source: str  # "data-url", "file", "bytes" or "qimage"

  @property
  def width(self) -> int:
    return self.image.width()

  @property
  def height(self) -> int:
    return self.image.height()


def _decode_data_url(ref: str) -> bytes:
  header, sep, payload = ref.partition(",")
  if not sep:
    raise InvalidBackgroundImage("Data URL has no payload")
  if ";base64" not in header:
    raise InvalidBackgroundImage("Only base64 data URLs are supported")
  try:
    return base64.b64decode(payload, validate=True)
  except (binascii.Error, ValueError) as e:
    raise InvalidBackgroundImage("Bad base64 payload: %s" % e) from e


def _from_bytes(data: bytes) -> QImage:
  image = QImage()
  if not data or not image.loadFromData(data):
    raise InvalidBackgroundImage("Data is not a decodable image")
  return image


def load_background(ref: ImageRef) -> BackgroundImage:
  """Decode *ref* into a QImage or raise InvalidBackgroundImage."""
  if ref is None:
    raise InvalidBackgroundImage("No background image")

  if isinstance(ref, QImage):
    if ref.isNull():
      raise InvalidBackgroundImage("Null image")
    return BackgroundImage(ref, "qimage")

  if isinstance(ref, (bytes, bytearray)):
    return BackgroundImage(_from_bytes(bytes(ref)), "bytes")

  if not isinstance(ref, str):
    raise InvalidBackgroundImage("Unsupported reference type %s" % type(ref).__name__)

  ref = ref.strip()
  if not ref or ref.lower() in _PLACEHOLDER_REFS:
    raise InvalidBackgroundImage("Empty or placeholder reference %r" % ref)

  if ref.startswith(_DATA_URL_PREFIX):
    return BackgroundImage(_from_bytes(_decode_data_url(ref)), "data-url")

  path = os.path.expanduser(ref)
  if not os.path.isfile(path):
    raise InvalidBackgroundImage("No such image file: %s" % path)
  image = QImage(path)
  if image.isNull():
    raise InvalidBackgroundImage("Cannot decode image file: %s" % path)
  log.debug("Loaded background %s (%dx%d)", path, image.width(), image.height())
  return BackgroundImage(image, "file")


def is_valid_background(ref: ImageRef) -> bool:
  try:
    load_background(ref)
  except InvalidBackgroundImage:
    return False
  return True
