"""Markers, categories and the in-memory marker store.

The store is the only owner of markers on an annotation surface. It assigns
stacking order, applies edits and talks to an optional persistence
collaborator, which is any object with::

  create(marker) -> Marker | None
  update(marker_id, patch) -> Marker | None
  delete(marker_id) -> bool

Rejections (``None``/``False`` or an exception) are handled as follows:
creations are never applied locally, updates and deletes are applied first
and rolled back.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator

import geometry as geo
from geometry import Geometry, Point
from log import get_logger
from transform import ViewportState, image_to_screen, screen_to_image

log = get_logger("markers")

SEVERITIES = ("low", "medium", "high", "critical")
STATUSES = ("PENDING", "IN_PROGRESS", "RESOLVED", "IGNORED")
DEFAULT_SEVERITY = "medium"
DEFAULT_STATUS = "PENDING"
DEFAULT_COLOR = "#6941DE"
POINT_HIT_RADIUS = 8.0

# Fields callers may patch through MarkerStore.update()
EDITABLE_FIELDS = (
  "category_id", "geometry", "z_index", "severity", "status", "label",
  "description", "priority", "archived", "attributes",
)


def _now() -> datetime:
  return datetime.now(timezone.utc)


# -- Categories ---------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Category:
  id: str
  name: str
  color: str = DEFAULT_COLOR
  severity: str = DEFAULT_SEVERITY


class CategoryCatalog:
  """Ordered list of categories driving default marker colour and severity."""

  def __init__(self, categories: Iterable[Category] = ()):
    self._categories = list(categories)

  @classmethod
  def from_dicts(cls, items: Iterable[dict[str, Any]]) -> CategoryCatalog:
    return cls(
      Category(
        id=str(d["id"]), name=d.get("name", str(d["id"])),
        color=d.get("color", DEFAULT_COLOR),
        severity=d.get("severity", DEFAULT_SEVERITY),
      )
      for d in items
    )

  def __iter__(self) -> Iterator[Category]:
    return iter(self._categories)

  def __len__(self) -> int:
    return len(self._categories)

  def get(self, category_id: str | None) -> Category | None:
    for c in self._categories:
      if c.id == category_id:
        return c
    return None

  def color_for(self, category_id: str | None) -> str:
    c = self.get(category_id)
    return c.color if c else DEFAULT_COLOR

  def severity_for(self, category_id: str | None) -> str:
    c = self.get(category_id)
    return c.severity if c else DEFAULT_SEVERITY


# -- Markers ------------------------------------------------------------------

@dataclasses.dataclass
class Marker:
  id: str
  category_id: str | None
  geometry: Geometry
  z_index: int = 0
  severity: str = DEFAULT_SEVERITY
  status: str = DEFAULT_STATUS
  label: str = ""
  area: float = 0.0  # image px^2
  description: str = ""
  priority: int = 0
  archived: bool = False
  attributes: dict[str, Any] = dataclasses.field(default_factory=dict)
  created_at: datetime = dataclasses.field(default_factory=_now)
  updated_at: datetime = dataclasses.field(default_factory=_now)

  @property
  def kind(self) -> str:
    return self.geometry.kind


def validate_geometry(geometry: Geometry) -> Geometry:
  """Enforce stored-geometry invariants; rectangles come back normalized."""
  if geometry.kind == geo.RECTANGLE:
    return geo.normalize_rect(geometry)
  elif geometry.kind == geo.POLYGON:
    if len(geometry.points) < 3:
      raise ValueError("A polygon needs at least 3 points, got %d" % len(geometry.points))
    return geometry
  elif geometry.kind == geo.POINT:
    return geometry
  raise ValueError("Unknown geometry kind: %r" % (getattr(geometry, "kind", None),))


def contains(marker: Marker, screen_point: Point, image_point: Point,
             viewport: ViewportState, point_radius: float = POINT_HIT_RADIUS) -> bool:
  g = marker.geometry
  if g.kind == geo.POINT:
    sp = image_to_screen(g, viewport)
    return geo.distance(sp, screen_point) <= point_radius
  elif g.kind == geo.RECTANGLE:
    return geo.point_in_rectangle(image_point.x, image_point.y, g)
  elif g.kind == geo.POLYGON:
    return geo.point_in_polygon(image_point.x, image_point.y, g.points)
  raise ValueError("Unknown geometry kind: %r" % (g.kind,))


def hit_test(screen_point: Point, markers: Iterable[Marker], viewport: ViewportState,
             point_radius: float = POINT_HIT_RADIUS) -> Marker | None:
  """Topmost marker under *screen_point*, testing in descending z-index."""
  image_point = screen_to_image(screen_point, viewport, clamp=False)
  ordered = sorted(markers, key=lambda m: m.z_index)
  for marker in reversed(ordered):
    if contains(marker, screen_point, image_point, viewport, point_radius):
      return marker
  return None


# -- Store --------------------------------------------------------------------

class MarkerStore:
  """In-memory markers of one annotation surface."""

  def __init__(self, persistence: Any = None,
               on_created: Callable[[Marker], None] | None = None,
               on_updated: Callable[[str, dict[str, Any]], None] | None = None,
               on_deleted: Callable[[str], None] | None = None):
    self._markers: dict[str, Marker] = {}
    self.persistence = persistence
    self.on_created = on_created
    self.on_updated = on_updated
    self.on_deleted = on_deleted

  def __len__(self) -> int:
    return len(self._markers)

  def __contains__(self, marker_id: object) -> bool:
    return marker_id in self._markers

  def __iter__(self) -> Iterator[Marker]:
    return iter(self.markers())

  def get(self, marker_id: str) -> Marker | None:
    return self._markers.get(marker_id)

  def markers(self, include_archived: bool = True) -> list[Marker]:
    """Render order: ascending z-index, insertion order for ties."""
    items = [m for m in self._markers.values() if include_archived or not m.archived]
    return sorted(items, key=lambda m: m.z_index)

  def points(self, include_archived: bool = True) -> list[Marker]:
    return [m for m in self.markers(include_archived) if m.geometry.kind == geo.POINT]

  def max_z_index(self) -> int:
    return max((m.z_index for m in self._markers.values()), default=0)

  def min_z_index(self) -> int:
    return min((m.z_index for m in self._markers.values()), default=0)

  def load(self, markers: Iterable[Marker]) -> None:
    """Replace the contents with markers from the collaborator, without callbacks."""
    self._markers = {m.id: m for m in markers}
    log.debug("Loaded %d markers", len(self._markers))

  def clear(self) -> None:
    self._markers.clear()

  # -- Create -----------------------------------------------------------------

  def create(self, geometry: Geometry, category_id: str | None = None, *,
             catalog: CategoryCatalog | None = None, marker_id: str | None = None,
             label: str = "", severity: str | None = None,
             status: str = DEFAULT_STATUS, description: str = "",
             attributes: dict[str, Any] | None = None,
             area: float | None = None) -> Marker | None:
    """Create a marker on top of the stack (z-index = current max + 1).

    Returns None when the persistence collaborator rejects it; nothing is
    stored locally in that case.
    """
    geometry = validate_geometry(geometry)
    if severity is None:
      severity = catalog.severity_for(category_id) if catalog else DEFAULT_SEVERITY
    marker = Marker(
      id=marker_id or uuid.uuid4().hex,
      category_id=category_id,
      geometry=geometry,
      z_index=self.max_z_index() + 1,
      severity=severity,
      status=status,
      label=label,
      area=geo.area(geometry) if area is None else area,
      description=description,
      attributes=dict(attributes or {}),
    )

    if self.persistence is not None:
      try:
        saved = self.persistence.create(marker)
      except Exception as e:
        log.error("Persistence failed to create marker %s: %s", marker.id, e)
        saved = None
      if saved is None:
        log.warning("Marker creation rejected by persistence, nothing stored")
        return None
      marker = saved

    self._markers[marker.id] = marker
    log.debug("Created %s marker %s (z=%d)", marker.kind, marker.id, marker.z_index)
    if self.on_created:
      self.on_created(marker)
    return marker

  def create_many(self, geometries: Iterable[Geometry], category_id: str | None = None,
                  labels: Iterable[str] | None = None, **kwargs: Any) -> list[Marker]:
    """Create several markers in order; rejected ones are skipped."""
    label_list = list(labels) if labels is not None else []
    created = []
    for i, g in enumerate(geometries):
      label = label_list[i] if i < len(label_list) else ""
      m = self.create(g, category_id, label=label, **kwargs)
      if m is not None:
        created.append(m)
    return created

  def next_point_label(self) -> str:
    """Next free numeric point label (highest numeric label + 1)."""
    highest = 0
    for m in self._markers.values():
      try:
        highest = max(highest, int(m.label))
      except (TypeError, ValueError):
        continue
    return str(highest + 1)

  # -- Update / delete --------------------------------------------------------

  def update(self, marker_id: str, **patch: Any) -> Marker | None:
    """Apply *patch* locally, then persist it; roll back if persistence rejects."""
    marker = self._markers.get(marker_id)
    if marker is None:
      log.warning("Update of unknown marker %s ignored", marker_id)
      return None
    unknown = set(patch) - set(EDITABLE_FIELDS)
    if unknown:
      raise ValueError("Cannot update marker fields: %s" % ", ".join(sorted(unknown)))
    if "geometry" in patch:
      patch["geometry"] = validate_geometry(patch["geometry"])
      patch["area"] = geo.area(patch["geometry"])

    previous = {name: getattr(marker, name) for name in list(patch) + ["updated_at"]}
    for name, value in patch.items():
      setattr(marker, name, value)
    marker.updated_at = _now()

    if not self._persist_update(marker_id, patch):
      for name, value in previous.items():
        setattr(marker, name, value)
      log.warning("Update of marker %s rejected, rolled back", marker_id)
      return None

    if self.on_updated:
      self.on_updated(marker_id, dict(patch))
    return marker

  def _persist_update(self, marker_id: str, patch: dict[str, Any]) -> bool:
    if self.persistence is None:
      return True
    try:
      return self.persistence.update(marker_id, dict(patch)) is not None
    except Exception as e:
      log.error("Persistence failed to update marker %s: %s", marker_id, e)
      return False

  def archive(self, marker_id: str, archived: bool = True) -> Marker | None:
    return self.update(marker_id, archived=archived)

  def delete(self, marker_id: str) -> bool:
    marker = self._markers.pop(marker_id, None)
    if marker is None:
      return False
    if self.persistence is not None:
      try:
        ok = bool(self.persistence.delete(marker_id))
      except Exception as e:
        log.error("Persistence failed to delete marker %s: %s", marker_id, e)
        ok = False
      if not ok:
        self._markers[marker_id] = marker
        log.warning("Delete of marker %s rejected, restored", marker_id)
        return False
    log.debug("Deleted marker %s", marker_id)
    if self.on_deleted:
      self.on_deleted(marker_id)
    return True

  # -- Z-order ----------------------------------------------------------------

  def bring_forward(self, marker_id: str) -> bool:
    """Swap with the marker directly above; no-op when already on top."""
    return self._step(marker_id, +1)

  def send_backward(self, marker_id: str) -> bool:
    """Swap with the marker directly below; no-op when already at the bottom."""
    return self._step(marker_id, -1)

  def _step(self, marker_id: str, direction: int) -> bool:
    marker = self._markers.get(marker_id)
    if marker is None:
      return False
    if not self._renumber_duplicate_z():
      return False
    ordered = self.markers()
    idx = ordered.index(marker)
    other_idx = idx + direction
    if other_idx < 0 or other_idx >= len(ordered):
      return False
    other = ordered[other_idx]

    mine, theirs = marker.z_index, other.z_index
    if self.update(marker_id, z_index=theirs) is None:
      return False
    if self.update(other.id, z_index=mine) is None:
      self.update(marker_id, z_index=mine)
      return False
    return True

  def _renumber_duplicate_z(self) -> bool:
    """Make z-indexes unique (1..n in render order) when any are shared."""
    ordered = self.markers()
    if len({m.z_index for m in ordered}) == len(ordered):
      return True
    log.info("Renumbering z-order of %d markers with shared z-indexes", len(ordered))
    changed: list[tuple[str, int]] = []
    for z, m in enumerate(ordered, start=1):
      if m.z_index == z:
        continue
      old = m.z_index
      if self.update(m.id, z_index=z) is None:
        for marker_id, prev in reversed(changed):
          self.update(marker_id, z_index=prev)
        return False
      changed.append((m.id, old))
    return True

  # -- Queries ----------------------------------------------------------------

  def hit_test(self, screen_point: Point, viewport: ViewportState,
               include_archived: bool = False,
               point_radius: float = POINT_HIT_RADIUS) -> Marker | None:
    return hit_test(screen_point, self.markers(include_archived), viewport, point_radius)
