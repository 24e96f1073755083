"""UI hierarchy snapshots captured from Appium page sources."""

from __future__ import annotations

import hashlib
import logging
import re
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_BOUNDS_PATTERN = re.compile(r"^\s*\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]\s*$")
_WHITESPACE = re.compile(r"\s+")

# Root wrappers emitted by UiAutomator2 and XCUITest dumps; never interactable.
_ROOT_TAGS = {"hierarchy", "AppiumAUT"}

BOUNDS_BUCKET_SIZE = 50


@dataclass(frozen=True)
class Bounds:
    """Interactable rectangle of a node, in screen pixels."""

    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Tuple[int, int]:
        return (self.x1 + self.x2) // 2, (self.y1 + self.y2) // 2

    def contains(self, x: int, y: int, tolerance: int = 0) -> bool:
        return (
            self.x1 - tolerance <= x <= self.x2 + tolerance
            and self.y1 - tolerance <= y <= self.y2 + tolerance
        )

    def distance_to(self, x: int, y: int) -> float:
        dx = self.x1 - x if x < self.x1 else (x - self.x2 if x > self.x2 else 0)
        dy = self.y1 - y if y < self.y1 else (y - self.y2 if y > self.y2 else 0)
        return (dx * dx + dy * dy) ** 0.5

    def to_string(self) -> str:
        return f"[{self.x1},{self.y1}][{self.x2},{self.y2}]"


def parse_bounds(value: Optional[str]) -> Optional[Bounds]:
    """Parse a ``[x1,y1][x2,y2]`` rectangle.

    Returns ``None`` for malformed strings and for degenerate rectangles
    (``x1 >= x2`` or ``y1 >= y2``); stale nodes in a dump are expected, so
    this never raises.
    """

    if not value or not isinstance(value, str):
        return None
    match = _BOUNDS_PATTERN.match(value)
    if not match:
        return None
    x1, y1, x2, y2 = (int(part) for part in match.groups())
    if x1 >= x2 or y1 >= y2:
        return None
    return Bounds(x1, y1, x2, y2)


def normalise_text(value: Optional[str]) -> str:
    """Collapse whitespace in ``value`` and strip it."""

    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def bounds_bucket(bounds: Optional[Bounds]) -> str:
    """Return a coarse grid cell for ``bounds`` used when re-identifying nodes."""

    if bounds is None:
        return ""
    cx, cy = bounds.center
    bx = round(cx / BOUNDS_BUCKET_SIZE) * BOUNDS_BUCKET_SIZE
    by = round(cy / BOUNDS_BUCKET_SIZE) * BOUNDS_BUCKET_SIZE
    return f"{bx},{by}"


@dataclass(frozen=True)
class UINode:
    """One element of a captured hierarchy."""

    index: int
    parent_index: int
    depth: int
    tag: str
    attributes: Mapping[str, str]
    bounds: Optional[Bounds]

    def get(self, name: str, default: str = "") -> str:
        return self.attributes.get(name, default)

    @property
    def resource_id(self) -> str:
        return self.get("resource-id")

    @property
    def content_desc(self) -> str:
        return self.get("content-desc")

    @property
    def text(self) -> str:
        return normalise_text(self.get("text"))

    @property
    def class_name(self) -> str:
        return self.get("class") or self.tag

    def flag(self, name: str) -> bool:
        return self.get(name).lower() == "true"

    @property
    def interactive(self) -> bool:
        return any(self.flag(name) for name in ("clickable", "focusable", "editable", "long-clickable"))

    def metadata(self) -> Dict[str, str]:
        """Return the attributes the recorder stores alongside a step."""

        return {
            "resource_id": self.resource_id,
            "content_desc": self.content_desc,
            "text": self.text,
            "class_name": self.class_name,
            "bounds": self.bounds.to_string() if self.bounds else self.get("bounds"),
            "clickable": self.get("clickable"),
            "enabled": self.get("enabled"),
            "package": self.get("package"),
        }


def _signature(node: UINode) -> str:
    return "|".join(
        [
            node.resource_id,
            node.content_desc,
            node.class_name,
            node.text,
            bounds_bucket(node.bounds),
        ]
    )


@dataclass(frozen=True)
class UIHierarchySnapshot:
    """Immutable point-in-time capture of a device UI tree."""

    nodes: Tuple[UINode, ...]
    xml: str = ""
    captured_at: float = field(default_factory=time.time)

    def __iter__(self) -> Iterator[UINode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def snapshot_id(self) -> str:
        return snapshot_id_for(self.xml)

    def parent_of(self, node: UINode) -> Optional[UINode]:
        if node.parent_index < 0:
            return None
        return self.nodes[node.parent_index]

    def node_at_point(self, x: int, y: int, tolerance: int = 0) -> Optional[UINode]:
        """Return the smallest node whose bounds enclose ``(x, y)``.

        Ties on area are broken in favour of the deeper node. Nodes without
        valid bounds are ignored.
        """

        best: Optional[UINode] = None
        for node in self.nodes:
            if node.bounds is None or not node.bounds.contains(x, y, tolerance):
                continue
            if best is None:
                best = node
                continue
            if node.bounds.area < best.bounds.area or (
                node.bounds.area == best.bounds.area and node.depth > best.depth
            ):
                best = node
        return best


def snapshot_id_for(xml: str) -> str:
    """Content hash used to address a snapshot independent of whitespace."""

    normalised = re.sub(r"[ \t]+", " ", (xml or "").replace("\r\n", "\n")).strip()
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def _sanitise_xml(raw: str) -> str:
    """Drop any shell noise printed around the XML document."""

    start_candidates = [pos for pos in (raw.find("<?xml"), raw.find("<hierarchy")) if pos != -1]
    start = min(start_candidates) if start_candidates else raw.find("<")
    end = raw.rfind(">")
    if start == -1 or end == -1:
        return ""
    return raw[start:end + 1]


def _ios_attributes(tag: str, attrib: Dict[str, str]) -> Dict[str, str]:
    """Map XCUITest attribute names onto the UiAutomator vocabulary."""

    attrs = dict(attrib)
    attrs.setdefault("class", attrib.get("type") or tag)
    if attrib.get("name"):
        attrs.setdefault("resource-id", attrib["name"])
    if attrib.get("label"):
        attrs.setdefault("content-desc", attrib["label"])
    text = attrib.get("value") or attrib.get("label")
    if text:
        attrs.setdefault("text", text)
    if "bounds" not in attrs:
        try:
            x, y = int(attrib["x"]), int(attrib["y"])
            width, height = int(attrib["width"]), int(attrib["height"])
        except (KeyError, ValueError):
            pass
        else:
            attrs["bounds"] = f"[{x},{y}][{x + width},{y + height}]"
    if "visible" in attrib:
        attrs.setdefault("visible-to-user", attrib["visible"])
    return attrs


def _walk(element: ET.Element, parent_index: int, depth: int, out: List[UINode]) -> None:
    tag = element.tag
    if tag in _ROOT_TAGS:
        for child in element:
            _walk(child, parent_index, depth, out)
        return

    attrib = dict(element.attrib)
    if tag.startswith("XCUIElementType"):
        attrib = _ios_attributes(tag, attrib)
    elif tag != "node":
        attrib.setdefault("class", tag)

    node = UINode(
        index=len(out),
        parent_index=parent_index,
        depth=depth,
        tag=tag,
        attributes=MappingProxyType(attrib),
        bounds=parse_bounds(attrib.get("bounds")),
    )
    out.append(node)
    for child in element:
        _walk(child, node.index, depth + 1, out)


def parse_snapshot(xml: Optional[str], captured_at: Optional[float] = None) -> UIHierarchySnapshot:
    """Parse a page-source dump into a :class:`UIHierarchySnapshot`.

    Malformed or empty dumps produce an empty snapshot rather than an error.
    """

    timestamp = time.time() if captured_at is None else captured_at
    cleaned = _sanitise_xml(xml or "")
    if not cleaned:
        return UIHierarchySnapshot(nodes=(), xml=xml or "", captured_at=timestamp)

    try:
        root = ET.fromstring(cleaned)
    except ET.ParseError as exc:
        logger.warning("Discarding unparsable UI hierarchy: %s", exc)
        return UIHierarchySnapshot(nodes=(), xml=xml or "", captured_at=timestamp)

    nodes: List[UINode] = []
    _walk(root, -1, 0, nodes)
    return UIHierarchySnapshot(nodes=tuple(nodes), xml=cleaned, captured_at=timestamp)


def diff_hierarchies(before: UIHierarchySnapshot, after: UIHierarchySnapshot) -> Dict[str, object]:
    """Summarise how far ``after`` drifted from ``before``."""

    signatures_before = {_signature(node) for node in before}
    signatures_after = {_signature(node) for node in after}

    added = len(signatures_after - signatures_before)
    removed = len(signatures_before - signatures_after)
    total = max(1, len(signatures_before), len(signatures_after))
    drift = (removed * 1.2 + added * 0.8) / total
    drift_score = round(100 * min(1.0, max(0.0, drift)))

    suggestions: List[str] = []
    if drift_score >= 40:
        suggestions.append("UI drift detected: prefer resource-id or accessibility id over text")
        suggestions.append("Re-inspect affected screens to refresh locator bundles")

    return {
        "drift_score": drift_score,
        "changed_nodes": {
            "from_count": len(signatures_before),
            "to_count": len(signatures_after),
            "added": added,
            "removed": removed,
        },
        "suggestions": suggestions,
    }


def node_at_point(snapshot: UIHierarchySnapshot, x: int, y: int, tolerance: int = 0) -> Optional[UINode]:
    return snapshot.node_at_point(x, y, tolerance)
