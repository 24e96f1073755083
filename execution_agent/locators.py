"""Locator ranking, resolution and self-healing against hierarchy snapshots.

Strategies are always tried in the order given by :data:`STRATEGY_PRIORITY`.
Identifiers and accessibility labels survive most app rebuilds, visible text
changes with copy edits and localisation, structural paths break with layout
changes, and raw coordinates break with almost anything.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from rapidfuzz import fuzz, utils
from rapidfuzz.distance import Levenshtein

from execution_agent.hierarchy import (
    UIHierarchySnapshot,
    UINode,
    bounds_bucket,
    normalise_text,
    parse_bounds,
)

logger = logging.getLogger(__name__)


class LocatorStrategy(str, Enum):
    ID = "id"
    ACCESSIBILITY_ID = "accessibilityId"
    TEXT = "text"
    XPATH = "xpath"
    COORDINATES = "coordinates"

    @classmethod
    def coerce(cls, value: Any) -> "LocatorStrategy":
        if isinstance(value, LocatorStrategy):
            return value
        key = str(value or "").strip()
        strategy = _STRATEGY_ALIASES.get(key) or _STRATEGY_ALIASES.get(key.lower())
        if strategy is None:
            raise ValueError(f"Unknown locator strategy: {value!r}")
        return strategy


STRATEGY_PRIORITY: Tuple[LocatorStrategy, ...] = (
    LocatorStrategy.ID,
    LocatorStrategy.ACCESSIBILITY_ID,
    LocatorStrategy.TEXT,
    LocatorStrategy.XPATH,
    LocatorStrategy.COORDINATES,
)

_STRATEGY_ALIASES: Dict[str, LocatorStrategy] = {
    "id": LocatorStrategy.ID,
    "resource-id": LocatorStrategy.ID,
    "resourceid": LocatorStrategy.ID,
    "resource_id": LocatorStrategy.ID,
    "accessibilityid": LocatorStrategy.ACCESSIBILITY_ID,
    "accessibility_id": LocatorStrategy.ACCESSIBILITY_ID,
    "accessibility-id": LocatorStrategy.ACCESSIBILITY_ID,
    "content-desc": LocatorStrategy.ACCESSIBILITY_ID,
    "contentdesc": LocatorStrategy.ACCESSIBILITY_ID,
    "content_desc": LocatorStrategy.ACCESSIBILITY_ID,
    "text": LocatorStrategy.TEXT,
    "xpath": LocatorStrategy.XPATH,
    "coordinates": LocatorStrategy.COORDINATES,
    "point": LocatorStrategy.COORDINATES,
}

_COORDINATE_PATTERN = re.compile(r"^\s*(\d+)\s*,\s*(\d+)\s*$")
_XPATH_EQ_PATTERN = re.compile(r"@([a-zA-Z_-]+)\s*=\s*(concat\([^)]*\)|\"[^\"]*\"|'[^']*')")
_XPATH_CONTAINS_PATTERN = re.compile(
    r"contains\(\s*@([a-zA-Z_-]+)\s*,\s*(concat\([^)]*\)|\"[^\"]*\"|'[^']*')\s*\)"
)
_QUOTED_PATTERN = re.compile(r"'[^']*'|\"[^\"]*\"")

# Text values longer than this may match by substring.
LONG_TEXT_THRESHOLD = 20


def priority_of(strategy: LocatorStrategy) -> int:
    return STRATEGY_PRIORITY.index(strategy)


@dataclass(frozen=True)
class LocatorCandidate:
    """One way of identifying an element."""

    strategy: LocatorStrategy
    value: str
    score: int = 0
    reason: str = ""
    match_count: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], default_score: int = 0) -> Optional["LocatorCandidate"]:
        """Build a candidate from a recorded payload; ``None`` when unusable."""

        if not isinstance(payload, Mapping):
            return None
        value = str(payload.get("value") or "").strip()
        if not value:
            return None
        try:
            strategy = LocatorStrategy.coerce(payload.get("strategy"))
        except ValueError:
            logger.warning("Ignoring locator with unknown strategy %r", payload.get("strategy"))
            return None
        score = payload.get("score")
        return cls(
            strategy=strategy,
            value=value,
            score=int(score) if isinstance(score, (int, float)) else default_score,
            reason=str(payload.get("reason") or ""),
            match_count=payload.get("match_count", payload.get("matchCount")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "strategy": self.strategy.value,
            "value": self.value,
            "score": self.score,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.match_count is not None:
            payload["match_count"] = self.match_count
        return payload


def rank_candidates(candidates: Iterable[LocatorCandidate]) -> List[LocatorCandidate]:
    """Order ``candidates`` by strategy priority, then by score.

    Duplicates (same strategy and value) keep their highest score.
    """

    best: Dict[Tuple[LocatorStrategy, str], LocatorCandidate] = {}
    for candidate in candidates:
        if candidate is None or not candidate.value:
            continue
        key = (candidate.strategy, candidate.value)
        current = best.get(key)
        if current is None or candidate.score > current.score:
            best[key] = candidate
    return sorted(best.values(), key=lambda c: (priority_of(c.strategy), -c.score))


@dataclass(frozen=True)
class LocatorBundle:
    """Ranked locators captured for one element at interaction time."""

    primary: LocatorCandidate
    fallbacks: Tuple[LocatorCandidate, ...] = ()
    fingerprint: str = ""
    reliability_score: int = 0

    @property
    def candidates(self) -> List[LocatorCandidate]:
        return [self.primary, *self.fallbacks]

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Optional["LocatorBundle"]:
        if not isinstance(payload, Mapping):
            return None
        primary = LocatorCandidate.from_dict(payload.get("primary") or {}, default_score=90)
        fallbacks = [
            LocatorCandidate.from_dict(item, default_score=50)
            for item in payload.get("fallbacks") or []
        ]
        ranked = rank_candidates([c for c in [primary, *fallbacks] if c is not None])
        if not ranked:
            return None
        reliability = payload.get("reliability_score", payload.get("reliabilityScore", 0))
        return cls(
            primary=ranked[0],
            fallbacks=tuple(ranked[1:]),
            fingerprint=str(payload.get("fingerprint") or ""),
            reliability_score=int(reliability) if isinstance(reliability, (int, float)) else 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary.to_dict(),
            "fallbacks": [candidate.to_dict() for candidate in self.fallbacks],
            "fingerprint": self.fingerprint,
            "reliability_score": self.reliability_score,
        }


@dataclass(frozen=True)
class ElementHints:
    """Recorded attributes of an element, used for fuzzy re-identification."""

    resource_id: str = ""
    content_desc: str = ""
    text: str = ""
    class_name: str = ""
    bounds: str = ""

    @property
    def empty(self) -> bool:
        return not (self.resource_id or self.content_desc or self.text)

    @classmethod
    def from_node(cls, node: UINode) -> "ElementHints":
        return cls(
            resource_id=node.resource_id,
            content_desc=node.content_desc,
            text=node.text,
            class_name=node.class_name,
            bounds=node.bounds.to_string() if node.bounds else "",
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "resource_id": self.resource_id,
            "content_desc": self.content_desc,
            "text": self.text,
            "class_name": self.class_name,
            "bounds": self.bounds,
        }


@dataclass(frozen=True)
class ResolvedTarget:
    """Concrete interaction point for a locator."""

    x: int
    y: int
    strategy: LocatorStrategy
    value: str
    node: Optional[UINode] = field(default=None, compare=False)
    healed_score: Optional[int] = None


# ---------------------------------------------------------------------------
# XPath subset
# ---------------------------------------------------------------------------
def xpath_literal(value: str) -> str:
    """Quote ``value`` as an XPath 1.0 string literal."""

    if '"' not in value:
        return f'"{value}"'
    if "'" not in value:
        return f"'{value}'"
    parts = value.split('"')
    pieces: List[str] = []
    for index, part in enumerate(parts):
        if part:
            pieces.append(f'"{part}"')
        if index != len(parts) - 1:
            pieces.append("'\"'")
    return f"concat({', '.join(pieces)})"


def _decode_literal(raw: str) -> str:
    value = raw.strip()
    if value.startswith("concat(") and value.endswith(")"):
        return "".join(part[1:-1] for part in _QUOTED_PATTERN.findall(value[7:-1]))
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_xpath_criteria(xpath: str) -> Optional[Dict[str, Dict[str, str]]]:
    """Extract attribute predicates from a simple ``//*[...]`` expression.

    Only attribute equality and ``contains(@attr, ...)`` are understood. The
    last step of the path determines the element; ancestor steps are ignored.
    """

    if not xpath or not xpath.startswith("/"):
        return None
    last_step = xpath.rsplit("//", 1)[-1] if "//" in xpath else xpath
    contains = {
        name: _decode_literal(raw) for name, raw in _XPATH_CONTAINS_PATTERN.findall(last_step)
    }
    stripped = _XPATH_CONTAINS_PATTERN.sub("", last_step)
    equals = {name: _decode_literal(raw) for name, raw in _XPATH_EQ_PATTERN.findall(stripped)}
    if not equals and not contains:
        return None
    return {"eq": equals, "contains": contains}


def _matches_criteria(node: UINode, criteria: Mapping[str, Mapping[str, str]]) -> bool:
    for name, expected in criteria["eq"].items():
        if node.get(name) != expected:
            return False
    for name, expected in criteria["contains"].items():
        if expected not in node.get(name):
            return False
    return True


def _looks_dynamic(text: str) -> bool:
    value = normalise_text(text)
    if not value:
        return True
    digits = sum(1 for char in value if char.isdigit())
    if digits / max(1, len(value)) > 0.25:
        return True
    return bool(re.search(r"\b\d{4,}\b", value))


def build_smart_xpaths(hints: ElementHints, parent_resource_id: str = "") -> List[LocatorCandidate]:
    """Return structural XPath candidates anchored on stable attributes."""

    candidates: List[LocatorCandidate] = []
    cls_clause = [f"@class={xpath_literal(hints.class_name)}"] if hints.class_name else []

    if hints.resource_id:
        rid = f"@resource-id={xpath_literal(hints.resource_id)}"
        if cls_clause:
            candidates.append(LocatorCandidate(
                LocatorStrategy.XPATH, f"//*[{' and '.join(cls_clause + [rid])}]", 85, "resource-id anchored"
            ))
        candidates.append(LocatorCandidate(LocatorStrategy.XPATH, f"//*[{rid}]", 82, "resource-id only"))

    if hints.content_desc:
        desc = f"@content-desc={xpath_literal(hints.content_desc)}"
        if cls_clause:
            candidates.append(LocatorCandidate(
                LocatorStrategy.XPATH, f"//*[{' and '.join(cls_clause + [desc])}]", 80, "content-desc anchored"
            ))
        candidates.append(LocatorCandidate(LocatorStrategy.XPATH, f"//*[{desc}]", 78, "content-desc only"))

    text = normalise_text(hints.text)
    if text and not _looks_dynamic(text):
        if len(text) <= 40:
            clause = f"@text={xpath_literal(text)}"
            candidates.append(LocatorCandidate(
                LocatorStrategy.XPATH, f"//*[{' and '.join(cls_clause + [clause])}]", 68, "exact text"
            ))
        else:
            clause = f"contains(@text, {xpath_literal(text[:24])})"
            candidates.append(LocatorCandidate(
                LocatorStrategy.XPATH, f"//*[{' and '.join(cls_clause + [clause])}]", 60, "partial text"
            ))

    if parent_resource_id and (hints.resource_id or hints.content_desc or text):
        if hints.resource_id:
            child = f"@resource-id={xpath_literal(hints.resource_id)}"
        elif hints.content_desc:
            child = f"@content-desc={xpath_literal(hints.content_desc)}"
        else:
            child = f"@text={xpath_literal(text)}"
        candidates.append(LocatorCandidate(
            LocatorStrategy.XPATH,
            f"//*[@resource-id={xpath_literal(parent_resource_id)}]//*[{' and '.join(cls_clause + [child])}]",
            72,
            "parent anchor",
        ))

    return candidates


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
def _node_matches(node: UINode, strategy: LocatorStrategy, value: str, criteria: Optional[Mapping]) -> bool:
    if strategy is LocatorStrategy.ID:
        return node.resource_id == value
    if strategy is LocatorStrategy.ACCESSIBILITY_ID:
        return node.content_desc == value
    if strategy is LocatorStrategy.TEXT:
        text = node.text
        if text == value:
            return True
        return len(value) > LONG_TEXT_THRESHOLD and value in text
    if strategy is LocatorStrategy.XPATH:
        return criteria is not None and _matches_criteria(node, criteria)
    return False


def find_nodes(snapshot: UIHierarchySnapshot, candidate: LocatorCandidate) -> List[UINode]:
    """Return every node matched by ``candidate`` in document order."""

    if candidate.strategy is LocatorStrategy.COORDINATES:
        return []
    value = candidate.value
    if candidate.strategy is LocatorStrategy.TEXT:
        value = normalise_text(value)
    criteria = parse_xpath_criteria(value) if candidate.strategy is LocatorStrategy.XPATH else None
    return [node for node in snapshot if _node_matches(node, candidate.strategy, value, criteria)]


def count_matches(snapshot: UIHierarchySnapshot, candidate: LocatorCandidate) -> int:
    return len(find_nodes(snapshot, candidate))


def parse_point(value: str) -> Optional[Tuple[int, int]]:
    match = _COORDINATE_PATTERN.match(value or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def resolve_locator(snapshot: UIHierarchySnapshot, candidate: LocatorCandidate) -> Optional[ResolvedTarget]:
    """Resolve one candidate to the center of the first usable matching node."""

    if candidate.strategy is LocatorStrategy.COORDINATES:
        point = parse_point(candidate.value)
        if point is None:
            return None
        return ResolvedTarget(point[0], point[1], candidate.strategy, candidate.value)

    for node in find_nodes(snapshot, candidate):
        if node.bounds is None:
            continue
        x, y = node.bounds.center
        return ResolvedTarget(x, y, candidate.strategy, candidate.value, node=node)
    return None


def resolve_first(
    snapshot: UIHierarchySnapshot,
    candidates: Sequence[LocatorCandidate],
    include_coordinates: bool = True,
) -> Optional[ResolvedTarget]:
    """Resolve the highest-priority candidate that matches ``snapshot``."""

    for candidate in rank_candidates(candidates):
        if candidate.strategy is LocatorStrategy.COORDINATES and not include_coordinates:
            continue
        resolved = resolve_locator(snapshot, candidate)
        if resolved is not None:
            return resolved
    return None


def element_fingerprint(hints: ElementHints) -> str:
    key = "|".join(
        [
            hints.class_name,
            hints.resource_id,
            hints.content_desc,
            normalise_text(hints.text),
            bounds_bucket(parse_bounds(hints.bounds)),
        ]
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _uniqueness_adjustment(match_count: int) -> int:
    if match_count == 1:
        return 10
    if match_count >= 5:
        return -10
    if match_count >= 2:
        return -3
    return 0


def _text_score(text: str) -> int:
    base = 70
    if len(text) < 2:
        base = 30
    elif len(text) > 60:
        base = 55
    if _looks_dynamic(text):
        base -= 15
    return max(10, min(80, base))


def build_locator_bundle(node: UINode, snapshot: UIHierarchySnapshot) -> Optional[LocatorBundle]:
    """Derive a ranked locator bundle for ``node`` from ``snapshot``."""

    hints = ElementHints.from_node(node)
    raw: List[LocatorCandidate] = []
    if hints.resource_id:
        raw.append(LocatorCandidate(LocatorStrategy.ID, hints.resource_id, 92, "resource-id present"))
    if hints.content_desc:
        raw.append(LocatorCandidate(LocatorStrategy.ACCESSIBILITY_ID, hints.content_desc, 95, "content-desc present"))
    if hints.text:
        raw.append(LocatorCandidate(LocatorStrategy.TEXT, hints.text, _text_score(hints.text), "text present"))

    parent = snapshot.parent_of(node)
    raw.extend(build_smart_xpaths(hints, parent.resource_id if parent else ""))

    scored: List[LocatorCandidate] = []
    for candidate in raw:
        matches = count_matches(snapshot, candidate)
        score = max(0, min(100, candidate.score + _uniqueness_adjustment(matches)))
        scored.append(LocatorCandidate(candidate.strategy, candidate.value, score, candidate.reason, matches))

    if node.bounds is not None:
        x, y = node.bounds.center
        scored.append(LocatorCandidate(LocatorStrategy.COORDINATES, f"{x},{y}", 10, "bounds center"))

    ranked = rank_candidates(scored)
    if not ranked:
        return None
    primary = ranked[0]
    reliability = max(0, min(100, round(primary.score * 0.9 + 10)))
    return LocatorBundle(
        primary=primary,
        fallbacks=tuple(ranked[1:6]),
        fingerprint=element_fingerprint(hints),
        reliability_score=reliability,
    )


@dataclass(frozen=True)
class PointInspection:
    """Element found under a screen point and the locators derived from it."""

    x: int
    y: int
    node: Optional[UINode]
    bundle: Optional[LocatorBundle]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "element": self.node.metadata() if self.node else None,
            "locator_bundle": self.bundle.to_dict() if self.bundle else None,
        }


def inspect_point(snapshot: UIHierarchySnapshot, x: int, y: int) -> PointInspection:
    """Find the element under ``(x, y)`` and derive replay metadata for it.

    The derived bundle is metadata only; callers acting on the point must
    still use the literal coordinates.
    """

    node = snapshot.node_at_point(x, y)
    bundle = build_locator_bundle(node, snapshot) if node is not None else None
    return PointInspection(x=x, y=y, node=node, bundle=bundle)


def inspect_locator(snapshot: UIHierarchySnapshot, candidate: LocatorCandidate) -> Optional[PointInspection]:
    """Resolve ``candidate`` and derive replay metadata for the element it hits."""

    resolved = resolve_locator(snapshot, candidate)
    if resolved is None:
        return None
    node = resolved.node or snapshot.node_at_point(resolved.x, resolved.y)
    bundle = build_locator_bundle(node, snapshot) if node is not None else None
    return PointInspection(x=resolved.x, y=resolved.y, node=node, bundle=bundle)


# ---------------------------------------------------------------------------
# Self-healing
# ---------------------------------------------------------------------------
def similarity(a: str, b: str) -> float:
    """Normalised edit-distance similarity in ``[0, 1]``."""

    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def token_overlap(a: str, b: str) -> float:
    """Word-set agreement in ``[0, 1]``, ignoring order, case and punctuation."""

    return fuzz.token_set_ratio(normalise_text(a), normalise_text(b), processor=utils.default_process) / 100


class LocatorHealer:
    """Fuzzy matcher used when none of a step's exact locators resolve."""

    def __init__(self, threshold: int = 60, enabled: bool = True) -> None:
        self.threshold = threshold
        self.enabled = enabled

    def score(self, hints: ElementHints, node: UINode) -> int:
        score = 0
        if hints.content_desc and node.content_desc:
            if node.content_desc == hints.content_desc:
                score += 100
            else:
                score += int(similarity(node.content_desc, hints.content_desc) * 70)
        if hints.resource_id and node.resource_id:
            if node.resource_id == hints.resource_id:
                score += 95
            else:
                score += int(similarity(node.resource_id, hints.resource_id) * 65)
        target_text = normalise_text(hints.text)
        if target_text and node.text:
            best = max(token_overlap(node.text, target_text), similarity(node.text, target_text))
            score += int(best * 60)
        if hints.class_name and node.class_name:
            if node.class_name == hints.class_name:
                score += 20
            elif hints.class_name in node.class_name or node.class_name in hints.class_name:
                score += 10
        bucket = bounds_bucket(parse_bounds(hints.bounds))
        if bucket and bucket == bounds_bucket(node.bounds):
            score += 25
        return score

    def best_match(self, hints: Optional[ElementHints], snapshot: UIHierarchySnapshot) -> Optional[ResolvedTarget]:
        if not self.enabled or hints is None or hints.empty:
            return None
        best_node: Optional[UINode] = None
        best_score = 0
        for node in snapshot:
            if node.bounds is None:
                continue
            score = self.score(hints, node)
            if score > best_score:
                best_node, best_score = node, score
        if best_node is None or best_score < self.threshold:
            return None
        x, y = best_node.bounds.center
        logger.info("Healed locator with score %d (resource-id=%r)", best_score, best_node.resource_id)
        return ResolvedTarget(
            x, y, LocatorStrategy.COORDINATES, f"{x},{y}", node=best_node, healed_score=best_score
        )


def heal(hints: Optional[ElementHints], snapshot: UIHierarchySnapshot, threshold: int = 60) -> Optional[ResolvedTarget]:
    """Return the best fuzzy match for ``hints`` scoring at least ``threshold``."""

    return LocatorHealer(threshold).best_match(hints, snapshot)
