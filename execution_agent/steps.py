"""Step vocabulary understood by the interpreter.

Scripts arrive as lists of JSON objects with a ``type`` key. :func:`parse_step`
turns each object into one of the frozen step classes below. Malformed
objects never raise here: an unrecognised ``type`` becomes :class:`UnknownStep`
(skipped with a warning when executed) and a recognised type with missing or
invalid arguments becomes :class:`InvalidStep` (fails when executed), so the
interpreter keeps its per-step error reporting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple

from execution_agent.locators import (
    ElementHints,
    LocatorBundle,
    LocatorCandidate,
    LocatorStrategy,
    parse_point,
    rank_candidates,
)

logger = logging.getLogger(__name__)

DEFAULT_WAIT_MS = 1000
DEFAULT_ELEMENT_TIMEOUT_MS = 30000
DEFAULT_LONG_PRESS_MS = 1000
DEFAULT_SWIPE_MS = 500

PAGE = "page"
DEVICE = "device"
SHARED = "shared"


class StepParseError(ValueError):
    """Raised internally when a step payload is missing required arguments."""


@dataclass(frozen=True)
class Point:
    x: int
    y: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class ElementTarget:
    """Where a device step acts: ranked locators, a literal point, or both."""

    candidates: Tuple[LocatorCandidate, ...] = ()
    point: Optional[Point] = None
    hints: Optional[ElementHints] = None

    @property
    def has_locator(self) -> bool:
        return any(c.strategy is not LocatorStrategy.COORDINATES for c in self.candidates)

    @property
    def fallback_point(self) -> Optional[Point]:
        if self.point is not None:
            return self.point
        for candidate in self.candidates:
            if candidate.strategy is LocatorStrategy.COORDINATES:
                parsed = parse_point(candidate.value)
                if parsed is not None:
                    return Point(*parsed)
        return None

    def describe(self) -> str:
        if self.candidates:
            first = self.candidates[0]
            return f"{first.strategy.value}={first.value!r}"
        if self.point is not None:
            return f"({self.point.x}, {self.point.y})"
        return "<no target>"

    def to_fields(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.candidates:
            payload["locator_bundle"] = {
                "primary": self.candidates[0].to_dict(),
                "fallbacks": [candidate.to_dict() for candidate in self.candidates[1:]],
            }
        if self.point is not None:
            payload["x"] = self.point.x
            payload["y"] = self.point.y
        if self.hints is not None:
            for key, value in self.hints.to_dict().items():
                if value:
                    payload[f"element_{key}"] = value
        return payload


@dataclass(frozen=True, kw_only=True)
class Step:
    """Base class of every executable step."""

    kind: ClassVar[str] = ""
    scope: ClassVar[str] = SHARED

    description: str = ""

    @property
    def step_type(self) -> str:
        return self.kind

    def supports(self, scope: str) -> bool:
        return self.scope == SHARED or self.scope == scope

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.step_type}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "description" and not value:
                continue
            if isinstance(value, ElementTarget):
                payload.update(value.to_fields())
            elif isinstance(value, Point):
                payload[item.name] = value.to_dict()
            elif value is not None:
                payload[item.name] = value
        return payload


# -- shared -------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class Wait(Step):
    kind: ClassVar[str] = "wait"

    duration_ms: int = DEFAULT_WAIT_MS


@dataclass(frozen=True, kw_only=True)
class CaptureScreenshot(Step):
    kind: ClassVar[str] = "captureScreenshot"

    full_page: bool = False
    name: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class AssertVisible(Step):
    """Page scripts give a ``selector``; device scripts give a ``target``."""

    kind: ClassVar[str] = "assertVisible"

    selector: str = ""
    target: Optional[ElementTarget] = None
    timeout_ms: Optional[int] = None


# -- page ---------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class Navigate(Step):
    kind: ClassVar[str] = "navigate"
    scope: ClassVar[str] = PAGE

    url: str


@dataclass(frozen=True, kw_only=True)
class Click(Step):
    kind: ClassVar[str] = "click"
    scope: ClassVar[str] = PAGE

    selector: str
    timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS


@dataclass(frozen=True, kw_only=True)
class Fill(Step):
    kind: ClassVar[str] = "fill"
    scope: ClassVar[str] = PAGE

    selector: str
    text: str


@dataclass(frozen=True, kw_only=True)
class WaitForVisible(Step):
    kind: ClassVar[str] = "waitForVisible"
    scope: ClassVar[str] = PAGE

    selector: str
    timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS


@dataclass(frozen=True, kw_only=True)
class Select(Step):
    kind: ClassVar[str] = "select"
    scope: ClassVar[str] = PAGE

    selector: str
    value: str


@dataclass(frozen=True, kw_only=True)
class AssertTextContains(Step):
    kind: ClassVar[str] = "assertTextContains"
    scope: ClassVar[str] = PAGE

    selector: str
    expected: str


# -- device -------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class Tap(Step):
    kind: ClassVar[str] = "tap"
    scope: ClassVar[str] = DEVICE

    target: ElementTarget


@dataclass(frozen=True, kw_only=True)
class LongPress(Step):
    kind: ClassVar[str] = "longPress"
    scope: ClassVar[str] = DEVICE

    target: ElementTarget
    duration_ms: int = DEFAULT_LONG_PRESS_MS


@dataclass(frozen=True, kw_only=True)
class InputText(Step):
    kind: ClassVar[str] = "inputText"
    scope: ClassVar[str] = DEVICE

    text: str
    target: Optional[ElementTarget] = None


@dataclass(frozen=True, kw_only=True)
class Swipe(Step):
    kind: ClassVar[str] = "swipe"
    scope: ClassVar[str] = DEVICE

    start: Point
    end: Point
    duration_ms: int = DEFAULT_SWIPE_MS


@dataclass(frozen=True, kw_only=True)
class PressKey(Step):
    kind: ClassVar[str] = "pressKey"
    scope: ClassVar[str] = DEVICE

    code: str


@dataclass(frozen=True, kw_only=True)
class LaunchApp(Step):
    kind: ClassVar[str] = "launchApp"
    scope: ClassVar[str] = DEVICE

    app_id: str


@dataclass(frozen=True, kw_only=True)
class StopApp(Step):
    kind: ClassVar[str] = "stopApp"
    scope: ClassVar[str] = DEVICE

    app_id: str


@dataclass(frozen=True, kw_only=True)
class ClearAppData(Step):
    kind: ClassVar[str] = "clearAppData"
    scope: ClassVar[str] = DEVICE

    app_id: str


@dataclass(frozen=True, kw_only=True)
class UninstallApp(Step):
    kind: ClassVar[str] = "uninstallApp"
    scope: ClassVar[str] = DEVICE

    app_id: str


@dataclass(frozen=True, kw_only=True)
class HideKeyboard(Step):
    kind: ClassVar[str] = "hideKeyboard"
    scope: ClassVar[str] = DEVICE


# -- fallbacks ----------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class UnknownStep(Step):
    """A step whose type this agent does not know; executed as a no-op."""

    type_name: str
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def step_type(self) -> str:
        return self.type_name or "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


@dataclass(frozen=True, kw_only=True)
class InvalidStep(Step):
    """A known step type whose arguments could not be parsed."""

    type_name: str
    reason: str

    @property
    def step_type(self) -> str:
        return self.type_name

    def supports(self, scope: str) -> bool:
        return True


STEP_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        Wait, CaptureScreenshot, AssertVisible,
        Navigate, Click, Fill, WaitForVisible, Select, AssertTextContains,
        Tap, LongPress, InputText, Swipe, PressKey,
        LaunchApp, StopApp, ClearAppData, UninstallApp, HideKeyboard,
    )
}

STEP_ALIASES: Dict[str, str] = {
    "goto": "navigate",
    "type": "fill",
    "waitForSelector": "waitForVisible",
    "screenshot": "captureScreenshot",
    "assertText": "assertTextContains",
    "verifyText": "assertTextContains",
    "input": "inputText",
    "scroll": "swipe",
    "openApp": "launchApp",
    "key": "pressKey",
    "forceStop": "stopApp",
    "clearApp": "clearAppData",
    "assert": "assertVisible",
}

_LOWERCASE_NAMES: Dict[str, str] = {
    **{name.lower(): name for name in STEP_TYPES},
    **{alias.lower(): target for alias, target in STEP_ALIASES.items()},
}


def canonical_type(name: str) -> Optional[str]:
    """Return the canonical step type for ``name`` or ``None`` when unknown."""

    if name in STEP_TYPES:
        return name
    if name in STEP_ALIASES:
        return STEP_ALIASES[name]
    return _LOWERCASE_NAMES.get(name.lower())


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------
def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _require_str(payload: Mapping[str, Any], *keys: str) -> str:
    value = _first(payload, *keys)
    if value is None:
        raise StepParseError(f"missing '{keys[0]}'")
    if isinstance(value, (dict, list)):
        raise StepParseError(f"'{keys[0]}' must be a string")
    return str(value)


def _optional_int(payload: Mapping[str, Any], default: Optional[int], *keys: str) -> Optional[int]:
    value = _first(payload, *keys)
    if value is None:
        return default
    if isinstance(value, bool):
        raise StepParseError(f"'{keys[0]}' must be a number")
    try:
        number = int(float(value))
    except (TypeError, ValueError) as exc:
        raise StepParseError(f"'{keys[0]}' must be a number") from exc
    if number < 0:
        raise StepParseError(f"'{keys[0]}' must not be negative")
    return number


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parse_point_value(value: Any) -> Optional[Point]:
    """Accept ``{"x": .., "y": ..}``, ``[x, y]`` or ``"x,y"``."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        x, y = value.get("x"), value.get("y")
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        x, y = value
    elif isinstance(value, str):
        parsed = parse_point(value)
        if parsed is None:
            raise StepParseError(f"invalid point {value!r}")
        return Point(*parsed)
    else:
        raise StepParseError(f"invalid point {value!r}")
    if x is None or y is None or isinstance(x, bool) or isinstance(y, bool):
        raise StepParseError(f"invalid point {value!r}")
    try:
        point = Point(int(float(x)), int(float(y)))
    except (TypeError, ValueError) as exc:
        raise StepParseError(f"invalid point {value!r}") from exc
    if point.x < 0 or point.y < 0:
        raise StepParseError(f"point {value!r} is off screen")
    return point


def _expand_plain_locator(value: str) -> List[LocatorCandidate]:
    text = value.strip()
    if text.startswith("//") or text.startswith("(//"):
        return [LocatorCandidate(LocatorStrategy.XPATH, text, 70)]
    if parse_point(text) is not None:
        return [LocatorCandidate(LocatorStrategy.COORDINATES, text, 10)]
    return [
        LocatorCandidate(LocatorStrategy.ID, text, 80),
        LocatorCandidate(LocatorStrategy.ACCESSIBILITY_ID, text, 80),
        LocatorCandidate(LocatorStrategy.TEXT, text, 60),
    ]


def parse_target(payload: Mapping[str, Any]) -> Optional[ElementTarget]:
    """Collect every locator and point a device step payload carries."""

    candidates: List[LocatorCandidate] = []

    bundle_payload = _first(payload, "locator_bundle", "locatorBundle")
    if isinstance(bundle_payload, Mapping):
        bundle = LocatorBundle.from_dict(bundle_payload)
        if bundle is not None:
            candidates.extend(bundle.candidates)

    locator = payload.get("locator")
    if isinstance(locator, Mapping):
        candidate = LocatorCandidate.from_dict(locator, default_score=80)
        if candidate is not None:
            candidates.append(candidate)
    elif isinstance(locator, str) and locator.strip():
        strategy = _first(payload, "locator_strategy", "locatorStrategy", "strategy")
        if strategy:
            try:
                candidates.append(LocatorCandidate(LocatorStrategy.coerce(strategy), locator.strip(), 80))
            except ValueError as exc:
                raise StepParseError(str(exc)) from exc
        else:
            candidates.extend(_expand_plain_locator(locator))

    xpath = _first(payload, "xpath", "smart_xpath", "smartXpath")
    if isinstance(xpath, str):
        candidates.append(LocatorCandidate(LocatorStrategy.XPATH, xpath, 70))

    resource_id = _first(payload, "element_id", "elementId", "element_resource_id", "resource_id")
    content_desc = _first(payload, "element_content_desc", "elementContentDesc", "content_desc", "accessibility_id")
    text = _first(payload, "element_text", "elementText")
    explicit = {(candidate.strategy, candidate.value) for candidate in candidates}
    for strategy, value, score in (
        (LocatorStrategy.ID, resource_id, 90),
        (LocatorStrategy.ACCESSIBILITY_ID, content_desc, 90),
        (LocatorStrategy.TEXT, text, 60),
    ):
        if value and (strategy, str(value)) not in explicit:
            candidates.append(LocatorCandidate(strategy, str(value), score))

    point = parse_point_value(_first(payload, "coordinates", "point"))
    if point is None and payload.get("x") is not None and payload.get("y") is not None:
        point = parse_point_value({"x": payload.get("x"), "y": payload.get("y")})

    if not candidates and point is None:
        return None

    ranked = rank_candidates(candidates)

    def _from_candidates(strategy: LocatorStrategy) -> str:
        for candidate in ranked:
            if candidate.strategy is strategy:
                return candidate.value
        return ""

    hints = ElementHints(
        resource_id=str(resource_id or _from_candidates(LocatorStrategy.ID)),
        content_desc=str(content_desc or _from_candidates(LocatorStrategy.ACCESSIBILITY_ID)),
        text=str(text or _from_candidates(LocatorStrategy.TEXT)),
        class_name=str(_first(payload, "element_class_name", "element_class", "elementClass") or ""),
        bounds=str(_first(payload, "element_bounds", "elementBounds") or ""),
    )
    return ElementTarget(candidates=tuple(ranked), point=point, hints=hints)


def _require_target(payload: Mapping[str, Any]) -> ElementTarget:
    target = parse_target(payload)
    if target is None:
        raise StepParseError("missing locator or coordinates")
    return target


def _swipe_points(payload: Mapping[str, Any]) -> Tuple[Point, Point]:
    start = parse_point_value(_first(payload, "from", "start"))
    end = parse_point_value(_first(payload, "to", "end"))
    if start is not None and end is not None:
        return start, end

    coords = payload.get("coordinates")
    if isinstance(coords, Mapping) and coords.get("endX") is not None:
        start = parse_point_value({"x": coords.get("x"), "y": coords.get("y")})
        end = parse_point_value({"x": coords.get("endX"), "y": coords.get("endY")})
        if start is not None and end is not None:
            return start, end

    keys = ("swipe_start_x", "swipe_start_y", "swipe_end_x", "swipe_end_y")
    if all(payload.get(key) is not None for key in keys):
        start = parse_point_value({"x": payload[keys[0]], "y": payload[keys[1]]})
        end = parse_point_value({"x": payload[keys[2]], "y": payload[keys[3]]})
        if start is not None and end is not None:
            return start, end
    raise StepParseError("swipe needs 'from' and 'to' points")


def _build(kind: str, payload: Mapping[str, Any], description: str) -> Step:
    common = {"description": description}
    if kind == "wait":
        return Wait(duration_ms=_optional_int(payload, DEFAULT_WAIT_MS, "duration_ms", "duration", "ms", "value"), **common)
    if kind == "captureScreenshot":
        return CaptureScreenshot(
            full_page=_truthy(_first(payload, "full_page", "fullPage") or False),
            name=_first(payload, "name"),
            **common,
        )
    if kind == "assertVisible":
        selector = _first(payload, "selector")
        target = None if selector else parse_target(payload)
        if not selector and target is None:
            raise StepParseError("missing 'selector' or locator")
        return AssertVisible(
            selector=str(selector or ""),
            target=target,
            timeout_ms=_optional_int(payload, None, "timeout_ms", "timeout"),
            **common,
        )
    if kind == "navigate":
        return Navigate(url=_require_str(payload, "url", "value"), **common)
    if kind == "click":
        return Click(
            selector=_require_str(payload, "selector"),
            timeout_ms=_optional_int(payload, DEFAULT_ELEMENT_TIMEOUT_MS, "timeout_ms", "timeout"),
            **common,
        )
    if kind == "fill":
        return Fill(selector=_require_str(payload, "selector"), text=_require_str(payload, "text", "value"), **common)
    if kind == "waitForVisible":
        return WaitForVisible(
            selector=_require_str(payload, "selector"),
            timeout_ms=_optional_int(payload, DEFAULT_ELEMENT_TIMEOUT_MS, "timeout_ms", "timeout"),
            **common,
        )
    if kind == "select":
        return Select(selector=_require_str(payload, "selector"), value=_require_str(payload, "value", "option"), **common)
    if kind == "assertTextContains":
        return AssertTextContains(
            selector=_require_str(payload, "selector"),
            expected=_require_str(payload, "expected", "text", "value"),
            **common,
        )
    if kind == "tap":
        return Tap(target=_require_target(payload), **common)
    if kind == "longPress":
        return LongPress(
            target=_require_target(payload),
            duration_ms=_optional_int(payload, DEFAULT_LONG_PRESS_MS, "duration_ms", "duration"),
            **common,
        )
    if kind == "inputText":
        return InputText(text=_require_str(payload, "text", "value"), target=parse_target(payload), **common)
    if kind == "swipe":
        start, end = _swipe_points(payload)
        return Swipe(
            start=start,
            end=end,
            duration_ms=_optional_int(payload, DEFAULT_SWIPE_MS, "duration_ms", "duration"),
            **common,
        )
    if kind == "pressKey":
        return PressKey(code=_require_str(payload, "code", "key", "keycode", "value"), **common)
    if kind in {"launchApp", "stopApp", "clearAppData", "uninstallApp"}:
        app_id = _require_str(payload, "app_id", "appId", "package", "bundle_id", "bundleId", "value")
        return STEP_TYPES[kind](app_id=app_id, **common)
    if kind == "hideKeyboard":
        return HideKeyboard(**common)
    raise StepParseError(f"no builder for {kind}")


def parse_step(payload: Any) -> Step:
    """Convert one script entry into a :class:`Step`."""

    if not isinstance(payload, Mapping):
        return InvalidStep(type_name="unknown", reason="step must be a JSON object")

    type_name = str(payload.get("type") or payload.get("action") or "").strip()
    description = str(payload.get("description") or "")
    kind = canonical_type(type_name) if type_name else None
    if kind is None:
        return UnknownStep(type_name=type_name, raw=dict(payload), description=description)

    try:
        return _build(kind, payload, description)
    except StepParseError as exc:
        logger.debug("Invalid %s step: %s", type_name, exc)
        return InvalidStep(type_name=kind, reason=str(exc), description=description)


def parse_script(payload: Iterable[Any]) -> List[Step]:
    """Parse an ordered list of step payloads."""

    if isinstance(payload, (str, bytes, Mapping)):
        raise ValueError("Step script must be a list")
    return [parse_step(item) for item in payload]


def dump_script(steps: Iterable[Step]) -> List[Dict[str, Any]]:
    return [step.to_dict() for step in steps]
