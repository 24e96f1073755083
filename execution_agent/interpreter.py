"""Sequential, short-circuiting execution of step scripts.

The interpreter is synchronous: every driver call blocks. Callers on the
event loop run :meth:`StepInterpreter.run` in the shared driver thread pool
(see :mod:`execution_agent.blocking`).
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from execution_agent.artifacts import ArtifactWriter
from execution_agent.drivers.base import is_device_driver
from execution_agent.hierarchy import parse_snapshot
from execution_agent.locators import LocatorHealer, resolve_first
from execution_agent.models import StepResult, StepStatus
from execution_agent.steps import (
    DEVICE,
    PAGE,
    AssertTextContains,
    AssertVisible,
    CaptureScreenshot,
    ClearAppData,
    Click,
    ElementTarget,
    Fill,
    HideKeyboard,
    InputText,
    InvalidStep,
    LaunchApp,
    LongPress,
    Navigate,
    PressKey,
    Select,
    Step,
    StopApp,
    Swipe,
    Tap,
    UninstallApp,
    UnknownStep,
    Wait,
    WaitForVisible,
    parse_target,
)

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 500


class StepFailure(RuntimeError):
    """A step ran but its expectation was not met."""


class StepObserver(Protocol):
    def on_step_started(self, index: int, step: Step) -> None: ...

    def on_step_completed(self, index: int, step: Step, result: StepResult) -> None: ...


@dataclass(frozen=True)
class InterpreterOptions:
    step_timeout_ms: int = 7000
    poll_ms: int = 250
    strict: bool = True
    healing_enabled: bool = True
    healing_threshold: int = 60
    launch_settle_ms: int = 3000
    input_focus_delay_ms: int = 500
    tap_retry_delay_ms: int = 1000


@dataclass
class InterpretationResult:
    results: List[StepResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)


def error_message(exc: BaseException) -> str:
    """Short, single-line description of ``exc`` suitable for a report."""

    text = str(getattr(exc, "msg", None) or exc).strip()
    if not text:
        return exc.__class__.__name__
    return text.splitlines()[0][:_MAX_ERROR_LENGTH]


class StepInterpreter:
    """Runs a script against one driver, stopping at the first failure."""

    def __init__(
        self,
        options: Optional[InterpreterOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or InterpreterOptions()
        self._sleep = sleep
        self._clock = clock
        self._healer = LocatorHealer(self.options.healing_threshold, self.options.healing_enabled)
        self._handlers: Dict[type, Callable[..., None]] = {
            Wait: self._wait,
            CaptureScreenshot: self._capture_screenshot,
            AssertVisible: self._assert_visible,
            Navigate: lambda step, driver, ctx: driver.navigate(step.url),
            Click: lambda step, driver, ctx: driver.click(step.selector, step.timeout_ms),
            Fill: lambda step, driver, ctx: driver.fill(step.selector, step.text),
            WaitForVisible: lambda step, driver, ctx: driver.wait_for_visible(step.selector, step.timeout_ms),
            Select: lambda step, driver, ctx: driver.select_option(step.selector, step.value),
            AssertTextContains: self._assert_text_contains,
            Tap: self._tap,
            LongPress: self._long_press,
            InputText: self._input_text,
            Swipe: lambda step, driver, ctx: driver.swipe(
                step.start.x, step.start.y, step.end.x, step.end.y, step.duration_ms
            ),
            PressKey: lambda step, driver, ctx: driver.press_key(step.code),
            LaunchApp: self._launch_app,
            StopApp: lambda step, driver, ctx: driver.stop_app(step.app_id),
            ClearAppData: lambda step, driver, ctx: driver.clear_app_data(step.app_id),
            UninstallApp: lambda step, driver, ctx: driver.uninstall_app(step.app_id),
            HideKeyboard: lambda step, driver, ctx: driver.hide_keyboard(),
        }

    # ------------------------------------------------------------------
    # Script execution
    # ------------------------------------------------------------------
    def run(
        self,
        steps: Sequence[Step],
        driver: Any,
        *,
        cancel_event: Optional[threading.Event] = None,
        observer: Optional[StepObserver] = None,
        artifacts: Optional[ArtifactWriter] = None,
    ) -> InterpretationResult:
        outcome = InterpretationResult()
        for index, step in enumerate(steps):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Cancellation requested; stopping before step %d", index)
                outcome.cancelled = True
                break

            self._notify(observer, "on_step_started", index, step)
            started = self._clock()
            error: Optional[str] = None
            try:
                self.execute(step, driver, index=index, artifacts=artifacts)
            except Exception as exc:
                error = error_message(exc)
                logger.info("Step %d (%s) failed: %s", index, step.step_type, error)
            duration_ms = max(0, int(round((self._clock() - started) * 1000)))

            result = StepResult(
                step_index=index,
                step_type=step.step_type,
                status=StepStatus.FAILED if error else StepStatus.PASSED,
                duration_ms=duration_ms,
                error=error,
            )
            outcome.results.append(result)
            self._notify(observer, "on_step_completed", index, step, result)

            if error:
                self._capture_diagnostic(driver, artifacts, index)
                break
        return outcome

    def execute(
        self,
        step: Step,
        driver: Any,
        *,
        index: int = 0,
        artifacts: Optional[ArtifactWriter] = None,
    ) -> None:
        """Execute one step, raising on failure."""

        if isinstance(step, UnknownStep):
            logger.warning("Skipping unknown step type %r at index %d", step.type_name, index)
            return
        if isinstance(step, InvalidStep):
            raise StepFailure(f"Invalid {step.type_name} step: {step.reason}")

        scope = DEVICE if is_device_driver(driver) else PAGE
        if not step.supports(scope):
            platform = getattr(driver, "platform", scope)
            raise StepFailure(f"Step '{step.step_type}' is not supported on {getattr(platform, 'value', platform)}")

        handler = self._handlers.get(type(step))
        if handler is None:
            raise StepFailure(f"No handler for step '{step.step_type}'")
        handler(step, driver, {"index": index, "artifacts": artifacts})

    @staticmethod
    def _notify(observer: Optional[StepObserver], name: str, *args: Any) -> None:
        if observer is None:
            return
        try:
            getattr(observer, name)(*args)
        except Exception:
            logger.exception("Step observer %s failed", name)

    @staticmethod
    def _capture_diagnostic(driver: Any, artifacts: Optional[ArtifactWriter], index: int) -> None:
        if artifacts is None:
            return
        try:
            path = artifacts.capture(driver, f"step_{index:03d}_failure")
            logger.info("Saved failure screenshot to %s", path)
        except Exception as exc:
            logger.warning("Failure screenshot for step %d could not be captured: %s", index, exc)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    def _wait(self, step: Wait, driver: Any, ctx: Dict[str, Any]) -> None:
        self._sleep(step.duration_ms / 1000)

    def _capture_screenshot(self, step: CaptureScreenshot, driver: Any, ctx: Dict[str, Any]) -> None:
        artifacts: Optional[ArtifactWriter] = ctx["artifacts"]
        if artifacts is None:
            logger.info("No report folder configured; screenshot at step %d skipped", ctx["index"])
            return
        name = f"step_{ctx['index']:03d}_{step.name or step.kind}"
        artifacts.capture(driver, name, full_page=step.full_page)

    def _assert_visible(self, step: AssertVisible, driver: Any, ctx: Dict[str, Any]) -> None:
        timeout_ms = step.timeout_ms if step.timeout_ms is not None else self.options.step_timeout_ms
        if not is_device_driver(driver):
            if not step.selector:
                raise StepFailure("assertVisible needs a selector on web")
            for attempt in range(self._attempts(timeout_ms)):
                if attempt:
                    self._sleep(self.options.poll_ms / 1000)
                if driver.is_visible(step.selector):
                    return
            raise StepFailure(f"Element not visible: {step.selector}")

        target = step.target or parse_target({"locator": step.selector})
        if target is None or not target.has_locator:
            raise StepFailure("assertVisible needs a locator on devices")
        if self._poll_locators(target, driver, timeout_ms) is None:
            raise StepFailure(f"Element not visible: {target.describe()}")

    # ------------------------------------------------------------------
    # Page steps
    # ------------------------------------------------------------------
    def _assert_text_contains(self, step: AssertTextContains, driver: Any, ctx: Dict[str, Any]) -> None:
        actual = driver.text_content(step.selector)
        if step.expected not in actual:
            raise StepFailure(
                f"Expected {step.selector} to contain {step.expected!r} but found {actual[:200]!r}"
            )

    # ------------------------------------------------------------------
    # Device steps
    # ------------------------------------------------------------------
    def _attempts(self, timeout_ms: int) -> int:
        return max(1, math.ceil(timeout_ms / max(1, self.options.poll_ms)))

    def _poll_locators(self, target: ElementTarget, driver: Any, timeout_ms: int) -> Optional[Tuple[int, int]]:
        snapshot = None
        for attempt in range(self._attempts(timeout_ms)):
            if attempt:
                self._sleep(self.options.poll_ms / 1000)
            snapshot = parse_snapshot(driver.page_source())
            resolved = resolve_first(snapshot, target.candidates, include_coordinates=False)
            if resolved is not None:
                logger.debug("Resolved %s=%r at (%d, %d)", resolved.strategy.value, resolved.value, resolved.x, resolved.y)
                return resolved.x, resolved.y

        if snapshot is not None:
            healed = self._healer.best_match(target.hints, snapshot)
            if healed is not None:
                return healed.x, healed.y
        return None

    def resolve_target(self, target: ElementTarget, driver: Any) -> Tuple[int, int]:
        """Turn ``target`` into screen coordinates.

        Point-only targets act on the literal point without a snapshot. In
        strict mode a target with locators never falls back to coordinates.
        """

        fallback = target.fallback_point
        if not target.has_locator:
            if fallback is None:
                raise StepFailure("Step has neither a locator nor coordinates")
            return fallback.x, fallback.y

        point = self._poll_locators(target, driver, self.options.step_timeout_ms)
        if point is not None:
            return point
        if self.options.strict or fallback is None:
            raise StepFailure(
                f"No locator resolved for {target.describe()} within {self.options.step_timeout_ms}ms"
            )
        logger.warning("Locators for %s did not resolve; using recorded coordinates", target.describe())
        return fallback.x, fallback.y

    def _tap(self, step: Tap, driver: Any, ctx: Dict[str, Any]) -> None:
        x, y = self.resolve_target(step.target, driver)
        try:
            driver.tap(x, y)
        except Exception as exc:
            logger.info("Tap at (%d, %d) failed (%s); hiding keyboard and retrying", x, y, error_message(exc))
            driver.hide_keyboard()
            self._sleep(self.options.tap_retry_delay_ms / 1000)
            driver.tap(x, y)

    def _long_press(self, step: LongPress, driver: Any, ctx: Dict[str, Any]) -> None:
        x, y = self.resolve_target(step.target, driver)
        driver.long_press(x, y, step.duration_ms)

    def _input_text(self, step: InputText, driver: Any, ctx: Dict[str, Any]) -> None:
        if step.target is not None:
            x, y = self.resolve_target(step.target, driver)
            driver.tap(x, y)
            self._sleep(self.options.input_focus_delay_ms / 1000)
        driver.input_text(step.text)

    def _launch_app(self, step: LaunchApp, driver: Any, ctx: Dict[str, Any]) -> None:
        driver.launch_app(step.app_id)
        self._sleep(self.options.launch_settle_ms / 1000)
