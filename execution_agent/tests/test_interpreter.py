"""Tests for sequential step execution against fake drivers."""

from __future__ import annotations

import os
import threading
from typing import List

import pytest

from execution_agent.artifacts import ArtifactWriter
from execution_agent.interpreter import InterpreterOptions, StepInterpreter
from execution_agent.models import Platform, StepStatus
from execution_agent.steps import parse_script


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def interpreter(sleeps) -> StepInterpreter:
    return StepInterpreter(InterpreterOptions(step_timeout_ms=1000, poll_ms=250), sleep=sleeps.append)


def test_all_steps_pass_on_page(interpreter, page_driver):
    steps = parse_script(
        [
            {"type": "navigate", "url": "https://example.test"},
            {"type": "fill", "selector": "#user", "text": "alice"},
            {"type": "click", "selector": "#submit"},
            {"type": "select", "selector": "#country", "value": "NZ"},
            {"type": "assertTextContains", "selector": "#title", "expected": "Dash"},
            {"type": "waitForVisible", "selector": "#title", "timeout_ms": 2000},
            {"type": "wait", "duration_ms": 10},
        ]
    )

    outcome = interpreter.run(steps, page_driver)

    assert [r.status for r in outcome.results] == [StepStatus.PASSED] * 7
    assert [r.step_index for r in outcome.results] == list(range(7))
    assert ("click", "#submit", 30000) in page_driver.calls
    assert outcome.passed


def test_failure_short_circuits_remaining_steps(interpreter, page_driver):
    steps = parse_script(
        [
            {"type": "navigate", "url": "https://example.test"},
            {"type": "click", "selector": "#missing"},
            {"type": "fill", "selector": "#user", "text": "never"},
        ]
    )

    outcome = interpreter.run(steps, page_driver)

    assert len(outcome.results) == 2
    assert outcome.results[1].status is StepStatus.FAILED
    assert "#missing" in outcome.results[1].error
    assert not any(call[0] == "fill" for call in page_driver.calls)


def test_assertion_failure_reports_message(interpreter, page_driver):
    steps = parse_script([{"type": "assertText", "selector": "#title", "expected": "Settings"}])

    result = interpreter.run(steps, page_driver).results[0]

    assert result.status is StepStatus.FAILED
    assert "Settings" in result.error


def test_unknown_step_is_skipped_with_warning(interpreter, page_driver, caplog):
    steps = parse_script([{"type": "teleport"}, {"type": "navigate", "url": "https://example.test"}])

    outcome = interpreter.run(steps, page_driver)

    assert [r.status for r in outcome.results] == [StepStatus.PASSED, StepStatus.PASSED]
    assert outcome.results[0].step_type == "teleport"
    assert "teleport" in caplog.text


def test_invalid_step_fails(interpreter, page_driver):
    outcome = interpreter.run(parse_script([{"type": "navigate"}]), page_driver)

    assert outcome.results[0].status is StepStatus.FAILED
    assert "Invalid navigate step" in outcome.results[0].error


def test_device_step_on_page_fails(interpreter, page_driver):
    outcome = interpreter.run(parse_script([{"type": "tap", "x": 1, "y": 2}]), page_driver)

    assert outcome.results[0].status is StepStatus.FAILED
    assert "not supported on web" in outcome.results[0].error


def test_cancellation_is_checked_before_each_step(interpreter, page_driver):
    cancel = threading.Event()

    class CancelAfterFirst:
        def on_step_started(self, index, step):
            pass

        def on_step_completed(self, index, step, result):
            cancel.set()

    steps = parse_script([{"type": "wait"}, {"type": "wait"}, {"type": "wait"}])
    outcome = interpreter.run(steps, page_driver, cancel_event=cancel, observer=CancelAfterFirst())

    assert len(outcome.results) == 1
    assert outcome.cancelled


def test_observer_sees_every_step_in_order(interpreter, page_driver):
    seen = []

    class Recorder:
        def on_step_started(self, index, step):
            seen.append(("started", index))

        def on_step_completed(self, index, step, result):
            seen.append(("completed", index, result.status.value))

    interpreter.run(parse_script([{"type": "wait"}, {"type": "click", "selector": "#nope"}]), page_driver, observer=Recorder())

    assert seen == [("started", 0), ("completed", 0, "passed"), ("started", 1), ("completed", 1, "failed")]


def test_failure_screenshot_is_written(interpreter, page_driver, tmp_path):
    artifacts = ArtifactWriter(str(tmp_path), "job-9")

    interpreter.run(parse_script([{"type": "click", "selector": "#nope"}]), page_driver, artifacts=artifacts)

    assert os.path.exists(tmp_path / "job-9" / "step_000_failure.png")
    assert os.path.exists(tmp_path / "job-9" / "step_000_failure.jpg")


def test_failure_screenshot_errors_are_ignored(interpreter, page_driver, tmp_path):
    page_driver.screenshot_error = RuntimeError("browser gone")

    outcome = interpreter.run(
        parse_script([{"type": "click", "selector": "#nope"}]),
        page_driver,
        artifacts=ArtifactWriter(str(tmp_path), "job-10"),
    )

    assert outcome.results[0].error == "Element not found: #nope"


def test_tap_resolves_id_before_coordinates(interpreter, device_driver):
    steps = parse_script(
        [{"type": "tap", "locator": "com.example:id/login", "locator_strategy": "id", "x": 1, "y": 1}]
    )

    outcome = interpreter.run(steps, device_driver)

    assert outcome.passed
    assert device_driver.actions() == [("tap", 200, 430)]


def test_point_only_tap_uses_literal_point_without_snapshot(interpreter, device_driver):
    interpreter.run(parse_script([{"type": "tap", "x": 12, "y": 34}]), device_driver)

    assert device_driver.calls == [("tap", 12, 34)]


def test_strict_mode_fails_unresolved_locator_even_with_coordinates(interpreter, device_driver, sleeps):
    steps = parse_script(
        [{"type": "tap", "locator": "com.example:id/gone", "locator_strategy": "id", "x": 5, "y": 5}]
    )

    result = interpreter.run(steps, device_driver).results[0]

    assert result.status is StepStatus.FAILED
    assert "No locator resolved" in result.error
    assert [c for c in device_driver.calls if c[0] == "page_source"] == [("page_source",)] * 4
    assert sleeps == [0.25] * 3
    assert device_driver.actions() == []


def test_non_strict_mode_falls_back_to_coordinates(device_driver):
    interpreter = StepInterpreter(
        InterpreterOptions(step_timeout_ms=250, poll_ms=250, strict=False), sleep=lambda _s: None
    )
    steps = parse_script(
        [{"type": "tap", "locator": "com.example:id/gone", "locator_strategy": "id", "x": 5, "y": 5}]
    )

    assert interpreter.run(steps, device_driver).passed
    assert device_driver.actions() == [("tap", 5, 5)]


def test_locator_polling_waits_for_element(interpreter, device_driver_cls, empty_xml, sample_xml):
    driver = device_driver_cls(page_sources=[empty_xml, empty_xml, sample_xml])

    outcome = interpreter.run(parse_script([{"type": "tap", "locator": "Sign in", "locator_strategy": "text"}]), driver)

    assert outcome.passed
    assert driver.actions() == [("tap", 200, 430)]


def test_healing_matches_renamed_element(interpreter, device_driver):
    steps = parse_script(
        [
            {
                "type": "tap",
                "locator": "com.example:id/login_button",
                "locator_strategy": "id",
                "element_text": "Sign in now",
                "element_class_name": "android.widget.Button",
                "element_bounds": "[100,400][300,460]",
            }
        ]
    )

    outcome = interpreter.run(steps, device_driver)

    assert outcome.passed
    assert device_driver.actions() == [("tap", 200, 430)]


def test_tap_retries_after_hiding_keyboard(interpreter, device_driver, sleeps):
    device_driver.failing["tap"] = 1

    outcome = interpreter.run(parse_script([{"type": "tap", "x": 10, "y": 10}]), device_driver)

    assert outcome.passed
    assert device_driver.actions() == [("tap", 10, 10), ("hide_keyboard",), ("tap", 10, 10)]
    assert sleeps == [1.0]


def test_input_text_taps_target_then_types(interpreter, device_driver, sleeps):
    steps = parse_script([{"type": "inputText", "text": "alice", "locator": "Username"}])

    interpreter.run(steps, device_driver)

    assert device_driver.actions() == [("tap", 540, 250), ("input_text", "alice")]
    assert sleeps == [0.5]


def test_device_vocabulary(interpreter, device_driver, sleeps):
    steps = parse_script(
        [
            {"type": "openApp", "app_id": "com.example"},
            {"type": "longPress", "x": 3, "y": 4, "duration_ms": 800},
            {"type": "swipe", "from": {"x": 1, "y": 2}, "to": {"x": 3, "y": 4}, "duration_ms": 200},
            {"type": "pressKey", "code": "back"},
            {"type": "hideKeyboard"},
            {"type": "forceStop", "app_id": "com.example"},
            {"type": "clearApp", "app_id": "com.example"},
            {"type": "uninstallApp", "app_id": "com.example"},
            {"type": "assertVisible", "locator": "Username"},
        ]
    )

    outcome = interpreter.run(steps, device_driver)

    assert outcome.passed
    assert device_driver.actions() == [
        ("launch_app", "com.example"),
        ("long_press", 3, 4, 800),
        ("swipe", 1, 2, 3, 4, 200),
        ("press_key", "back"),
        ("hide_keyboard",),
        ("stop_app", "com.example"),
        ("clear_app_data", "com.example"),
        ("uninstall_app", "com.example"),
    ]
    assert sleeps[0] == 3.0


def test_page_steps_fail_on_device(interpreter, device_driver_cls):
    driver = device_driver_cls(platform=Platform.IOS)

    result = interpreter.run(parse_script([{"type": "navigate", "url": "https://x.test"}]), driver).results[0]

    assert result.status is StepStatus.FAILED
    assert "not supported on ios" in result.error
