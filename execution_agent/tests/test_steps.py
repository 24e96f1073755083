"""Tests for step payload parsing."""

from __future__ import annotations

import pytest

from execution_agent.locators import LocatorStrategy
from execution_agent.models import Job, JobStatus, Platform
from execution_agent.steps import (
    AssertTextContains,
    Click,
    Fill,
    InputText,
    InvalidStep,
    LaunchApp,
    Navigate,
    Point,
    PressKey,
    Swipe,
    Tap,
    UnknownStep,
    Wait,
    WaitForVisible,
    dump_script,
    parse_script,
    parse_step,
)


@pytest.mark.parametrize(
    "payload, expected_type",
    [
        ({"type": "goto", "url": "https://example.test"}, Navigate),
        ({"type": "type", "selector": "#q", "text": "hello"}, Fill),
        ({"type": "waitForSelector", "selector": "#q"}, WaitForVisible),
        ({"type": "verifyText", "selector": "#q", "expected": "x"}, AssertTextContains),
        ({"type": "openApp", "app_id": "com.example"}, LaunchApp),
        ({"type": "key", "code": "66"}, PressKey),
        ({"type": "input", "text": "hi"}, InputText),
    ],
)
def test_aliases_map_to_canonical_steps(payload, expected_type):
    assert isinstance(parse_step(payload), expected_type)


def test_defaults_are_applied():
    click = parse_step({"type": "click", "selector": "#go"})
    wait = parse_step({"type": "wait"})

    assert click == Click(selector="#go", timeout_ms=30000)
    assert wait == Wait(duration_ms=1000)


def test_unknown_type_becomes_unknown_step():
    step = parse_step({"type": "teleport", "where": "moon"})

    assert isinstance(step, UnknownStep)
    assert step.step_type == "teleport"
    assert step.to_dict() == {"type": "teleport", "where": "moon"}


def test_missing_arguments_become_invalid_step():
    step = parse_step({"type": "navigate"})

    assert isinstance(step, InvalidStep)
    assert step.step_type == "navigate"
    assert "url" in step.reason


def test_negative_duration_is_invalid():
    assert isinstance(parse_step({"type": "wait", "duration_ms": -5}), InvalidStep)


def test_plain_locator_expands_to_id_accessibility_and_text():
    step = parse_step({"type": "tap", "locator": "Login"})

    strategies = [candidate.strategy for candidate in step.target.candidates]
    assert strategies == [LocatorStrategy.ID, LocatorStrategy.ACCESSIBILITY_ID, LocatorStrategy.TEXT]
    assert step.target.has_locator


def test_coordinate_only_tap():
    step = parse_step({"type": "tap", "x": 10, "y": 20})

    assert isinstance(step, Tap)
    assert step.target.point == Point(10, 20)
    assert not step.target.has_locator


def test_tap_without_target_is_invalid():
    assert isinstance(parse_step({"type": "tap"}), InvalidStep)


def test_locator_bundle_and_element_hints_are_collected():
    step = parse_step(
        {
            "type": "tap",
            "locator_bundle": {
                "primary": {"strategy": "text", "value": "Sign in", "score": 70},
                "fallbacks": [{"strategy": "resource-id", "value": "com.example:id/login", "score": 90}],
            },
            "coordinates": {"x": 200, "y": 430},
            "element_class_name": "android.widget.Button",
        }
    )

    assert step.target.candidates[0].strategy is LocatorStrategy.ID
    assert step.target.point == Point(200, 430)
    assert step.target.hints.resource_id == "com.example:id/login"
    assert step.target.hints.class_name == "android.widget.Button"


def test_swipe_formats():
    from_to = parse_step({"type": "swipe", "from": {"x": 1, "y": 2}, "to": [3, 4], "duration": 300})
    legacy = parse_step(
        {"type": "scroll", "swipe_start_x": 1, "swipe_start_y": 2, "swipe_end_x": 3, "swipe_end_y": 4}
    )

    assert from_to == Swipe(start=Point(1, 2), end=Point(3, 4), duration_ms=300)
    assert legacy == Swipe(start=Point(1, 2), end=Point(3, 4), duration_ms=500)


def test_recorded_steps_round_trip():
    script = [
        {"type": "tap", "locator": "com.example:id/login", "locator_strategy": "id", "x": 5, "y": 6},
        {"type": "inputText", "text": "secret"},
        {"type": "swipe", "from": {"x": 1, "y": 2}, "to": {"x": 3, "y": 4}},
        {"type": "pressKey", "code": "back"},
    ]

    steps = parse_script(script)

    assert parse_script(dump_script(steps)) == steps


def test_parse_script_rejects_non_lists():
    with pytest.raises(ValueError):
        parse_script({"type": "wait"})


def test_job_from_payload_uses_base_url_and_platform():
    job = Job.from_payload(
        {
            "id": "job-1",
            "base_url": "https://example.test",
            "steps": [{"type": "click", "selector": "#go"}],
            "retries": 2,
        }
    )

    assert job.platform is Platform.WEB
    assert job.target_context == "https://example.test"
    assert job.parameters == {"retries": 2}
    assert job.status is JobStatus.OFFERED


def test_device_job_falls_back_to_target_for_device_id():
    job = Job.from_payload({"job_id": 7, "platform": "android", "target_context": "emulator-5554", "steps": []})

    assert job.id == "7"
    assert job.device_id == "emulator-5554"


def test_claim_payload_is_merged_over_offer():
    offered = Job.from_payload({"id": "job-1", "steps": [{"type": "wait"}], "base_url": "https://a.test"})

    claimed = offered.merged_with({"base_url": "https://b.test", "timeout": 60})

    assert claimed.status is JobStatus.CLAIMED
    assert claimed.target_context == "https://b.test"
    assert claimed.parameters["timeout"] == 60
    assert claimed.steps == offered.steps
