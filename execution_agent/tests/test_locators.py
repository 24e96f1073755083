"""Tests for locator ranking, resolution, bundles and healing."""

from __future__ import annotations

import pytest

from execution_agent.hierarchy import parse_snapshot
from execution_agent.locators import (
    STRATEGY_PRIORITY,
    ElementHints,
    LocatorBundle,
    LocatorCandidate,
    LocatorHealer,
    LocatorStrategy,
    build_locator_bundle,
    heal,
    inspect_locator,
    inspect_point,
    parse_xpath_criteria,
    rank_candidates,
    resolve_first,
    resolve_locator,
    similarity,
    token_overlap,
    xpath_literal,
)

ID = LocatorStrategy.ID
A11Y = LocatorStrategy.ACCESSIBILITY_ID
TEXT = LocatorStrategy.TEXT
XPATH = LocatorStrategy.XPATH
COORDS = LocatorStrategy.COORDINATES


def test_priority_order_is_explicit():
    assert [s.value for s in STRATEGY_PRIORITY] == ["id", "accessibilityId", "text", "xpath", "coordinates"]


def test_rank_candidates_sorts_by_priority_then_score():
    ranked = rank_candidates(
        [
            LocatorCandidate(COORDS, "1,1", 100),
            LocatorCandidate(TEXT, "Sign in", 99),
            LocatorCandidate(ID, "b", 10),
            LocatorCandidate(ID, "a", 50),
            LocatorCandidate(ID, "a", 20),
        ]
    )

    assert [(c.strategy, c.value, c.score) for c in ranked] == [
        (ID, "a", 50),
        (ID, "b", 10),
        (TEXT, "Sign in", 99),
        (COORDS, "1,1", 100),
    ]


def test_strategy_aliases():
    assert LocatorStrategy.coerce("resource-id") is ID
    assert LocatorStrategy.coerce("content-desc") is A11Y
    assert LocatorStrategy.coerce("accessibilityId") is A11Y


def test_id_beats_text_and_coordinates(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    resolved = resolve_first(
        snapshot,
        [
            LocatorCandidate(COORDS, "10,10"),
            LocatorCandidate(TEXT, "Welcome back to the example application"),
            LocatorCandidate(ID, "com.example:id/login"),
        ],
    )

    assert (resolved.x, resolved.y) == (200, 430)
    assert resolved.strategy is ID


def test_text_matches_exactly_for_short_values(sample_xml):
    snapshot = parse_snapshot(sample_xml)

    assert resolve_locator(snapshot, LocatorCandidate(TEXT, "Sign in")) is not None
    assert resolve_locator(snapshot, LocatorCandidate(TEXT, "Sign")) is None


def test_text_matches_substring_for_long_values(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    resolved = resolve_locator(snapshot, LocatorCandidate(TEXT, "Welcome back to the example"))

    assert (resolved.x, resolved.y) == (540, 640)


def test_nodes_without_valid_bounds_never_resolve(sample_xml):
    snapshot = parse_snapshot(sample_xml)

    assert resolve_locator(snapshot, LocatorCandidate(ID, "com.example:id/stale")) is None


def test_xpath_subset(sample_xml):
    snapshot = parse_snapshot(sample_xml)

    by_eq = resolve_locator(
        snapshot,
        LocatorCandidate(XPATH, '//*[@class="android.widget.Button" and @resource-id="com.example:id/login"]'),
    )
    by_contains = resolve_locator(snapshot, LocatorCandidate(XPATH, "//*[contains(@text, 'Welcome')]"))
    unsupported = resolve_locator(snapshot, LocatorCandidate(XPATH, "//android.widget.Button[1]"))

    assert (by_eq.x, by_eq.y) == (200, 430)
    assert (by_contains.x, by_contains.y) == (540, 640)
    assert unsupported is None


def test_xpath_literal_round_trips_quotes():
    literal = xpath_literal('say "hi" it\'s')
    criteria = parse_xpath_criteria(f"//*[@text={literal}]")

    assert literal.startswith("concat(")
    assert criteria["eq"]["text"] == 'say "hi" it\'s'


def test_coordinates_resolve_literally(sample_xml):
    snapshot = parse_snapshot(sample_xml)

    resolved = resolve_locator(snapshot, LocatorCandidate(COORDS, "12, 34"))
    assert (resolved.x, resolved.y) == (12, 34)
    assert resolve_locator(snapshot, LocatorCandidate(COORDS, "twelve")) is None
    assert resolve_first(snapshot, [LocatorCandidate(COORDS, "12,34")], include_coordinates=False) is None


def test_bundle_for_node_with_id_and_text(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    login = next(node for node in snapshot if node.resource_id == "com.example:id/login")
    bundle = build_locator_bundle(login, snapshot)

    assert bundle.primary.strategy is ID
    assert bundle.primary.value == "com.example:id/login"
    assert bundle.primary.score == 100
    assert bundle.primary.match_count == 1
    assert len(bundle.fallbacks) <= 5
    assert len(bundle.fingerprint) == 64
    assert bundle.reliability_score == 100
    assert all(c.strategy is not ID for c in bundle.fallbacks)


def test_bundle_skips_dynamic_text():
    xml = (
        '<hierarchy><node class="android.widget.TextView" text="Order 123456789" '
        'bounds="[0,0][200,100]" /></hierarchy>'
    )
    snapshot = parse_snapshot(xml)
    bundle = build_locator_bundle(snapshot.nodes[0], snapshot)

    assert bundle.primary.strategy is TEXT
    assert not any(c.strategy is XPATH for c in bundle.candidates)
    assert any(c.strategy is COORDS for c in bundle.candidates)


def test_bundle_round_trips_through_dict(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    username = next(node for node in snapshot if node.content_desc == "Username")
    bundle = build_locator_bundle(username, snapshot)

    restored = LocatorBundle.from_dict(bundle.to_dict())

    assert restored.primary == bundle.primary
    assert restored.reliability_score == bundle.reliability_score


def test_inspect_point_returns_metadata_only(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    inspection = inspect_point(snapshot, 200, 430)
    payload = inspection.to_dict()

    assert payload["element"]["resource_id"] == "com.example:id/login"
    assert payload["locator_bundle"]["primary"]["strategy"] == "id"
    assert (payload["x"], payload["y"]) == (200, 430)


def test_healer_finds_renamed_resource_id(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    hints = ElementHints(
        resource_id="com.example:id/login_button",
        text="Sign in",
        class_name="android.widget.Button",
        bounds="[100,400][300,460]",
    )

    healed = LocatorHealer(threshold=60).best_match(hints, snapshot)

    assert healed is not None
    assert (healed.x, healed.y) == (200, 430)
    assert healed.healed_score >= 60


def test_healer_respects_threshold(sample_xml):
    snapshot = parse_snapshot(sample_xml)
    hints = ElementHints(text="Something unrelated entirely")

    assert heal(hints, snapshot, threshold=60) is None
    assert LocatorHealer(enabled=False).best_match(ElementHints(resource_id="com.example:id/login"), snapshot) is None


def test_similarity_scores():
    assert similarity("com.example:id/login", "com.example:id/login") == 1.0
    assert similarity("", "login") == 0.0
    assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


def test_token_overlap_ignores_order_case_and_extra_words():
    assert token_overlap("Sign in now", "sign IN") == 1.0
    assert token_overlap("Log in, please", "please log in") == 1.0
    assert token_overlap("", "Sign in") == 0.0
    assert token_overlap("Stale", "Welcome back") < 0.6


def test_inspect_locator_finds_element_and_bundle(sample_xml):
    snapshot = parse_snapshot(sample_xml)

    by_text = inspect_locator(snapshot, LocatorCandidate(TEXT, "Sign in"))
    by_point = inspect_locator(snapshot, LocatorCandidate(COORDS, "540,250"))

    assert (by_text.x, by_text.y) == (200, 430)
    assert by_text.node.resource_id == "com.example:id/login"
    assert by_text.bundle.primary.value == "com.example:id/login"
    assert by_point.node.content_desc == "Username"
    assert inspect_locator(snapshot, LocatorCandidate(ID, "com.example:id/gone")) is None
