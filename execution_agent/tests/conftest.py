"""Shared fakes for the execution agent tests."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest
from PIL import Image

from execution_agent.config import AgentSettings
from execution_agent.drivers.base import DriverError
from execution_agent.models import Platform

SAMPLE_XML = """<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" class="android.widget.FrameLayout" package="com.example" resource-id="" text="" content-desc="" bounds="[0,0][1080,1920]">
    <node index="0" class="android.widget.LinearLayout" package="com.example" resource-id="com.example:id/form" text="" content-desc="" bounds="[0,100][1080,900]">
      <node index="0" class="android.widget.EditText" package="com.example" resource-id="com.example:id/username" text="" content-desc="Username" clickable="true" focusable="true" bounds="[40,200][1040,300]" />
      <node index="1" class="android.widget.Button" package="com.example" resource-id="com.example:id/login" text="Sign in" content-desc="" clickable="true" bounds="[100,400][300,460]" />
      <node index="2" class="android.widget.TextView" package="com.example" resource-id="" text="Welcome back to the example application" content-desc="" bounds="[40,600][1040,680]" />
      <node index="3" class="android.widget.TextView" package="com.example" resource-id="com.example:id/stale" text="Stale" content-desc="" bounds="[300,200][100,260]" />
    </node>
  </node>
</hierarchy>
"""

EMPTY_XML = """<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" class="android.widget.FrameLayout" package="com.example" resource-id="" text="" content-desc="" bounds="[0,0][1080,1920]" />
</hierarchy>
"""


def _write_png(path: str) -> str:
    Image.new("RGB", (40, 80), "blue").save(path)
    return path


class FakeDeviceDriver:
    """Records calls and serves canned page sources."""

    def __init__(
        self,
        page_sources: Optional[Sequence[str]] = None,
        platform: Platform = Platform.ANDROID,
    ) -> None:
        self.platform = platform
        self.calls: List[tuple] = []
        self._sources = list(page_sources or [SAMPLE_XML])
        self.failing: Dict[str, int] = {}
        self.closed = False

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        remaining = self.failing.get(name, 0)
        if remaining:
            self.failing[name] = remaining - 1
            raise DriverError(f"{name} rejected")

    def actions(self) -> List[tuple]:
        return [call for call in self.calls if call[0] not in {"page_source", "screenshot"}]

    def page_source(self) -> str:
        self._record("page_source")
        if len(self._sources) > 1:
            return self._sources.pop(0)
        return self._sources[0]

    def tap(self, x: int, y: int) -> None:
        self._record("tap", x, y)

    def long_press(self, x: int, y: int, duration_ms: int) -> None:
        self._record("long_press", x, y, duration_ms)

    def input_text(self, text: str) -> None:
        self._record("input_text", text)

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int) -> None:
        self._record("swipe", x1, y1, x2, y2, duration_ms)

    def press_key(self, code: str) -> None:
        self._record("press_key", code)

    def launch_app(self, app_id: str) -> None:
        self._record("launch_app", app_id)

    def stop_app(self, app_id: str) -> None:
        self._record("stop_app", app_id)

    def clear_app_data(self, app_id: str) -> None:
        self._record("clear_app_data", app_id)

    def uninstall_app(self, app_id: str) -> None:
        self._record("uninstall_app", app_id)

    def hide_keyboard(self) -> None:
        self._record("hide_keyboard")

    def screenshot(self, path: str, full_page: bool = False) -> str:
        self._record("screenshot", path)
        return _write_png(path)

    def close(self) -> None:
        self.closed = True


class FakePageDriver:
    """In-memory page: ``elements`` maps selectors to their text."""

    platform = Platform.WEB

    def __init__(self, elements: Optional[Dict[str, str]] = None) -> None:
        self.elements = dict(elements or {})
        self.calls: List[tuple] = []
        self.closed = False
        self.screenshot_error: Optional[Exception] = None

    def _require(self, selector: str) -> None:
        if selector not in self.elements:
            raise DriverError(f"Element not found: {selector}")

    def navigate(self, url: str) -> None:
        self.calls.append(("navigate", url))

    def click(self, selector: str, timeout_ms: int) -> None:
        self.calls.append(("click", selector, timeout_ms))
        self._require(selector)

    def fill(self, selector: str, text: str) -> None:
        self.calls.append(("fill", selector, text))
        self._require(selector)
        self.elements[selector] = text

    def select_option(self, selector: str, value: str) -> None:
        self.calls.append(("select_option", selector, value))
        self._require(selector)

    def wait_for_visible(self, selector: str, timeout_ms: int) -> None:
        self.calls.append(("wait_for_visible", selector, timeout_ms))
        self._require(selector)

    def is_visible(self, selector: str) -> bool:
        self.calls.append(("is_visible", selector))
        return selector in self.elements

    def text_content(self, selector: str) -> str:
        self.calls.append(("text_content", selector))
        self._require(selector)
        return self.elements[selector]

    def screenshot(self, path: str, full_page: bool = False) -> str:
        self.calls.append(("screenshot", path, full_page))
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return _write_png(path)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def sample_xml() -> str:
    return SAMPLE_XML


@pytest.fixture
def empty_xml() -> str:
    return EMPTY_XML


@pytest.fixture
def device_driver() -> FakeDeviceDriver:
    return FakeDeviceDriver()


@pytest.fixture
def device_driver_cls():
    return FakeDeviceDriver


@pytest.fixture
def page_driver() -> FakePageDriver:
    return FakePageDriver({"#title": "Dashboard", "#user": "", "#submit": "Submit", "#country": ""})


@pytest.fixture
def page_driver_cls():
    return FakePageDriver


@pytest.fixture
def settings(tmp_path) -> AgentSettings:
    return AgentSettings(
        api_base_url="http://coordinator.test/agent-api",
        api_token="secret-token",
        max_capacity=3,
        reports_folder=str(tmp_path / "reports"),
        snapshot_dir=str(tmp_path / "snapshots"),
        history_dir=str(tmp_path / "history"),
        step_timeout_ms=500,
        locator_poll_ms=250,
    )
