"""Capability interfaces implemented by the page and device backends."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from execution_agent.models import Platform


class DriverError(RuntimeError):
    """Raised by a backend when a primitive action cannot be performed."""


class DriverUnavailableError(RuntimeError):
    """Raised when no browser session or device connection can be acquired."""


@runtime_checkable
class PageDriver(Protocol):
    """Primitive actions against a browser page."""

    platform: Platform

    def navigate(self, url: str) -> None: ...

    def click(self, selector: str, timeout_ms: int) -> None: ...

    def fill(self, selector: str, text: str) -> None: ...

    def select_option(self, selector: str, value: str) -> None: ...

    def wait_for_visible(self, selector: str, timeout_ms: int) -> None: ...

    def is_visible(self, selector: str) -> bool: ...

    def text_content(self, selector: str) -> str: ...

    def screenshot(self, path: str, full_page: bool = False) -> str: ...

    def close(self) -> None: ...


@runtime_checkable
class DeviceDriver(Protocol):
    """Primitive actions against a mobile device session."""

    platform: Platform

    def tap(self, x: int, y: int) -> None: ...

    def long_press(self, x: int, y: int, duration_ms: int) -> None: ...

    def input_text(self, text: str) -> None: ...

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int) -> None: ...

    def press_key(self, code: str) -> None: ...

    def launch_app(self, app_id: str) -> None: ...

    def stop_app(self, app_id: str) -> None: ...

    def clear_app_data(self, app_id: str) -> None: ...

    def uninstall_app(self, app_id: str) -> None: ...

    def hide_keyboard(self) -> None: ...

    def page_source(self) -> str: ...

    def screenshot(self, path: str, full_page: bool = False) -> str: ...

    def close(self) -> None: ...


def is_device_driver(driver: object) -> bool:
    platform: Optional[Platform] = getattr(driver, "platform", None)
    return platform is not None and Platform(platform).is_device
