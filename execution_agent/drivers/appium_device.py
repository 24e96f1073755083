"""Device backend built on the Appium Python client."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from appium import webdriver
from appium.options.android import UiAutomator2Options
from appium.options.ios import XCUITestOptions
from appium.webdriver.client_config import AppiumClientConfig
from appium.webdriver.common.appiumby import AppiumBy
from selenium.common.exceptions import NoSuchElementException, WebDriverException

from execution_agent.config import _truthy
from execution_agent.drivers.base import DriverError, DriverUnavailableError
from execution_agent.models import Platform

logger = logging.getLogger(__name__)

ANDROID_KEYCODES: Dict[str, int] = {
    "home": 3,
    "back": 4,
    "call": 5,
    "endcall": 6,
    "volume_up": 24,
    "volume_down": 25,
    "power": 26,
    "camera": 27,
    "tab": 61,
    "space": 62,
    "enter": 66,
    "delete": 67,
    "backspace": 67,
    "menu": 82,
    "search": 84,
    "app_switch": 187,
}

IOS_BUTTONS = {"home", "volumeup", "volumedown"}


def _normalise_appium_server(server: str) -> str:
    """Normalise the supplied Appium server URL.

    * Adds a default scheme (``APPIUM_DEFAULT_SCHEME`` or ``http``) when one is
      omitted.
    * Upgrades ``http`` URLs to ``https`` when ``APPIUM_FORCE_TLS`` is truthy.
    """

    server = server.strip()
    if not server:
        raise ValueError("Appium server URL must not be empty")

    default_scheme = os.getenv("APPIUM_DEFAULT_SCHEME", "http")
    force_tls = _truthy(os.getenv("APPIUM_FORCE_TLS"))

    if "://" not in server:
        server = f"{default_scheme}://{server}"

    parsed = urlparse(server)
    if force_tls and parsed.scheme.lower() == "http":
        parsed = parsed._replace(scheme="https")
        server = urlunparse(parsed)

    return server


def _appium_client_config(server: str) -> Optional[AppiumClientConfig]:
    """Build a TLS aware ``AppiumClientConfig`` when needed."""

    ignore_certs = _truthy(os.getenv("APPIUM_IGNORE_CERTIFICATES"))
    ca_certs = os.getenv("APPIUM_CA_CERTS") or None
    timeout_env = os.getenv("APPIUM_CLIENT_TIMEOUT")
    timeout = None
    if timeout_env:
        try:
            timeout = int(timeout_env)
        except ValueError as exc:
            raise ValueError("APPIUM_CLIENT_TIMEOUT must be an integer") from exc

    if not any([ignore_certs, ca_certs, timeout]) and not server.lower().startswith("https://"):
        return None

    return AppiumClientConfig(
        server,
        ignore_certificates=ignore_certs,
        ca_certs=ca_certs,
        timeout=timeout,
    )


def _needs_wd_hub_retry(error: Exception) -> bool:
    """Return ``True`` when ``error`` indicates an Appium base-path issue."""

    message = getattr(error, "msg", None) or str(error)
    if not message:
        return False
    lowered = message.lower()
    if "requested resource could not be found" in lowered:
        return True
    return "404" in lowered and "wd/hub" in lowered


def _append_wd_hub(server: str) -> str:
    """Append ``/wd/hub`` to ``server`` when it is missing."""

    parsed = urlparse(server)
    trimmed = (parsed.path or "").rstrip("/")
    if trimmed.endswith("wd/hub"):
        return server
    new_path = f"{trimmed}/wd/hub" if trimmed else "/wd/hub"
    return urlunparse(parsed._replace(path=new_path))


def _capabilities(platform: Platform, device_id: Optional[str]) -> Dict[str, Any]:
    if platform is Platform.ANDROID:
        caps: Dict[str, Any] = {
            "platformName": "Android",
            "appium:automationName": "UiAutomator2",
            "appium:newCommandTimeout": 0,
            "appium:noReset": True,
        }
    else:
        caps = {
            "platformName": "iOS",
            "appium:automationName": "XCUITest",
            "appium:autoLaunch": False,
            "appium:noReset": True,
        }
    if device_id:
        caps["appium:udid"] = device_id
        caps["appium:deviceName"] = device_id
    else:
        caps["appium:deviceName"] = "device"
    return caps


def create_device_session(
    server: str,
    platform: Platform,
    device_id: Optional[str] = None,
    extra_caps: Optional[Dict[str, Any]] = None,
):
    """Open an Appium session, retrying once on the legacy ``/wd/hub`` path."""

    if not platform.is_device:
        raise ValueError(f"Unsupported device platform: {platform.value}")

    server = _normalise_appium_server(server)
    client_config = _appium_client_config(server)
    capabilities = _capabilities(platform, device_id)
    capabilities.update(extra_caps or {})
    if platform is Platform.ANDROID:
        options = UiAutomator2Options().load_capabilities(capabilities)
    else:
        options = XCUITestOptions().load_capabilities(capabilities)

    def _connect(target: str):
        return webdriver.Remote(target, options=options, client_config=client_config)

    try:
        return _connect(server)
    except WebDriverException as exc:
        if _needs_wd_hub_retry(exc):
            fallback = _append_wd_hub(server)
            if fallback != server:
                logger.info("Retrying Appium connection with '/wd/hub' base path")
                try:
                    return _connect(fallback)
                except WebDriverException as retry_exc:
                    raise DriverUnavailableError(
                        f"Device session could not be started: {retry_exc.msg or retry_exc}"
                    ) from retry_exc
        raise DriverUnavailableError(f"Device session could not be started: {exc.msg or exc}") from exc


def _find_focused_element(driver, platform: Platform):
    try:
        if platform is Platform.ANDROID:
            return driver.find_element(AppiumBy.XPATH, "//*[@focused='true']")
        try:
            return driver.find_element(AppiumBy.IOS_PREDICATE, "hasKeyboardFocus == 1")
        except NoSuchElementException:
            return driver.switch_to.active_element
    except (NoSuchElementException, WebDriverException):
        return None


def _send_keys_safely(element, value: str, platform: Platform) -> bool:
    try:
        element.send_keys(value)
        return True
    except WebDriverException:
        pass
    if platform is Platform.IOS:
        try:
            element.set_value(value)
            return True
        except WebDriverException:
            pass
    return False


class AppiumDeviceDriver:
    """:class:`~execution_agent.drivers.base.DeviceDriver` over an Appium session."""

    def __init__(self, driver, platform: Platform) -> None:
        self._driver = driver
        self.platform = platform

    @classmethod
    def create(cls, server: str, platform: Platform, device_id: Optional[str] = None) -> "AppiumDeviceDriver":
        return cls(create_device_session(server, platform, device_id), platform)

    def tap(self, x: int, y: int) -> None:
        self._driver.tap([(x, y)])

    def long_press(self, x: int, y: int, duration_ms: int) -> None:
        self._driver.tap([(x, y)], duration_ms)

    def input_text(self, text: str) -> None:
        target = _find_focused_element(self._driver, self.platform)
        if target is not None and _send_keys_safely(target, text, self.platform):
            return
        if self.platform is Platform.IOS:
            try:
                self._driver.execute_script("mobile: type", {"text": text})
                return
            except WebDriverException as exc:
                raise DriverError(f"Typing failed: {exc.msg or exc}") from exc
        raise DriverError("No focused element to type into")

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int) -> None:
        self._driver.swipe(x1, y1, x2, y2, duration_ms)

    def press_key(self, code: str) -> None:
        key = str(code).strip()
        if self.platform is Platform.IOS:
            if key.lower() not in IOS_BUTTONS:
                raise DriverError(f"Unsupported iOS button: {code}")
            self._driver.execute_script("mobile: pressButton", {"name": key})
            return
        if key.isdigit():
            keycode = int(key)
        else:
            lookup = key.lower()
            if lookup.startswith("keycode_"):
                lookup = lookup[len("keycode_"):]
            if lookup not in ANDROID_KEYCODES:
                raise DriverError(f"Unknown key code: {code}")
            keycode = ANDROID_KEYCODES[lookup]
        self._driver.press_keycode(keycode)

    def launch_app(self, app_id: str) -> None:
        self._driver.activate_app(app_id)

    def stop_app(self, app_id: str) -> None:
        self._driver.terminate_app(app_id)

    def clear_app_data(self, app_id: str) -> None:
        self._driver.execute_script("mobile: clearApp", {"appId": app_id, "bundleId": app_id})

    def uninstall_app(self, app_id: str) -> None:
        self._driver.remove_app(app_id)

    def hide_keyboard(self) -> None:
        try:
            self._driver.hide_keyboard()
        except WebDriverException as exc:
            logger.debug("hide_keyboard ignored: %s", exc)

    def page_source(self) -> str:
        return self._driver.page_source

    def screenshot(self, path: str, full_page: bool = False) -> str:
        if not self._driver.save_screenshot(path):
            raise DriverError(f"Screenshot could not be written to {path}")
        return path

    def close(self) -> None:
        try:
            self._driver.quit()
        except WebDriverException as exc:
            logger.warning("Failed to close device session: %s", exc)
