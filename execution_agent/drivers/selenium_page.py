"""Browser backend built on Selenium WebDriver."""

from __future__ import annotations

import logging
from time import sleep
from typing import Optional, Tuple

from selenium import webdriver as selenium_webdriver
from selenium.common.exceptions import (
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait

from execution_agent.drivers.base import DriverError, DriverUnavailableError
from execution_agent.locators import xpath_literal
from execution_agent.models import Platform

logger = logging.getLogger(__name__)

# Lookups for actions that do not carry their own timeout.
DEFAULT_LOOKUP_TIMEOUT_S = 5


def to_by(selector: str) -> Tuple[str, str]:
    """Translate a script selector into a Selenium ``(By, value)`` pair.

    ``xpath=`` prefixes and expressions starting with ``/`` or ``(`` are
    XPath; ``text=Foo`` matches elements whose text contains ``Foo``;
    anything else is a CSS selector.
    """

    value = (selector or "").strip()
    if not value:
        raise DriverError("Selector must not be empty")
    if value.startswith("xpath="):
        return By.XPATH, value[len("xpath="):]
    if value.startswith("/") or value.startswith("("):
        return By.XPATH, value
    if value.startswith("text="):
        text = value[len("text="):].strip().strip("\"'")
        return By.XPATH, f"//*[contains(normalize-space(.), {xpath_literal(text)})]"
    if value.startswith("css="):
        return By.CSS_SELECTOR, value[len("css="):]
    return By.CSS_SELECTOR, value


def _build_chrome_options(headless: bool) -> ChromeOptions:
    options = ChromeOptions()
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--ignore-certificate-errors")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--window-size=1920,1080")
    options.set_capability("acceptInsecureCerts", True)
    return options


def create_web_driver(remote_url: Optional[str], headless: bool = True):
    """Start a Chrome session, remote when ``remote_url`` is configured."""

    options = _build_chrome_options(headless)
    try:
        if remote_url:
            logger.info("Connecting to remote Selenium at %s", remote_url)
            return selenium_webdriver.Remote(command_executor=remote_url, options=options)
        return selenium_webdriver.Chrome(options=options)
    except WebDriverException as exc:
        raise DriverUnavailableError(f"Browser session could not be started: {exc.msg or exc}") from exc


def _wait_for_ready(driver, timeout: float = 10) -> None:
    try:
        WebDriverWait(driver, timeout).until(
            lambda d: d.execute_script("return (document.readyState === 'complete')")
        )
    except TimeoutException:
        logger.debug("document.readyState did not reach 'complete' within %ss", timeout)


def _switch_if_new_window(driver, before_handles) -> bool:
    try:
        after = driver.window_handles
    except WebDriverException:
        return False
    new = [handle for handle in after if handle not in before_handles]
    if not new:
        return False
    driver.switch_to.window(new[-1])
    return True


class SeleniumPageDriver:
    """:class:`~execution_agent.drivers.base.PageDriver` over a WebDriver."""

    platform = Platform.WEB

    def __init__(self, driver) -> None:
        self._driver = driver

    @classmethod
    def create(cls, remote_url: Optional[str], headless: bool = True) -> "SeleniumPageDriver":
        return cls(create_web_driver(remote_url, headless))

    @property
    def webdriver(self):
        return self._driver

    def _find(self, selector: str, timeout_s: float = DEFAULT_LOOKUP_TIMEOUT_S):
        by, value = to_by(selector)
        try:
            return WebDriverWait(self._driver, timeout_s).until(
                EC.presence_of_element_located((by, value))
            )
        except TimeoutException as exc:
            raise DriverError(f"Element not found: {selector}") from exc

    def navigate(self, url: str) -> None:
        self._driver.get(url)
        _wait_for_ready(self._driver)

    def click(self, selector: str, timeout_ms: int) -> None:
        by, value = to_by(selector)
        try:
            before = self._driver.window_handles[:]
        except WebDriverException:
            before = []
        try:
            element = WebDriverWait(self._driver, timeout_ms / 1000).until(
                EC.element_to_be_clickable((by, value))
            )
        except TimeoutException as exc:
            raise DriverError(f"Element not clickable within {timeout_ms}ms: {selector}") from exc
        element.click()
        if not _switch_if_new_window(self._driver, before):
            _wait_for_ready(self._driver, timeout=8)

    def fill(self, selector: str, text: str) -> None:
        element = self._find(selector)
        element.clear()
        element.send_keys(text)

    def select_option(self, selector: str, value: str) -> None:
        element = self._find(selector)
        dropdown = Select(element)
        try:
            dropdown.select_by_value(value)
        except NoSuchElementException:
            try:
                dropdown.select_by_visible_text(value)
            except NoSuchElementException as exc:
                raise DriverError(f"Option {value!r} not found in {selector}") from exc

    def wait_for_visible(self, selector: str, timeout_ms: int) -> None:
        by, value = to_by(selector)
        try:
            WebDriverWait(self._driver, timeout_ms / 1000).until(
                EC.visibility_of_element_located((by, value))
            )
        except TimeoutException as exc:
            raise DriverError(f"Element not visible within {timeout_ms}ms: {selector}") from exc

    def is_visible(self, selector: str) -> bool:
        by, value = to_by(selector)
        elements = self._driver.find_elements(by, value)
        return any(element.is_displayed() for element in elements)

    def text_content(self, selector: str) -> str:
        element = self._find(selector)
        return element.text or element.get_attribute("textContent") or ""

    def screenshot(self, path: str, full_page: bool = False) -> str:
        if full_page:
            height = self._driver.execute_script("return document.body.scrollHeight")
            width = self._driver.execute_script("return document.body.scrollWidth")
            self._driver.set_window_size(max(width, 800), max(height, 600))
            sleep(0.2)
        if not self._driver.save_screenshot(path):
            raise DriverError(f"Screenshot could not be written to {path}")
        return path

    def close(self) -> None:
        try:
            self._driver.quit()
        except WebDriverException as exc:
            logger.warning("Failed to close browser session: %s", exc)
