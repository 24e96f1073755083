"""Select and start the backend a job's platform implies."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union

from execution_agent.config import AgentSettings
from execution_agent.drivers.appium_device import AppiumDeviceDriver
from execution_agent.drivers.base import DeviceDriver, DriverUnavailableError, PageDriver
from execution_agent.drivers.selenium_page import SeleniumPageDriver
from execution_agent.models import Job, Platform

logger = logging.getLogger(__name__)

AnyDriver = Union[PageDriver, DeviceDriver]
PageBuilder = Callable[[AgentSettings], PageDriver]
DeviceBuilder = Callable[[AgentSettings, Platform, Optional[str], str], DeviceDriver]


def _default_page_builder(settings: AgentSettings) -> PageDriver:
    return SeleniumPageDriver.create(settings.selenium_remote_url, settings.headless)


def _default_device_builder(
    settings: AgentSettings, platform: Platform, device_id: Optional[str], server: str
) -> DeviceDriver:
    return AppiumDeviceDriver.create(server, platform, device_id)


class DriverFactory:
    """Builds one exclusive driver per job.

    ``acquire`` blocks while the session starts and is meant to run in the
    shared driver thread pool.
    """

    def __init__(
        self,
        settings: AgentSettings,
        page_builder: Optional[PageBuilder] = None,
        device_builder: Optional[DeviceBuilder] = None,
    ) -> None:
        self._settings = settings
        self._page_builder = page_builder or _default_page_builder
        self._device_builder = device_builder or _default_device_builder

    def acquire(self, job: Job) -> AnyDriver:
        return self.open(job.platform, job.device_id, job.parameters.get("appium_server"))

    def open(
        self,
        platform: Platform,
        device_id: Optional[str] = None,
        server: Optional[str] = None,
    ) -> AnyDriver:
        try:
            if platform.is_device:
                logger.info("Opening %s session on device %s", platform.value, device_id or "<default>")
                return self._device_builder(
                    self._settings, platform, device_id, server or self._settings.appium_server
                )
            logger.info("Opening browser session")
            return self._page_builder(self._settings)
        except DriverUnavailableError:
            raise
        except Exception as exc:
            raise DriverUnavailableError(f"{platform.value} driver unavailable: {exc}") from exc
