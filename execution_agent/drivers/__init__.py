"""Page and device backends."""

from execution_agent.drivers.base import (
    DeviceDriver,
    DriverError,
    DriverUnavailableError,
    PageDriver,
    is_device_driver,
)
from execution_agent.drivers.factory import DriverFactory

__all__ = [
    "DeviceDriver",
    "DriverError",
    "DriverFactory",
    "DriverUnavailableError",
    "PageDriver",
    "is_device_driver",
]
