"""Environment driven settings for the execution agent."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_API_BASE_URL = "http://localhost:8000/agent-api"
DEFAULT_APPIUM_SERVER = "http://localhost:4723"


def _truthy(value: Optional[str]) -> bool:
    """Return ``True`` when ``value`` represents a truthy string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _default_data_dir(name: str) -> str:
    local_app_data = os.getenv("LOCALAPPDATA")
    if os.name == "nt" and local_app_data:
        base = Path(local_app_data) / "execution-agent"
    else:
        base = Path.home() / ".execution-agent"
    return str(base / name)


def _default_snapshot_dir() -> str:
    return _default_data_dir("snapshots")


def _default_history_dir() -> str:
    return _default_data_dir("locator-history")


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class AgentSettings:
    """Runtime configuration of one agent process."""

    api_base_url: str = DEFAULT_API_BASE_URL
    api_token: str = ""
    heartbeat_interval: float = 30.0
    poll_interval: float = 5.0
    poll_backoff_max: float = 60.0
    max_capacity: int = 3
    request_timeout: float = 15.0
    reports_folder: str = "./reports"
    headless: bool = True
    selenium_remote_url: Optional[str] = None
    appium_server: str = DEFAULT_APPIUM_SERVER
    step_timeout_ms: int = 7000
    locator_poll_ms: int = 250
    healing_threshold: int = 60
    snapshot_dir: str = field(default_factory=_default_snapshot_dir)
    snapshot_retention: int = 200
    history_dir: str = field(default_factory=_default_history_dir)
    history_enabled: bool = True
    local_token: Optional[str] = None
    local_platform: str = "android"
    local_device_id: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AgentSettings":
        """Build settings from ``env`` (defaults to ``os.environ`` plus ``.env``)."""

        if env is None:
            load_dotenv()
            env = os.environ

        return cls(
            api_base_url=(env.get("AGENT_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/"),
            api_token=env.get("AGENT_API_TOKEN", ""),
            heartbeat_interval=_read_float(env, "AGENT_HEARTBEAT_INTERVAL", 30.0, minimum=1.0),
            poll_interval=_read_float(env, "AGENT_POLL_INTERVAL", 5.0, minimum=0.1),
            poll_backoff_max=_read_float(env, "AGENT_POLL_BACKOFF_MAX", 60.0, minimum=0.1),
            max_capacity=_read_int(env, "AGENT_MAX_CAPACITY", 3, minimum=1),
            request_timeout=_read_float(env, "AGENT_REQUEST_TIMEOUT", 15.0, minimum=1.0),
            reports_folder=env.get("AGENT_REPORTS_FOLDER") or "./reports",
            headless=_truthy(env.get("AGENT_HEADLESS", "true")),
            selenium_remote_url=env.get("SELENIUM_REMOTE_URL") or None,
            appium_server=env.get("APPIUM_SERVER") or DEFAULT_APPIUM_SERVER,
            step_timeout_ms=_read_int(env, "AGENT_STEP_TIMEOUT_MS", 7000),
            locator_poll_ms=_read_int(env, "AGENT_LOCATOR_POLL_MS", 250, minimum=10),
            healing_threshold=_read_int(env, "AGENT_HEALING_THRESHOLD", 60),
            snapshot_dir=env.get("AGENT_SNAPSHOT_DIR") or _default_snapshot_dir(),
            snapshot_retention=_read_int(env, "AGENT_SNAPSHOT_RETENTION", 200, minimum=1),
            history_dir=env.get("AGENT_LOCATOR_HISTORY_DIR") or _default_history_dir(),
            history_enabled=_truthy(env.get("AGENT_LOCATOR_HISTORY", "true")),
            local_token=env.get("AGENT_LOCAL_TOKEN") or None,
            local_platform=env.get("AGENT_LOCAL_PLATFORM") or "android",
            local_device_id=env.get("AGENT_LOCAL_DEVICE_ID") or None,
        )
