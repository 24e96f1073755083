"""Root logger setup for an unattended agent process.

Reads ``AGENT_LOG_LEVEL`` (name or number, ``INFO`` when missing or unknown),
``AGENT_LOG_FILE`` (optional, rotated) and ``AGENT_LOG_MAX_BYTES``.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Mapping, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty at DEBUG; held at INFO so step logs stay readable.
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "selenium.webdriver.remote")

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_installed: List[logging.Handler] = []


def resolve_level(value: Optional[str]) -> int:
    if not value or not value.strip():
        return logging.INFO
    value = value.strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def _max_bytes(raw: Optional[str]) -> int:
    try:
        return max(0, int(raw)) if raw else _DEFAULT_MAX_BYTES
    except ValueError:
        return _DEFAULT_MAX_BYTES


def _handlers(log_file: Optional[str], max_bytes: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=_BACKUP_COUNT, encoding="utf-8")
        )
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(force: bool = False, env: Optional[Mapping[str, str]] = None) -> None:
    """Install the agent's handlers on the root logger.

    Only handlers installed by an earlier call are replaced, so handlers
    added by a host process (uvicorn, a test runner) keep working.
    """

    if _installed and not force:
        return
    env = os.environ if env is None else env

    level = resolve_level(env.get("AGENT_LOG_LEVEL"))
    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed[:] = _handlers(env.get("AGENT_LOG_FILE"), _max_bytes(env.get("AGENT_LOG_MAX_BYTES")))
    for handler in _installed:
        root.addHandler(handler)
    root.setLevel(level)

    if level <= logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)
