"""Shared thread pool for blocking Selenium and Appium calls."""

from __future__ import annotations

import asyncio
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")

_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    """Return a lazily initialised thread pool for blocking driver work."""

    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            max_workers = int(os.getenv("RUNNER_MAX_WORKERS", "8"))
            _EXECUTOR = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="agent-driver"
            )
    return _EXECUTOR


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``func`` in the shared pool without blocking the event loop."""

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_get_executor(), partial(func, *args, **kwargs))
