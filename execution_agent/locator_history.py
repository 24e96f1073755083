"""Append-only history of the locators captured for recorded interactions."""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from execution_agent.locators import LocatorBundle

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


class LocatorHistoryStore:
    """One JSON-lines file per app package, keyed by element fingerprint."""

    def __init__(self, directory: str, enabled: bool = True) -> None:
        self.directory = Path(directory)
        self.enabled = enabled

    def _path(self, package: Optional[str]) -> Path:
        name = _UNSAFE_CHARS.sub("_", package or "global")
        return self.directory / f"{name}.jsonl"

    def append(
        self,
        package: Optional[str],
        bundle: LocatorBundle,
        snapshot_id: Optional[str] = None,
        element: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Store ``bundle``; returns ``False`` when disabled or unfingerprinted."""

        if not self.enabled or not bundle.fingerprint:
            return False
        record: Dict[str, Any] = {
            "ts": time.time(),
            "fingerprint": bundle.fingerprint,
            "best": bundle.primary.to_dict(),
            "locator_bundle": bundle.to_dict(),
            "snapshot_id": snapshot_id,
            "reliability_score": bundle.reliability_score,
            "element": element,
        }
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self._path(package), "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")
        return True

    def recent(self, package: Optional[str], fingerprint: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Records for ``fingerprint``, newest first."""

        if not self.enabled:
            return []
        path = self._path(package)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as handle:
            lines = [line for line in handle.read().splitlines() if line.strip()]
        found: List[Dict[str, Any]] = []
        for line in reversed(lines):
            if len(found) >= limit:
                break
            try:
                record = json.loads(line)
            except ValueError:
                logger.debug("Skipping unreadable history line in %s", path)
                continue
            if record.get("fingerprint") == fingerprint:
                found.append(record)
        return found
