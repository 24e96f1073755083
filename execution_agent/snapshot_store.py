"""Content-addressed, gzip-compressed store of UI hierarchy snapshots."""

from __future__ import annotations

import gzip
import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from execution_agent.hierarchy import UIHierarchySnapshot, parse_snapshot

logger = logging.getLogger(__name__)

_SNAPSHOT_ID = re.compile(r"^[0-9a-f]{64}$")


class SnapshotStore:
    """Keeps the most recent ``retention`` snapshots on disk.

    Files are named after the SHA-256 of the normalised XML, so saving the
    same hierarchy twice stores it once.
    """

    def __init__(self, directory: str, retention: int = 200) -> None:
        self.directory = Path(directory)
        self.retention = retention

    def _path(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}.xml.gz"

    def save(self, snapshot: UIHierarchySnapshot) -> str:
        snapshot_id = snapshot.snapshot_id
        path = self._path(snapshot_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        if path.exists():
            os.utime(path)
        else:
            tmp_path = path.with_suffix(".tmp")
            with gzip.open(tmp_path, "wt", encoding="utf-8") as handle:
                handle.write(snapshot.xml)
            os.replace(tmp_path, path)
        self._prune()
        return snapshot_id

    def load(self, snapshot_id: str) -> Optional[UIHierarchySnapshot]:
        if not _SNAPSHOT_ID.match(snapshot_id or ""):
            return None
        path = self._path(snapshot_id)
        if not path.exists():
            return None
        with gzip.open(path, "rt", encoding="utf-8") as handle:
            xml = handle.read()
        return parse_snapshot(xml, captured_at=path.stat().st_mtime)

    def ids(self) -> List[str]:
        """Stored snapshot ids, newest first."""

        if not self.directory.exists():
            return []
        files = sorted(
            self.directory.glob("*.xml.gz"),
            key=lambda item: item.stat().st_mtime,
            reverse=True,
        )
        return [item.name[: -len(".xml.gz")] for item in files]

    def _prune(self) -> None:
        for stale in self.ids()[self.retention:]:
            try:
                self._path(stale).unlink()
            except FileNotFoundError:
                continue
            logger.debug("Pruned snapshot %s", stale)
