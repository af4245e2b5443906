"""User preferences persisted in ``.folio/preferences.json``.

Reads go to disk every time so that a preference changed by one process
(``folio rescrape --force``) is seen by another (a long-running
scheduler).  Writes merge into the current file under :func:`file_lock`,
keep the previous version as ``preferences.json.bak`` and replace the file
atomically.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any

from folio.filelock import file_lock

logger = logging.getLogger(__name__)

# "cut" moves imported files into the library; "copy" leaves the source alone.
DEFAULTS: dict[str, Any] = {
    "source_file_operation": "cut",
    "allow_routine_match": True,
    "last_rematch_time": 0,
}


class Preferences:
    """JSON-file preference store with defaults."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Corrupt %s; falling back to defaults", self.path.name)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Any:
        """Stored value for *key*, else its default (``None`` if unknown)."""
        return self._read().get(key, DEFAULTS.get(key))

    def all(self) -> dict[str, Any]:
        return {**DEFAULTS, **self._read()}

    def set(self, values: dict[str, Any]) -> None:
        """Merge *values* into the file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(self.path):
            data = self._read()
            data.update(values)
            if self.path.exists():
                shutil.copy2(self.path, self.path.with_suffix(".json.bak"))
            tmp = self.path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.path)
        logger.debug("Preferences updated: %s", ", ".join(sorted(values)))
