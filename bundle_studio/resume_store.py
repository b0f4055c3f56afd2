"""
bundle_studio/resume_store.py
-----------------------------------------------------------------------------
Tiny key / value store standing in for the browser's local storage.

The reconciler only keeps a resume pointer here (the id of the last linked
bundle), never session content.  Values are kept in a single JSON object on
disk so they survive a restart of the service.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Key holding the id of the last linked bundle.
RESUME_KEY = "currentBundle"


class ResumeStore:
    """
    JSON-file backed string store.

    A missing file reads as empty.  An unreadable or malformed file also
    reads as empty (with a warning) so a damaged state file never blocks
    startup; the next write replaces it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: expected a JSON object", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def get(self, key: str) -> str | None:
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def remove(self, key: str) -> None:
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)
