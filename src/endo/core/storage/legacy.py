"""Legacy flat key-value store read once during migration.

Before the SQLite data bank, the diary kept three JSON strings in a flat
string store: settings, the entry array, and the cipher bundle.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

LEGACY_ENTRIES_KEY = "endo_mini_v1_data"
LEGACY_SETTINGS_KEY = "endo_mini_v1_settings"
LEGACY_BUNDLE_KEY = "endo_mini_v1_cipher"


@runtime_checkable
class LegacyStore(Protocol):
    """Simple string key-value store (the shape of browser localStorage)."""

    def get_item(self, key: str) -> str | None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class JsonFileLegacyStore:
    """LegacyStore backed by a JSON object file of string values.

    A missing file reads as an empty store. The file is deleted once its
    last key is removed.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Legacy store %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Legacy store %s is not a JSON object", self._path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def get_item(self, key: str) -> str | None:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key not in data:
            return
        del data[key]
        self._write(data)

    def _write(self, data: dict[str, str]) -> None:
        if not data:
            self._path.unlink(missing_ok=True)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self._path)
