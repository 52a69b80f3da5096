"""Data models for the diary persistence layer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

BUNDLE_VERSION = 1

EntryRecord = dict[str, Any]


def _byte_list(raw: Any, name: str) -> list[int] | None:
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in raw
    ):
        raise ValueError(f"bundle field {name!r} must be a list of byte values")
    return list(raw)


@dataclass
class CipherBundle:
    """Envelope describing how (or whether) the entry collection is sealed.

    ``mode="plain"`` means ``data`` is the JSON entry array itself;
    ``mode="gcm"`` means ``data`` is base64 ciphertext and ``iv``, ``salt``
    and ``iterations`` are needed to open it.
    """

    mode: str  # 'gcm' | 'plain'
    data: str
    version: int = BUNDLE_VERSION
    iv: list[int] | None = None
    salt: list[int] | None = None
    iterations: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode, "version": self.version, "data": self.data}
        if self.iv is not None:
            out["iv"] = list(self.iv)
        if self.salt is not None:
            out["salt"] = list(self.salt)
        if self.iterations is not None:
            out["iter"] = self.iterations
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> CipherBundle:
        """Parse the wire shape.

        Raises:
            ValueError: If the mapping is not a structurally valid bundle.
        """
        if not isinstance(raw, Mapping):
            raise ValueError("bundle must be a JSON object")
        mode = raw.get("mode")
        data = raw.get("data")
        if not isinstance(mode, str):
            raise ValueError("bundle field 'mode' must be a string")
        if not isinstance(data, str):
            raise ValueError("bundle field 'data' must be a string")

        iterations = raw.get("iter")
        if iterations is not None and (
            isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1
        ):
            raise ValueError("bundle field 'iter' must be a positive integer")

        version = raw.get("version")
        if version is None:
            version = BUNDLE_VERSION
        elif isinstance(version, bool) or not isinstance(version, int):
            raise ValueError("bundle field 'version' must be an integer")

        return cls(
            mode=mode,
            data=data,
            version=version,
            iv=_byte_list(raw.get("iv"), "iv"),
            salt=_byte_list(raw.get("salt"), "salt"),
            iterations=iterations,
        )


@dataclass
class DiarySettings:
    """User-facing diary settings stored under the ``settings`` meta key.

    Persisted with camelCase keys. Loading merges field by field over the
    defaults, so older or partial records still produce a full object.
    """

    quick_mode: bool = True
    encryption: bool = False
    kdf_strong: bool = False
    compact_pdf: bool = False

    _WIRE_KEYS = {
        "quick_mode": "quickMode",
        "encryption": "encryption",
        "kdf_strong": "kdfStrong",
        "compact_pdf": "compactPdf",
    }

    def to_dict(self) -> dict[str, bool]:
        return {self._WIRE_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}

    def merged(self, partial: Mapping[str, Any] | DiarySettings | None) -> DiarySettings:
        """Return a copy with every well-typed field of ``partial`` applied."""
        if partial is None:
            return DiarySettings(**{f.name: getattr(self, f.name) for f in fields(self)})
        if isinstance(partial, DiarySettings):
            partial = partial.to_dict()
        values: dict[str, Any] = {}
        for f in fields(self):
            raw = partial.get(self._WIRE_KEYS[f.name]) if isinstance(partial, Mapping) else None
            values[f.name] = raw if isinstance(raw, bool) else getattr(self, f.name)
        return DiarySettings(**values)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | DiarySettings | None) -> DiarySettings:
        return cls().merged(raw)


@dataclass
class LoadResult:
    """Outcome of loading the entry collection.

    ``locked=True`` means data exists but could not be opened with the
    given passphrase; ``entries`` is then always empty.
    """

    entries: list[EntryRecord] = field(default_factory=list)
    locked: bool = False


class SaveOutcome(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"
    SKIP = "skip"


class MigrationOutcome(str, Enum):
    ALREADY_DONE = "already_done"
    COMPLETED = "completed"
    FAILED = "failed"
