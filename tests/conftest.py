"""Shared test fixtures for Endo diary tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DB_PATH", str(tmp_path / "env-diary.db"))
    monkeypatch.setenv("LEGACY_STORE_PATH", str(tmp_path / "env-legacy.json"))
    monkeypatch.setenv("DIARY_PASSPHRASE", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from endo.core.storage.encryption import CryptoCodec  # noqa: E402
from endo.core.storage.engine import KeyValueEngine  # noqa: E402
from endo.core.storage.legacy import JsonFileLegacyStore  # noqa: E402
from endo.core.storage.persistence import PersistenceService  # noqa: E402


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    return tmp_path / "diary.db"


@pytest.fixture
def kv_engine(db_file: Path):
    """Create an unopened file-backed KeyValueEngine."""
    engine = KeyValueEngine(str(db_file))
    yield engine
    engine.close()


@pytest.fixture
def codec() -> CryptoCodec:
    return CryptoCodec()


@pytest.fixture
def legacy_store(tmp_path: Path) -> JsonFileLegacyStore:
    return JsonFileLegacyStore(tmp_path / "legacy_storage.json")


@pytest.fixture
def service(kv_engine: KeyValueEngine, codec: CryptoCodec, legacy_store: JsonFileLegacyStore):
    """Create a PersistenceService over a temp database and legacy store."""
    return PersistenceService(kv_engine, codec, legacy_store)
