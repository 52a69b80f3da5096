"""Diary persistence service — settings and entry collection storage.

The service mediates between the in-memory entry collection and the
key-value engine. It uses CryptoCodec to seal the whole collection when
encryption is on. It owns two tables:

* ``entries`` — one record per date, only while the diary is unencrypted.
* ``meta`` — ``settings``, ``enc_bundle`` and the migration ``version``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from endo.core.storage.encryption import (
    KDF_ITERATIONS_STRONG,
    KDF_ITERATIONS_WEAK,
    CryptoCodec,
)
from endo.core.storage.engine import KeyValueEngine, StorageError, TableSpec, Transaction
from endo.core.storage.legacy import (
    LEGACY_BUNDLE_KEY,
    LEGACY_ENTRIES_KEY,
    LEGACY_SETTINGS_KEY,
    LegacyStore,
)
from endo.core.storage.models import (
    CipherBundle,
    DiarySettings,
    EntryRecord,
    LoadResult,
    MigrationOutcome,
    SaveOutcome,
)

logger = logging.getLogger(__name__)

DB_VERSION = 1
MIGRATION_VERSION = 1
MIN_PASSPHRASE_LENGTH = 4

ENTRIES = "entries"
META = "meta"

DIARY_SCHEMA = {
    ENTRIES: TableSpec(key_path="date"),
    META: TableSpec(key_path="key"),
}

SETTINGS_KEY = "settings"
BUNDLE_KEY = "enc_bundle"
VERSION_KEY = "version"


def sanitize_entries(raw: Any) -> list[EntryRecord]:
    """Drop malformed records and keep the first record per date.

    Anything that is not a mapping with a non-empty string ``date`` is
    discarded. Idempotent.
    """
    if not isinstance(raw, (list, tuple)):
        return []
    seen: set[str] = set()
    cleaned: list[EntryRecord] = []
    for record in raw:
        if not isinstance(record, Mapping):
            continue
        date = record.get("date")
        if not isinstance(date, str) or not date or date in seen:
            continue
        seen.add(date)
        cleaned.append(dict(record))
    return cleaned


def _passphrase_ok(passphrase: str | None) -> bool:
    return bool(passphrase) and len(passphrase) >= MIN_PASSPHRASE_LENGTH


class PersistenceService:
    """Load and save diary settings and entries, encrypted or not.

    Usage::

        engine = KeyValueEngine("~/.endo/diary.db")
        service = PersistenceService(engine, CryptoCodec())
        await service.migrate_from_legacy_storage()

        settings = await service.load_settings()
        result = await service.load_entries("passphrase", settings)
        if not result.locked:
            await service.save_entries(result.entries, "passphrase", settings)
    """

    def __init__(
        self,
        engine: KeyValueEngine,
        codec: CryptoCodec,
        legacy_store: LegacyStore | None = None,
    ) -> None:
        self._engine = engine
        self._codec = codec
        self._legacy = legacy_store
        engine.declare_schema(DB_VERSION, DIARY_SCHEMA)
        engine.on_version_change(
            lambda: logger.warning("Diary schema changed by another writer; connection closed")
        )

    @property
    def engine(self) -> KeyValueEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Meta helpers
    # ------------------------------------------------------------------

    async def _get_meta(self, key: str) -> Any:
        record = await self._engine.table(META).get(key)
        return record.get("value") if record is not None else None

    async def _put_meta(self, key: str, value: Any) -> None:
        await self._engine.table(META).put({"key": key, "value": value})

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def load_settings(self) -> DiarySettings:
        """Return persisted settings merged over the defaults."""
        stored = await self._get_meta(SETTINGS_KEY)
        return DiarySettings.from_dict(stored if isinstance(stored, Mapping) else None)

    async def save_settings(
        self, partial: Mapping[str, Any] | DiarySettings
    ) -> DiarySettings:
        """Merge ``partial`` over the current settings and persist the result.

        The legacy diary merged over the defaults instead, which reset any
        field a partial update left out.
        """
        current = await self.load_settings()
        updated = current.merged(partial)
        await self._put_meta(SETTINGS_KEY, updated.to_dict())
        logger.info("Saved diary settings (encryption=%s)", updated.encryption)
        return updated

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def has_bundle(self) -> bool:
        return await self._get_meta(BUNDLE_KEY) is not None

    async def load_entries(
        self,
        passphrase: str | None,
        settings: Mapping[str, Any] | DiarySettings | None = None,
    ) -> LoadResult:
        """Load the entry collection.

        A stored cipher bundle is authoritative: if one exists the
        collection is treated as encrypted regardless of ``settings``.

        Returns:
            ``LoadResult``. ``locked=True`` when the bundle could not be
            opened, including a passphrase that is too short to try.

        Raises:
            StorageError: If the database cannot be read.
        """
        raw_bundle = await self._get_meta(BUNDLE_KEY)
        if raw_bundle is None:
            entries = await self._engine.table(ENTRIES).to_array()
            return LoadResult(entries=sanitize_entries(entries), locked=False)

        if not _passphrase_ok(passphrase):
            logger.info("Entry collection is encrypted and no usable passphrase was given")
            return LoadResult(entries=[], locked=True)

        plaintext = await self._codec.decrypt(raw_bundle, passphrase)
        if plaintext is None:
            return LoadResult(entries=[], locked=True)
        try:
            decoded = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Decrypted bundle is not a JSON entry array: %s", exc)
            return LoadResult(entries=[], locked=True)
        return LoadResult(entries=sanitize_entries(decoded), locked=False)

    async def save_entries(
        self,
        entries: Iterable[Mapping[str, Any]],
        passphrase: str | None,
        settings: Mapping[str, Any] | DiarySettings | None = None,
    ) -> SaveOutcome:
        """Persist the whole entry collection.

        When encryption is requested but the passphrase is unusable the
        save is skipped; nothing is written and ``SaveOutcome.SKIP`` is
        returned.

        Raises:
            StorageError: If the write transaction fails.
        """
        current = DiarySettings.from_dict(settings)
        sanitized = sanitize_entries(list(entries))

        if current.encryption and not _passphrase_ok(passphrase):
            logger.warning("Encryption is on but the passphrase is unusable; save skipped")
            return SaveOutcome.SKIP

        if current.encryption:
            iterations = KDF_ITERATIONS_STRONG if current.kdf_strong else KDF_ITERATIONS_WEAK
            payload = json.dumps(sanitized, separators=(",", ":"))
            bundle = await self._codec.encrypt(payload.encode("utf-8"), passphrase, iterations)

            def _write_sealed(tx: Transaction) -> None:
                tx.table(META).put({"key": BUNDLE_KEY, "value": bundle.to_dict()})
                tx.table(ENTRIES).clear()

            await self._engine.transaction((META, ENTRIES), _write_sealed)
            if bundle.mode != "gcm":
                logger.warning("Saved %d entries in a plain bundle", len(sanitized))
                return SaveOutcome.PLAIN
            logger.info("Saved %d entries encrypted (%d KDF iterations)", len(sanitized), iterations)
            return SaveOutcome.ENCRYPTED

        def _write_plain(tx: Transaction) -> None:
            tx.table(META).delete(BUNDLE_KEY)
            entries_table = tx.table(ENTRIES)
            entries_table.clear()
            entries_table.bulk_put(sanitized)

        await self._engine.transaction((META, ENTRIES), _write_plain)
        logger.info("Saved %d entries unencrypted", len(sanitized))
        return SaveOutcome.PLAIN

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    async def migrate_from_legacy_storage(self) -> MigrationOutcome:
        """Import the legacy flat store once, then mark the database migrated.

        The ``version`` meta marker is written only after every step has
        succeeded; a failed run leaves no marker and is retried on the next
        startup. Legacy values that fail to parse are logged and skipped.
        """
        try:
            await self._engine.open()
        except StorageError:
            logger.exception("Diary database could not be opened for migration")
            return MigrationOutcome.FAILED

        try:
            if await self._get_meta(VERSION_KEY):
                return MigrationOutcome.ALREADY_DONE

            imported: list[str] = []
            if self._legacy is not None:
                imported = await self._import_legacy(self._legacy)
                for key in imported:
                    self._legacy.remove_item(key)

            await self._put_meta(VERSION_KEY, MIGRATION_VERSION)
        except (StorageError, OSError):
            logger.exception("Legacy migration failed; will retry on next start")
            return MigrationOutcome.FAILED

        logger.info("Legacy migration completed (imported keys: %s)", imported or "none")
        return MigrationOutcome.COMPLETED

    async def _import_legacy(self, legacy: LegacyStore) -> list[str]:
        """Copy whatever the legacy store holds; return the keys consumed."""
        imported: list[str] = []

        raw_settings = legacy.get_item(LEGACY_SETTINGS_KEY)
        raw_entries = legacy.get_item(LEGACY_ENTRIES_KEY)
        raw_bundle = legacy.get_item(LEGACY_BUNDLE_KEY)

        if raw_settings:
            try:
                parsed = json.loads(raw_settings)
            except json.JSONDecodeError as exc:
                logger.warning("Legacy settings could not be parsed: %s", exc)
            else:
                if isinstance(parsed, Mapping):
                    await self.save_settings(parsed)
                    imported.append(LEGACY_SETTINGS_KEY)

        if raw_bundle:
            try:
                parsed = json.loads(raw_bundle)
                bundle = CipherBundle.from_dict(parsed)
            except ValueError as exc:
                logger.warning("Legacy cipher bundle could not be parsed: %s", exc)
            else:

                def _write_bundle(tx: Transaction) -> None:
                    tx.table(META).put({"key": BUNDLE_KEY, "value": bundle.to_dict()})
                    tx.table(ENTRIES).clear()

                await self._engine.transaction((META, ENTRIES), _write_bundle)
                imported.append(LEGACY_BUNDLE_KEY)
                if raw_entries:
                    imported.append(LEGACY_ENTRIES_KEY)
        elif raw_entries:
            try:
                parsed = json.loads(raw_entries)
            except json.JSONDecodeError as exc:
                logger.warning("Legacy entries could not be parsed: %s", exc)
            else:
                sanitized = sanitize_entries(parsed)

                def _write_entries(tx: Transaction) -> None:
                    entries_table = tx.table(ENTRIES)
                    entries_table.clear()
                    entries_table.bulk_put(sanitized)

                await self._engine.transaction((ENTRIES,), _write_entries)
                imported.append(LEGACY_ENTRIES_KEY)

        return imported

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def clear_database(self) -> None:
        """Delete the whole diary database — nuclear option."""
        await self._engine.destroy()
        logger.warning("Diary database cleared")
