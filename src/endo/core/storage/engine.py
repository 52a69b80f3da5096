"""SQLite-backed key-value engine for the Endo diary.

Handles connection lifecycle, versioned schema upgrades, and atomic
transactions over named tables. Each table stores JSON records keyed by a
declared key field.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StorageError(Exception):
    """Raised when storage operations fail."""


class EngineUnavailable(StorageError):
    """Raised when the host cannot provide persistent storage."""


class TransactionAborted(StorageError):
    """Raised when a transaction is rolled back."""


@dataclass(frozen=True)
class TableSpec:
    """Schema entry for one table: which record field is the key."""

    key_path: str
    auto_increment: bool = False


def _table_ddl(name: str, spec: TableSpec) -> str:
    if spec.auto_increment:
        return (
            f'CREATE TABLE IF NOT EXISTS "{name}" '
            "(record_key INTEGER PRIMARY KEY AUTOINCREMENT, record TEXT NOT NULL)"
        )
    return f'CREATE TABLE IF NOT EXISTS "{name}" (record_key NOT NULL PRIMARY KEY, record TEXT NOT NULL)'


def _check_key(key: Any) -> Any:
    if isinstance(key, bool) or not isinstance(key, (str, int, float)):
        raise StorageError(f"Invalid key: {key!r}")
    return key


class TransactionTable:
    """Synchronous view of one table inside a running transaction."""

    def __init__(self, conn: sqlite3.Connection, name: str, spec: TableSpec) -> None:
        self._conn = conn
        self.name = name
        self._spec = spec

    def get(self, key: Any) -> dict[str, Any] | None:
        row = self._conn.execute(
            f'SELECT record FROM "{self.name}" WHERE record_key = ?', (_check_key(key),)
        ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def put(self, record: Mapping[str, Any]) -> Any:
        """Insert or replace a record and return its key."""
        if not isinstance(record, Mapping):
            raise StorageError(f"Record for {self.name!r} must be a mapping")
        record = dict(record)
        key_path = self._spec.key_path
        key = record.get(key_path)

        if key is None and self._spec.auto_increment:
            cursor = self._conn.execute(
                f'INSERT INTO "{self.name}" (record) VALUES (?)', ("{}",)
            )
            key = cursor.lastrowid
            record[key_path] = key
            self._conn.execute(
                f'UPDATE "{self.name}" SET record = ? WHERE record_key = ?',
                (json.dumps(record, separators=(",", ":")), key),
            )
            return key

        if key is None:
            raise StorageError(f"Record for {self.name!r} is missing key field {key_path!r}")
        self._conn.execute(
            f'INSERT OR REPLACE INTO "{self.name}" (record_key, record) VALUES (?, ?)',
            (_check_key(key), json.dumps(record, separators=(",", ":"))),
        )
        return key

    def bulk_put(self, records: Iterable[Mapping[str, Any]]) -> list[Any]:
        return [self.put(record) for record in records]

    def delete(self, key: Any) -> None:
        self._conn.execute(f'DELETE FROM "{self.name}" WHERE record_key = ?', (_check_key(key),))

    def clear(self) -> None:
        self._conn.execute(f'DELETE FROM "{self.name}"')

    def to_array(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(f'SELECT record FROM "{self.name}" ORDER BY record_key').fetchall()
        return [json.loads(row[0]) for row in rows]

    def count(self) -> int:
        return self._conn.execute(f'SELECT COUNT(*) FROM "{self.name}"').fetchone()[0]


class Transaction:
    """Scope handed to a transaction callback.

    Only the tables named when the transaction was started are reachable.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        schema: Mapping[str, TableSpec],
        table_names: frozenset[str],
    ) -> None:
        self._conn = conn
        self._schema = schema
        self._names = table_names

    def table(self, name: str) -> TransactionTable:
        if name not in self._names:
            raise StorageError(f"Table {name!r} is not part of this transaction")
        return TransactionTable(self._conn, name, self._schema[name])


class Table:
    """Async facade over one table; every call is its own transaction."""

    def __init__(self, engine: KeyValueEngine, name: str) -> None:
        self._engine = engine
        self.name = name

    async def get(self, key: Any) -> dict[str, Any] | None:
        return await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).get(key))

    async def put(self, record: Mapping[str, Any]) -> Any:
        return await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).put(record))

    async def bulk_put(self, records: Iterable[Mapping[str, Any]]) -> list[Any]:
        records = list(records)
        if not records:
            return []
        return await self._engine.transaction(
            (self.name,), lambda tx: tx.table(self.name).bulk_put(records)
        )

    async def delete(self, key: Any) -> None:
        await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).delete(key))

    async def clear(self) -> None:
        await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).clear())

    async def to_array(self) -> list[dict[str, Any]]:
        return await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).to_array())

    async def count(self) -> int:
        return await self._engine.transaction((self.name,), lambda tx: tx.table(self.name).count())


class KeyValueEngine:
    """Versioned SQLite database exposing named key-value tables.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing. One engine instance holds one
    connection; pass the instance to whatever needs storage.

    Usage::

        engine = KeyValueEngine("~/.endo/diary.db")
        engine.declare_schema(1, {"meta": TableSpec("key")})
        await engine.table("meta").put({"key": "version", "value": 1})
        record = await engine.table("meta").get("version")
        engine.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize engine.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._version = 0
        self._schema: dict[str, TableSpec] = {}
        self._conn: sqlite3.Connection | None = None
        self._opening: asyncio.Future[None] | None = None
        self._lock = threading.RLock()
        self._version_handlers: list[Callable[[], None]] = []

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def declare_schema(self, version: int, tables: Mapping[str, TableSpec]) -> None:
        """Declare the schema version and tables. Must precede the first open.

        Raises:
            StorageError: If the database is already open.
            ValueError: If the version or a table name is invalid.
        """
        if self._conn is not None or self._opening is not None:
            raise StorageError("Schema must be declared before the database is opened")
        if version < 1:
            raise ValueError(f"Schema version must be >= 1, got {version}")
        for name in tables:
            if not _TABLE_NAME.match(name):
                raise ValueError(f"Invalid table name: {name!r}")
        self._version = int(version)
        self._schema = dict(tables)

    def table(self, name: str) -> Table:
        if name not in self._schema:
            raise StorageError(f"Unknown table: {name!r}")
        return Table(self, name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open (or upgrade) the database. Concurrent callers share one open.

        Raises:
            EngineUnavailable: If the storage file cannot be used at all.
            StorageError: If the stored schema is newer than the declared one.
        """
        if self._conn is not None:
            return
        if self._opening is None:
            self._opening = asyncio.ensure_future(asyncio.to_thread(self._connect))
        opening = self._opening
        try:
            await opening
        finally:
            if self._opening is opening and opening.done():
                self._opening = None

    def _connect(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if not self._schema:
                raise StorageError("No schema declared. Call declare_schema() first.")

            try:
                if self._db_path != ":memory:":
                    db_file = Path(self._db_path).expanduser()
                    db_file.parent.mkdir(parents=True, exist_ok=True)
                    conn = sqlite3.connect(
                        str(db_file), isolation_level=None, check_same_thread=False
                    )
                else:
                    conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL")
                stored_version = conn.execute("PRAGMA user_version").fetchone()[0]
            except (OSError, sqlite3.Error) as exc:
                raise EngineUnavailable(f"Persistent storage unavailable: {exc}") from exc

            try:
                self._ensure_schema(conn, stored_version)
            except Exception:
                conn.close()
                raise

            self._conn = conn
            logger.info("Diary database opened: %s (schema v%d)", self._db_path, self._version)

    def _ensure_schema(self, conn: sqlite3.Connection, stored_version: int) -> None:
        """Create missing tables and bump the stored version if behind."""
        if stored_version > self._version:
            raise StorageError(
                f"Database schema v{stored_version} is newer than this build (v{self._version})"
            )
        if stored_version == self._version:
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
            for name, spec in self._schema.items():
                conn.execute(_table_ddl(name, spec))
            conn.execute(f"PRAGMA user_version = {self._version:d}")
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(f"Schema upgrade failed: {exc}") from exc
        logger.info("Schema updated from version %d to %d", stored_version, self._version)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Diary database closed")
        self._opening = None

    async def destroy(self) -> None:
        """Close the connection and delete the database files."""
        self.close()
        if self._db_path == ":memory:":
            return
        db_file = Path(self._db_path).expanduser()

        def _unlink() -> None:
            for path in (db_file, Path(f"{db_file}-wal"), Path(f"{db_file}-shm")):
                path.unlink(missing_ok=True)

        await asyncio.to_thread(_unlink)
        logger.warning("Deleted diary database: %s", self._db_path)

    def on_version_change(self, handler: Callable[[], None]) -> None:
        """Register a callback run when another writer upgrades the schema."""
        self._version_handlers.append(handler)

    def off_version_change(self, handler: Callable[[], None]) -> None:
        if handler in self._version_handlers:
            self._version_handlers.remove(handler)

    def _handle_version_change(self) -> None:
        for handler in list(self._version_handlers):
            try:
                handler()
            except Exception:
                logger.exception("Version change handler failed")
        self.close()

    async def __aenter__(self) -> KeyValueEngine:
        await self.open()
        return self

    async def __aexit__(self, *args) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def transaction(self, table_names: Iterable[str], fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` inside one atomic transaction over ``table_names``.

        Opens the database first if needed. ``fn`` runs in a worker thread
        and must be synchronous.

        Raises:
            TransactionAborted: If ``fn`` or the commit fails; nothing is kept.
        """
        names = frozenset(table_names)
        unknown = names - self._schema.keys()
        if unknown:
            raise StorageError(f"Unknown table(s): {sorted(unknown)}")
        await self.open()
        return await asyncio.to_thread(self._run_transaction, names, fn)

    def _run_transaction(self, names: frozenset[str], fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise TransactionAborted("Database connection was closed")

            try:
                stored_version = conn.execute("PRAGMA user_version").fetchone()[0]
            except sqlite3.Error as exc:
                raise TransactionAborted(f"Could not read schema version: {exc}") from exc
            if stored_version > self._version:
                logger.warning(
                    "Database upgraded to v%d by another writer; closing connection",
                    stored_version,
                )
                self._handle_version_change()
                raise TransactionAborted("Database was upgraded by another writer")

            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(Transaction(conn, self._schema, names))
                conn.execute("COMMIT")
            except Exception as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.debug("Transaction on %s rolled back: %s", sorted(names), exc)
                raise TransactionAborted(f"Transaction on {sorted(names)} aborted: {exc}") from exc
            return result
