"""State Store — last-applied records per resource identity, backed by SQLite.

Design:
- One row per identity; every write is a single ``BEGIN IMMEDIATE``
  transaction, so a crash leaves either the old or the new row.
- Writes to the same identity are serialised by a per-identity lock;
  ``expected_version`` gives compare-and-swap across processes.
- ``serial`` increases with every write; ``lineage`` identifies the state.
- A coarse state lock keeps two applies off the same state.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from strataform.errors import StateConflictError
from strataform.models.document import ResourceMode
from strataform.models.state import (
    STATE_FORMAT_VERSION,
    LockInfo,
    StateDocument,
    StateRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RESOURCES = """
CREATE TABLE IF NOT EXISTS resources (
    identity              TEXT PRIMARY KEY,
    mode                  TEXT NOT NULL,
    resource_type         TEXT NOT NULL,
    provider              TEXT NOT NULL,
    resource_id           TEXT NOT NULL,
    arguments_json        TEXT NOT NULL DEFAULT '{}',
    attributes_json       TEXT NOT NULL DEFAULT '{}',
    dependencies_json     TEXT NOT NULL DEFAULT '[]',
    create_before_destroy INTEGER NOT NULL DEFAULT 0,
    schema_version        INTEGER NOT NULL DEFAULT 0,
    version               INTEGER NOT NULL,
    updated_at            TEXT NOT NULL
);
"""

_CREATE_META = """
CREATE TABLE IF NOT EXISTS state_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_CREATE_LOCK = """
CREATE TABLE IF NOT EXISTS state_lock (
    id          INTEGER PRIMARY KEY CHECK (id = 1),
    lock_id     TEXT NOT NULL,
    owner       TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);
"""

_COLUMNS = (
    "identity, mode, resource_type, provider, resource_id, arguments_json, "
    "attributes_json, dependencies_json, create_before_destroy, schema_version, "
    "version, updated_at"
)


class StateStore:
    """Persistent, transactional store of ``StateRecord`` objects.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    busy_timeout:
        Seconds SQLite waits for another writer before giving up.
    """

    def __init__(self, db_path: Path, *, busy_timeout: float = 30.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout
        self._locks: dict[str, tuple[threading.Lock, int]] = {}  # identity -> (lock, holders)
        self._locks_guard = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(_CREATE_RESOURCES)
            conn.execute(_CREATE_META)
            conn.execute(_CREATE_LOCK)
            conn.execute(
                "INSERT OR IGNORE INTO state_meta (key, value) VALUES ('lineage', ?)",
                (str(uuid.uuid4()),),
            )
            conn.execute("INSERT OR IGNORE INTO state_meta (key, value) VALUES ('serial', '0')")
            conn.execute("INSERT OR IGNORE INTO state_meta (key, value) VALUES ('outputs', '{}')")
            conn.execute(
                "INSERT OR IGNORE INTO state_meta (key, value) VALUES ('format_version', ?)",
                (str(STATE_FORMAT_VERSION),),
            )

    @contextmanager
    def _identity_lock(self, identity: str) -> Iterator[None]:
        """Hold the lock for *identity*; it is dropped once nobody wants it."""
        with self._locks_guard:
            lock, holders = self._locks.get(identity, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[identity] = (lock, holders + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, holders = self._locks[identity]
                if holders == 1:
                    del self._locks[identity]
                else:
                    self._locks[identity] = (lock, holders - 1)

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def get(self, identity: str) -> StateRecord | None:
        """Return the record for *identity*, or ``None`` if not yet created."""
        with self._reader() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM resources WHERE identity = ?", (identity,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_records(self) -> list[StateRecord]:
        """Every record, ordered by identity."""
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM resources ORDER BY identity ASC"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def identities(self) -> list[str]:
        return [r.address for r in self.list_records()]

    def put(
        self,
        identity: str,
        record: StateRecord,
        *,
        expected_version: int | None = None,
    ) -> StateRecord:
        """Write *record* under *identity* atomically.

        ``expected_version`` is the version the caller last read (``0``
        meaning "must not exist yet"); a mismatch raises
        ``StateConflictError``. Returns the stored record with its new
        version.
        """
        with self._identity_lock(identity), self._transaction() as conn:
            current = self._current_version(conn, identity)
            self._check_version(identity, current, expected_version)
            stored = record.model_copy(
                update={
                    "address": identity,
                    "version": (current or 0) + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._upsert(conn, stored)
            self._bump_serial(conn)
        logger.debug("State put %s (version %d)", identity, stored.version)
        return stored

    def put_replacing(
        self,
        identity: str,
        record: StateRecord,
        *,
        deposed_identity: str,
        expected_version: int | None = None,
    ) -> StateRecord:
        """Install a replacement and keep the original as a deposed record.

        Both rows change in one transaction.
        """
        with self._identity_lock(identity), self._transaction() as conn:
            current = self._current_version(conn, identity)
            self._check_version(identity, current, expected_version)
            if current is not None:
                original = self._row_to_record(
                    conn.execute(
                        f"SELECT {_COLUMNS} FROM resources WHERE identity = ?", (identity,)
                    ).fetchone()
                )
                if self._current_version(conn, deposed_identity) is not None:
                    raise StateConflictError(
                        "a deposed object is still pending destruction", address=identity
                    )
                self._upsert(
                    conn,
                    original.model_copy(update={"address": deposed_identity, "version": 1}),
                )
                conn.execute("DELETE FROM resources WHERE identity = ?", (identity,))
            stored = record.model_copy(
                update={
                    "address": identity,
                    "version": (current or 0) + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._upsert(conn, stored)
            self._bump_serial(conn)
        logger.debug("State replaced %s; original kept as %s", identity, deposed_identity)
        return stored

    def delete(self, identity: str, *, expected_version: int | None = None) -> bool:
        """Remove the record for *identity*. Returns ``False`` if absent."""
        with self._identity_lock(identity), self._transaction() as conn:
            current = self._current_version(conn, identity)
            self._check_version(identity, current, expected_version)
            if current is None:
                return False
            conn.execute("DELETE FROM resources WHERE identity = ?", (identity,))
            self._bump_serial(conn)
        logger.debug("State delete %s", identity)
        return True

    @staticmethod
    def _current_version(conn: sqlite3.Connection, identity: str) -> int | None:
        row = conn.execute(
            "SELECT version FROM resources WHERE identity = ?", (identity,)
        ).fetchone()
        return row[0] if row else None

    @staticmethod
    def _check_version(identity: str, current: int | None, expected: int | None) -> None:
        if expected is None:
            return
        if (current or 0) != expected:
            raise StateConflictError(
                f"state record changed concurrently: expected version {expected}, "
                f"found {current or 0}",
                address=identity,
            )

    @staticmethod
    def _upsert(conn: sqlite3.Connection, record: StateRecord) -> None:
        conn.execute(
            f"""
            INSERT OR REPLACE INTO resources ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.address,
                record.mode.value,
                record.resource_type,
                record.provider,
                record.resource_id,
                json.dumps(record.arguments, sort_keys=True),
                json.dumps(record.attributes, sort_keys=True),
                json.dumps(record.dependencies),
                int(record.create_before_destroy),
                record.schema_version,
                record.version,
                record.updated_at.isoformat(),
            ),
        )

    @staticmethod
    def _bump_serial(conn: sqlite3.Connection) -> None:
        conn.execute(
            "UPDATE state_meta SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT) "
            "WHERE key = 'serial'"
        )

    # ------------------------------------------------------------------
    # Whole-state metadata
    # ------------------------------------------------------------------

    def _meta(self, key: str) -> str:
        with self._reader() as conn:
            row = conn.execute("SELECT value FROM state_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else ""

    @property
    def serial(self) -> int:
        return int(self._meta("serial") or 0)

    @property
    def lineage(self) -> str:
        return self._meta("lineage")

    def get_outputs(self) -> dict[str, Any]:
        return json.loads(self._meta("outputs") or "{}")

    def set_outputs(self, outputs: dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE state_meta SET value = ? WHERE key = 'outputs'",
                (json.dumps(outputs, sort_keys=True),),
            )

    def export_document(self) -> StateDocument:
        """The versioned, portable form of the whole state."""
        return StateDocument(
            format_version=STATE_FORMAT_VERSION,
            lineage=self.lineage,
            serial=self.serial,
            resources={r.address: r for r in self.list_records()},
            outputs=self.get_outputs(),
        )

    def import_document(self, document: StateDocument) -> int:
        """Replace every record and the outputs with those of *document*.

        An empty state adopts the document's lineage. Otherwise the
        lineages must match and the document must not be older than the
        current state. Returns the new serial.
        """
        if document.format_version != STATE_FORMAT_VERSION:
            raise StateConflictError(
                f"unsupported state format version {document.format_version}"
            )
        with self._transaction() as conn:
            lineage = conn.execute(
                "SELECT value FROM state_meta WHERE key = 'lineage'"
            ).fetchone()[0]
            serial = int(
                conn.execute("SELECT value FROM state_meta WHERE key = 'serial'").fetchone()[0]
            )
            empty = conn.execute("SELECT COUNT(*) FROM resources").fetchone()[0] == 0
            if document.lineage != lineage and not (empty and serial == 0):
                raise StateConflictError(
                    f"document has lineage {document.lineage}, state has lineage {lineage}"
                )
            if document.serial < serial:
                raise StateConflictError(
                    f"document serial {document.serial} is older than state serial {serial}"
                )
            new_serial = max(serial, document.serial) + 1
            conn.execute("DELETE FROM resources")
            for address, record in document.resources.items():
                self._upsert(conn, record.model_copy(update={"address": address}))
            conn.executemany(
                "UPDATE state_meta SET value = ? WHERE key = ?",
                [
                    (document.lineage, "lineage"),
                    (str(new_serial), "serial"),
                    (json.dumps(document.outputs, sort_keys=True), "outputs"),
                ],
            )
        logger.info(
            "Imported %d record(s) into %s at serial %d",
            len(document.resources), self._db_path, new_serial,
        )
        return new_serial

    # ------------------------------------------------------------------
    # Coarse state lock
    # ------------------------------------------------------------------

    def acquire_lock(self, owner: str) -> str:
        """Take the state lock. Raises ``StateConflictError`` if held."""
        lock_id = uuid.uuid4().hex
        with self._transaction() as conn:
            row = conn.execute("SELECT lock_id, owner, acquired_at FROM state_lock").fetchone()
            if row is not None:
                raise StateConflictError(
                    f"state is locked by {row[1]!r} since {row[2]} (lock id {row[0]})"
                )
            conn.execute(
                "INSERT INTO state_lock (id, lock_id, owner, acquired_at) VALUES (1, ?, ?, ?)",
                (lock_id, owner, datetime.now(timezone.utc).isoformat()),
            )
        logger.debug("State lock %s acquired by %s", lock_id, owner)
        return lock_id

    def release_lock(self, lock_id: str) -> None:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM state_lock WHERE lock_id = ?", (lock_id,))
            if cur.rowcount == 0:
                raise StateConflictError(f"state lock {lock_id} is not held")
        logger.debug("State lock %s released", lock_id)

    def force_unlock(self) -> bool:
        """Remove any lock regardless of holder. Returns ``True`` if one existed."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM state_lock")
            removed = cur.rowcount > 0
        if removed:
            logger.warning("State lock forcibly removed from %s", self._db_path)
        return removed

    def lock_info(self) -> LockInfo | None:
        with self._reader() as conn:
            row = conn.execute("SELECT lock_id, owner, acquired_at FROM state_lock").fetchone()
        if row is None:
            return None
        return LockInfo(lock_id=row[0], owner=row[1], acquired_at=row[2])

    @contextmanager
    def locked(self, owner: str) -> Iterator[str]:
        """Hold the state lock for the duration of the block."""
        lock_id = self.acquire_lock(owner)
        try:
            yield lock_id
        finally:
            self.release_lock(lock_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: tuple) -> StateRecord:
        """Convert a SQLite row tuple to a StateRecord."""
        (
            identity,
            mode,
            resource_type,
            provider,
            resource_id,
            arguments_json,
            attributes_json,
            dependencies_json,
            create_before_destroy,
            schema_version,
            version,
            updated_at,
        ) = row
        return StateRecord(
            address=identity,
            mode=ResourceMode(mode),
            resource_type=resource_type,
            provider=provider,
            resource_id=resource_id,
            arguments=json.loads(arguments_json),
            attributes=json.loads(attributes_json),
            dependencies=json.loads(dependencies_json),
            create_before_destroy=bool(create_before_destroy),
            schema_version=schema_version,
            version=version,
            updated_at=updated_at,
        )
