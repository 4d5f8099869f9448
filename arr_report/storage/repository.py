"""
Repository pattern for the sync snapshot.

A snapshot store turns the persisted document into a SyncSnapshot and back.
Reads are total: a missing, corrupt or wrong-version document reads as an
empty snapshot. Writes replace the whole document in one step.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection
from .models import SyncSnapshot

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_KEY = "ledger-sync-snapshot"


class KeyValueBackend(Protocol):
    """Durable byte store contract."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...


class SnapshotStore(Protocol):
    """Read/write contract of the sync snapshot persistence."""

    def read(self) -> SyncSnapshot:
        ...

    def write(self, snapshot: SyncSnapshot) -> None:
        ...


def encode_snapshot(snapshot: SyncSnapshot) -> bytes:
    return json.dumps(snapshot.to_dict(), separators=(",", ":")).encode("utf-8")


def decode_snapshot(raw: Optional[bytes]) -> SyncSnapshot:
    """Decode a persisted document, yielding an empty snapshot when unusable."""
    if not raw:
        return SyncSnapshot()
    try:
        return SyncSnapshot.from_dict(json.loads(raw.decode("utf-8")))
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("Discarding unreadable sync snapshot: %s", e)
        return SyncSnapshot()


class SqliteKeyValueBackend:
    """Durable key/value table in SQLite.

    Survives process restarts; several processes may share one file, with
    last-writer-wins semantics per key.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def get(self, key: str) -> Optional[bytes]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
            return bytes(row[0]) if row else None
        finally:
            conn.close()

    def set(self, key: str, value: bytes) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class MemoryKeyValueBackend:
    """In-process key/value backend, mainly for tests."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)


class KeyValueSnapshotStore:
    """Snapshot store over a durable key/value backend."""

    def __init__(self, backend: KeyValueBackend, key: str = DEFAULT_SNAPSHOT_KEY):
        self.backend = backend
        self.key = key

    def read(self) -> SyncSnapshot:
        try:
            raw = self.backend.get(self.key)
        except Exception as e:
            logger.warning("Snapshot backend read failed, treating as empty: %s", e)
            return SyncSnapshot()
        return decode_snapshot(raw)

    def write(self, snapshot: SyncSnapshot) -> None:
        self.backend.set(self.key, encode_snapshot(snapshot))


class JsonFileSnapshotStore:
    """Instance-local JSON file store.

    Writes go to a temporary file in the same directory that is then renamed
    over the target, so readers see either the old or the new document.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> SyncSnapshot:
        try:
            raw = self.path.read_bytes()
        except OSError:
            return SyncSnapshot()
        return decode_snapshot(raw)

    def write(self, snapshot: SyncSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(encode_snapshot(snapshot))
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()
