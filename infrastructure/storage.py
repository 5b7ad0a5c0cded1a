"""
Snapshot Store - SQLite persistence for workspace snapshots.

Stores:
- The working snapshot (auto-saved, restored on startup)
- An optional default-state snapshot (template for "reset")

Each slot is one row of a key/value table holding the snapshot JSON.

Failure policy:
- Writes never raise: sqlite3/OS errors are logged and reported as False.
- Reads never raise: a missing row, undecodable JSON or a version other
  than SNAPSHOT_VERSION loads as None. No migration is attempted.
"""
from typing import Callable, Optional
from pathlib import Path
import asyncio
import logging
import sqlite3

import msgspec

from core.ontology import SNAPSHOT_VERSION
from core.schemas import FlowSnapshot, deserialize_snapshot, now_utc, serialize_snapshot


logger = logging.getLogger("threadline.storage")

STORAGE_KEY = "threadline-app-state"
DEFAULT_STATE_KEY = "threadline-default-state"


class StorageInfo(msgspec.Struct, kw_only=True, frozen=True):
    """What is stored under a key, without decoding it."""
    key: str
    exists: bool
    size_bytes: int = 0
    version: Optional[str] = None
    last_saved: Optional[str] = None


class SnapshotStore:
    """SQLite-backed storage for flow snapshots."""

    DB_PATH = Path("data/threadline.db")

    def __init__(
        self,
        db_path: Path | str | None = None,
        key: str = STORAGE_KEY,
        default_key: str = DEFAULT_STATE_KEY,
    ):
        """
        Initialize the snapshot store.

        Args:
            db_path: Optional path to database file (defaults to data/threadline.db)
            key: Slot for the working snapshot
            default_key: Slot for the default-state snapshot
        """
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.key = key
        self.default_key = default_key
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    version TEXT NOT NULL,
                    last_saved TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
            """
            )

    # === Write Methods ===

    def save(self, snapshot: FlowSnapshot, key: Optional[str] = None) -> bool:
        """
        Persist a snapshot, stamping lastSaved.

        Returns:
            True on success, False if the write failed (already logged)
        """
        key = key or self.key
        stamped = msgspec.structs.replace(snapshot, last_saved=now_utc())
        payload = serialize_snapshot(stamped).decode("utf-8")

        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO snapshots (key, payload, version, last_saved)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload = excluded.payload,
                        version = excluded.version,
                        last_saved = excluded.last_saved,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, payload, stamped.version, stamped.last_saved),
                )
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to save snapshot {key}: {e}", exc_info=True)
            return False

        logger.info(f"Saved snapshot {key} ({len(stamped.nodes)} nodes, {len(stamped.messages)} messages)")
        return True

    def clear(self, key: Optional[str] = None) -> bool:
        """Delete a slot. Returns False if the delete failed."""
        key = key or self.key
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to clear snapshot {key}: {e}", exc_info=True)
            return False
        logger.info(f"Cleared snapshot {key}")
        return True

    # === Read Methods ===

    def load(self, key: Optional[str] = None) -> Optional[FlowSnapshot]:
        """
        Load a snapshot.

        Returns:
            The snapshot, or None if absent, malformed or of another version
        """
        key = key or self.key
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT payload FROM snapshots WHERE key = ?", (key,)
                ).fetchone()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to read snapshot {key}: {e}", exc_info=True)
            return None

        if row is None:
            return None
        return self._decode(row[0], origin=key)

    def storage_info(self, key: Optional[str] = None) -> StorageInfo:
        key = key or self.key
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT length(payload), version, last_saved FROM snapshots WHERE key = ?",
                    (key,),
                ).fetchone()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to inspect snapshot {key}: {e}", exc_info=True)
            row = None

        if row is None:
            return StorageInfo(key=key, exists=False)
        return StorageInfo(key=key, exists=True, size_bytes=row[0], version=row[1], last_saved=row[2])

    # === Import / Export ===

    def export_state(self, key: Optional[str] = None) -> Optional[str]:
        """Stored snapshot as pretty-printed JSON text, or None if nothing is stored."""
        snapshot = self.load(key)
        if snapshot is None:
            return None
        return msgspec.json.format(serialize_snapshot(snapshot).decode("utf-8"), indent=2)

    def import_state(self, text: str | bytes, key: Optional[str] = None) -> Optional[FlowSnapshot]:
        """
        Validate exported JSON and store it.

        Returns:
            The imported snapshot, or None if it was rejected or not saved
        """
        raw = text.encode("utf-8") if isinstance(text, str) else text
        snapshot = self._decode(raw, origin="import")
        if snapshot is None:
            return None
        return snapshot if self.save(snapshot, key) else None

    # === Default State ===

    def save_default(self, snapshot: FlowSnapshot) -> bool:
        return self.save(snapshot, self.default_key)

    def load_default(self) -> Optional[FlowSnapshot]:
        return self.load(self.default_key)

    def clear_default(self) -> bool:
        return self.clear(self.default_key)

    def has_default(self) -> bool:
        return self.storage_info(self.default_key).exists

    # === Internal ===

    def _decode(self, payload: str | bytes, origin: str) -> Optional[FlowSnapshot]:
        try:
            snapshot = deserialize_snapshot(payload)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            logger.warning(f"Ignoring malformed snapshot from {origin}: {e}")
            return None

        if snapshot.version != SNAPSHOT_VERSION:
            logger.warning(
                f"Ignoring snapshot from {origin}: version {snapshot.version} != {SNAPSHOT_VERSION}"
            )
            return None
        return snapshot


# =============================================================================
# AUTO-SAVE
# =============================================================================

class AutoSaver:
    """
    Periodic best-effort save.

    Fire and forget: a failed save is logged and superseded by the next
    interval; it is never retried.

    Usage:
        saver = AutoSaver(store, workspace.snapshot, interval_seconds=30)
        saver.start()      # inside a running event loop
        ...
        await saver.stop()
    """

    def __init__(
        self,
        store: SnapshotStore,
        snapshot_fn: Callable[[], FlowSnapshot],
        interval_seconds: float = 30.0,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.saves = 0
        self.failures = 0
        self._snapshot_fn = snapshot_fn
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the loop on the running event loop. Idempotent."""
        if self.running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Auto-save started (every {self.interval_seconds}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-save stopped")

    def run_once(self) -> bool:
        """One save attempt. Failures are counted and logged, never raised."""
        snapshot = self._take_snapshot()
        return self._record(snapshot is not None and self._save(snapshot))

    async def run_once_async(self) -> bool:
        """
        Same as run_once, with the SQLite write in a worker thread so the
        event loop keeps serving interaction. The snapshot itself is taken
        on the loop.
        """
        snapshot = self._take_snapshot()
        ok = snapshot is not None and await asyncio.to_thread(self._save, snapshot)
        return self._record(ok)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once_async()

    def _take_snapshot(self) -> Optional[FlowSnapshot]:
        try:
            return self._snapshot_fn()
        except Exception as e:
            logger.error(f"Auto-save snapshot failed: {e}", exc_info=True)
            return None

    def _save(self, snapshot: FlowSnapshot) -> bool:
        try:
            return self.store.save(snapshot)
        except Exception as e:
            logger.error(f"Auto-save write failed: {e}", exc_info=True)
            return False

    def _record(self, ok: bool) -> bool:
        if ok:
            self.saves += 1
        else:
            self.failures += 1
            logger.warning("Auto-save failed; will try again next interval")
        return ok
