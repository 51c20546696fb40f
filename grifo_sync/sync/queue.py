"""Offline queue for storing inspections until they reach the Grifo API."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config, MAX_QUEUE_SIZE
from .models import Inspection, InspectionStatus, Photo, format_timestamp, parse_timestamp

__all__ = ["InspectionQueue", "StorageError", "SyncRun", "RunStats"]

logger = logging.getLogger(__name__)

_LAST_SYNC_KEY = "last_sync_at"


class StorageError(Exception):
    """Local persistence failure."""

    pass


@dataclass
class SyncRun:
    """One recorded sync pass."""

    started_at: datetime
    duration_ms: int
    synced: int
    failed: int


@dataclass
class RunStats:
    """Aggregated metrics over recorded sync passes."""

    runs: int = 0
    success_rate: float = 0.0  # percent of attempted items that synced
    average_duration_ms: float = 0.0


class InspectionQueue:
    """SQLite-based offline queue for inspections.

    Every write runs in its own transaction, so a crash leaves each record
    either fully before or fully after the write.
    """

    def __init__(self, db_path: Optional[Path] = None, max_size: int = MAX_QUEUE_SIZE):
        """Initialize the offline queue.

        Args:
            db_path: Path to SQLite database file
            max_size: Maximum number of unsynced inspections to store
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "inspections.db"

        self.db_path = Path(db_path)
        self.max_size = max_size
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            connection = sqlite3.connect(
                str(self.db_path), timeout=10.0, check_same_thread=False
            )
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS inspections (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    data TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    cloud_id TEXT,
                    synced_at TEXT,
                    last_error TEXT,
                    attempts INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_inspections_status ON inspections(status)
                """
            )

            # Key/value metadata (last successful sync, ...)
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            # History of sync passes for status metrics
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TEXT NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    synced INTEGER NOT NULL,
                    failed INTEGER NOT NULL
                )
                """
            )

    def enqueue(self, inspection: Inspection) -> None:
        """Add an inspection to the queue as pending.

        Raises:
            StorageError: If the id is already queued or the queue is full
        """
        now = format_timestamp(datetime.now(timezone.utc))
        try:
            with self._cursor() as cursor:
                # Write lock up front so the capacity check and insert are atomic
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(
                    "SELECT COUNT(*) FROM inspections WHERE status != ?",
                    (InspectionStatus.SYNCED.value,),
                )
                if cursor.fetchone()[0] >= self.max_size:
                    raise StorageError(
                        f"Offline queue is full ({self.max_size} unsynced inspections)"
                    )
                cursor.execute(
                    """
                    INSERT INTO inspections (id, data, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        inspection.id,
                        json.dumps(inspection.to_dict()),
                        InspectionStatus.PENDING.value,
                        format_timestamp(inspection.created_at),
                        now,
                    ),
                )
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise StorageError(f"Inspection {inspection.id} is already queued") from e
            raise
        inspection.status = InspectionStatus.PENDING
        logger.debug(f"Queued inspection {inspection.id}")

    def get(self, inspection_id: str) -> Optional[Inspection]:
        """Get a single inspection by id."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM inspections WHERE id = ?", (inspection_id,))
            row = cursor.fetchone()
            return Inspection.from_row(row) if row else None

    def get_by_status(self, *statuses: InspectionStatus) -> list[Inspection]:
        """Get inspections with any of the given statuses, in insertion order."""
        if not statuses:
            return []

        with self._cursor() as cursor:
            placeholders = ",".join("?" * len(statuses))
            cursor.execute(
                f"""
                SELECT * FROM inspections
                WHERE status IN ({placeholders})
                ORDER BY seq ASC
                """,
                [InspectionStatus(s).value for s in statuses],
            )
            return [Inspection.from_row(row) for row in cursor.fetchall()]

    def get_pending(self) -> list[Inspection]:
        """Get every inspection still waiting for the server (pending or error)."""
        return self.get_by_status(InspectionStatus.PENDING, InspectionStatus.ERROR)

    def mark_synced(
        self,
        inspection_id: str,
        cloud_id: str,
        synced_at: Optional[datetime] = None,
        photo_urls: Optional[list[str]] = None,
    ) -> bool:
        """Mark an inspection as synced.

        Calling this again for an already synced inspection is a no-op.

        Args:
            inspection_id: Local inspection id
            cloud_id: Id assigned by the server
            synced_at: Server commit time (defaults to now)
            photo_urls: Remote URLs replacing the local photo URIs, in order

        Returns:
            True if the status changed, False if it was already synced

        Raises:
            StorageError: If the inspection does not exist
        """
        synced_at = synced_at or datetime.now(timezone.utc)
        now = format_timestamp(datetime.now(timezone.utc))

        with self._cursor() as cursor:
            cursor.execute(
                "SELECT status, data FROM inspections WHERE id = ?", (inspection_id,)
            )
            row = cursor.fetchone()
            if row is None:
                raise StorageError(f"Inspection {inspection_id} not found")
            if row["status"] == InspectionStatus.SYNCED.value:
                return False

            data = json.loads(row["data"])
            if photo_urls is not None:
                old_photos = [Photo.from_value(p) for p in data.get("fotos", [])]
                data["fotos"] = [
                    Photo(
                        uri=url,
                        descricao=old_photos[i].descricao if i < len(old_photos) else None,
                    ).to_dict()
                    for i, url in enumerate(photo_urls)
                ]

            cursor.execute(
                """
                UPDATE inspections
                SET status = ?, cloud_id = ?, synced_at = ?, last_error = NULL,
                    data = ?, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (
                    InspectionStatus.SYNCED.value,
                    cloud_id,
                    format_timestamp(synced_at),
                    json.dumps(data),
                    now,
                    inspection_id,
                    InspectionStatus.SYNCED.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_error(self, inspection_id: str, error_message: str) -> bool:
        """Mark an inspection as failed, keeping it in the queue.

        Synced inspections are never moved back to error.

        Returns:
            True if the status changed

        Raises:
            StorageError: If the inspection does not exist
        """
        now = format_timestamp(datetime.now(timezone.utc))
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE inspections
                SET status = ?, last_error = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (
                    InspectionStatus.ERROR.value,
                    error_message,
                    now,
                    inspection_id,
                    InspectionStatus.SYNCED.value,
                ),
            )
            if cursor.rowcount == 1:
                return True
            cursor.execute("SELECT 1 FROM inspections WHERE id = ?", (inspection_id,))
            if cursor.fetchone() is None:
                raise StorageError(f"Inspection {inspection_id} not found")
            return False

    def reset_to_pending(self, inspection_ids: list[str]) -> int:
        """Move failed inspections back to pending for another attempt.

        Returns:
            Number of inspections reset
        """
        if not inspection_ids:
            return 0

        now = format_timestamp(datetime.now(timezone.utc))
        with self._cursor() as cursor:
            placeholders = ",".join("?" * len(inspection_ids))
            cursor.execute(
                f"""
                UPDATE inspections
                SET status = ?, updated_at = ?
                WHERE status = ? AND id IN ({placeholders})
                """,
                [InspectionStatus.PENDING.value, now, InspectionStatus.ERROR.value]
                + list(inspection_ids),
            )
            return cursor.rowcount

    def update(self, inspection: Inspection) -> None:
        """Replace an inspection's data after a user edit.

        The edited inspection starts a new sync cycle as pending.
        """
        now = format_timestamp(datetime.now(timezone.utc))
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE inspections
                SET data = ?, status = ?, last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    json.dumps(inspection.to_dict()),
                    InspectionStatus.PENDING.value,
                    now,
                    inspection.id,
                ),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Inspection {inspection.id} not found")
        inspection.status = InspectionStatus.PENDING

    def counts(self) -> dict[InspectionStatus, int]:
        """Count inspections per status."""
        result = {status: 0 for status in InspectionStatus}
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT status, COUNT(*) AS total FROM inspections GROUP BY status"
            )
            for row in cursor.fetchall():
                result[InspectionStatus(row["status"])] = row["total"]
        return result

    def unsynced_count(self) -> int:
        """Number of inspections not yet on the server."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM inspections WHERE status != ?",
                (InspectionStatus.SYNCED.value,),
            )
            return cursor.fetchone()[0]

    def size(self) -> int:
        """Get the total number of stored inspections."""
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM inspections")
            return cursor.fetchone()[0]

    def is_empty(self) -> bool:
        """Check if nothing is waiting to be synced."""
        return self.unsynced_count() == 0

    def clear_all(self) -> int:
        """Delete every inspection and all sync metadata.

        Only for an explicit user "reset sync data" action.
        """
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM inspections")
            count = cursor.rowcount
            cursor.execute("DELETE FROM sync_meta")
            cursor.execute("DELETE FROM sync_runs")
        logger.warning(f"Cleared offline queue ({count} inspections)")
        return count

    # Sync metadata

    def get_last_sync_at(self) -> Optional[datetime]:
        """Get the time of the last pass that synced at least one inspection."""
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM sync_meta WHERE key = ?", (_LAST_SYNC_KEY,))
            row = cursor.fetchone()
            return parse_timestamp(row[0]) if row else None

    def set_last_sync_at(self, timestamp: datetime) -> None:
        """Record the time of the last successful sync."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (_LAST_SYNC_KEY, format_timestamp(timestamp)),
            )

    def record_run(self, run: SyncRun) -> None:
        """Store the outcome of a sync pass."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_runs (started_at, duration_ms, synced, failed)
                VALUES (?, ?, ?, ?)
                """,
                (format_timestamp(run.started_at), run.duration_ms, run.synced, run.failed),
            )

    def get_run_stats(self) -> RunStats:
        """Aggregate success rate and duration over recorded passes."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(synced), 0), COALESCE(SUM(failed), 0),
                       COALESCE(AVG(duration_ms), 0)
                FROM sync_runs
                """
            )
            runs, synced, failed, avg_duration = cursor.fetchone()

        attempted = synced + failed
        return RunStats(
            runs=runs,
            success_rate=round(100.0 * synced / attempted, 1) if attempted else 0.0,
            average_duration_ms=round(float(avg_duration), 1),
        )

    def close(self) -> None:
        """Close every database connection opened by this queue."""
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection
