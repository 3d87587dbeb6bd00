"""
Persistent store for recurrence definitions.

Keeps schedules in a SQLite database. This is the single source of truth
for what should fire and when; the scheduler re-reads it at fire time
instead of trusting data captured when a job was enqueued.
"""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List

from config import Config, get_config
from models import RecurrenceDefinition, utc_now

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, target_hour, target_minute, anchor_timestamp, is_recurring, frequency, "
    "custom_period, custom_unit, is_enabled, payload, created_at, updated_at"
)


class ScheduleStore:
    """SQLite-backed store of recurrence definitions keyed by id"""

    def __init__(self, db_path: Optional[Path] = None, config: Optional[Config] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database. If None, uses the configured
                     data directory.
            config: Config instance. If None, uses global config.
        """
        if db_path is None:
            db_path = (config or get_config()).schedules_db
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._create_tables()
        logger.debug(f"Initialized schedule store: {self.db_path}")

    @contextmanager
    def _connect(self):
        """Open a short-lived connection; commits on success."""
        # One connection per operation: callers run on executor worker threads
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _create_tables(self):
        """Create database tables if they don't exist"""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recurrence_definitions (
                    id TEXT PRIMARY KEY,
                    target_hour INTEGER NOT NULL,
                    target_minute INTEGER NOT NULL,
                    anchor_timestamp TEXT NOT NULL,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    frequency TEXT NOT NULL,
                    custom_period INTEGER NOT NULL DEFAULT 1,
                    custom_unit TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_enabled ON recurrence_definitions(is_enabled)"
            )

    def get(self, definition_id: str) -> Optional[RecurrenceDefinition]:
        """Fetch a definition by id, or None if it does not exist."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM recurrence_definitions WHERE id = ?",
                (definition_id,)
            ).fetchone()
        return RecurrenceDefinition.from_row(row) if row else None

    def insert(self, definition: RecurrenceDefinition) -> str:
        """
        Persist a new definition.

        Returns:
            The assigned id

        Raises:
            ValueError: If the definition is invalid
        """
        errors = definition.validate()
        if errors:
            raise ValueError(f"Invalid schedule: {'; '.join(errors)}")

        definition_id = definition.id or uuid.uuid4().hex
        now = utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO recurrence_definitions ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    definition_id,
                    definition.target_hour,
                    definition.target_minute,
                    definition.anchor_timestamp.isoformat(),
                    int(definition.is_recurring),
                    definition.frequency.value,
                    definition.period,
                    definition.custom_unit.value,
                    int(definition.is_enabled),
                    definition.payload.to_json(),
                    now,
                    now
                )
            )
        logger.info(f"Stored schedule {definition_id} ({definition.formatted_time()}, "
                    f"{definition.describe_cadence()})")
        return definition_id

    def update(self, definition: RecurrenceDefinition):
        """
        Overwrite an existing definition.

        Raises:
            KeyError: If no definition with this id exists
            ValueError: If the definition is invalid
        """
        errors = definition.validate()
        if errors:
            raise ValueError(f"Invalid schedule: {'; '.join(errors)}")

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE recurrence_definitions SET
                    target_hour = ?, target_minute = ?, anchor_timestamp = ?,
                    is_recurring = ?, frequency = ?, custom_period = ?,
                    custom_unit = ?, is_enabled = ?, payload = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    definition.target_hour,
                    definition.target_minute,
                    definition.anchor_timestamp.isoformat(),
                    int(definition.is_recurring),
                    definition.frequency.value,
                    definition.period,
                    definition.custom_unit.value,
                    int(definition.is_enabled),
                    definition.payload.to_json(),
                    utc_now().isoformat(),
                    definition.id
                )
            )
            if cursor.rowcount == 0:
                raise KeyError(definition.id)
        logger.debug(f"Updated schedule {definition.id}")

    def delete(self, definition_id: str) -> bool:
        """
        Delete a definition.

        Returns:
            True if deleted, False if not found
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM recurrence_definitions WHERE id = ?", (definition_id,)
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted schedule {definition_id}")
        return deleted

    def set_enabled(self, definition_id: str, enabled: bool):
        """
        Flip the enabled flag of a definition.

        Raises:
            KeyError: If no definition with this id exists
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE recurrence_definitions SET is_enabled = ?, updated_at = ? WHERE id = ?",
                (int(enabled), utc_now().isoformat(), definition_id)
            )
            if cursor.rowcount == 0:
                raise KeyError(definition_id)
        logger.debug(f"Schedule {definition_id} enabled={enabled}")

    def list_enabled(self) -> List[RecurrenceDefinition]:
        """All enabled definitions"""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM recurrence_definitions WHERE is_enabled = 1"
            ).fetchall()
        return [RecurrenceDefinition.from_row(row) for row in rows]

    def list_all(self) -> List[RecurrenceDefinition]:
        """All definitions ordered by time of day"""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM recurrence_definitions "
                "ORDER BY target_hour, target_minute"
            ).fetchall()
        return [RecurrenceDefinition.from_row(row) for row in rows]


# Global store instance
_store: Optional[ScheduleStore] = None
_store_lock = threading.Lock()


def get_store() -> ScheduleStore:
    """
    Get or create the global schedule store instance.

    A new store is opened when the configured data directory has changed
    since the last call.
    """
    global _store
    with _store_lock:
        schedules_db = get_config().schedules_db
        if _store is None or _store.db_path != schedules_db:
            _store = ScheduleStore(schedules_db)
        return _store
