"""Persistent query history.

A HistoryStore owns one sqlite connection. Every operation re-runs a cheap
liveness probe first; when the probe fails the operation logs and returns a
degraded result (False, [] or 0) instead of raising.
"""

import datetime
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List

from . import config
from .retention import compute_cutoff, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Created holds naive UTC at a fixed width, so string order is time order
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime.datetime) -> str:
    return value.isoformat(sep=" ", timespec="microseconds")


def parse_timestamp(value: str) -> datetime.datetime:
    return datetime.datetime.strptime(value, TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class HistoryRecord:
    id: int
    source_path: str
    query_text: str
    created_at: datetime.datetime

    @property
    def created_local(self) -> datetime.datetime:
        """Creation time in the local timezone, for display."""
        return self.created_at.replace(tzinfo=datetime.timezone.utc).astimezone()

    @property
    def is_text_query(self) -> bool:
        return self.source_path == config.TEXT_QUERY_SOURCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_path": self.source_path,
            "question": self.query_text,
            "created": self.created_local.strftime(DISPLAY_FORMAT),
        }


class ConnectionState(Enum):
    CONNECTED = "connected"
    FAILED = "failed"


class HistoryStore:
    def __init__(self, database=config.DATABASE, timeout: float = config.PROBE_TIMEOUT,
                 clock: Callable[[], datetime.datetime] = utc_now):
        self.database = str(database)
        self.timeout = timeout
        self.clock = clock
        self._connection = None
        self.state = self._open()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- Connection Management ---

    def _open(self) -> ConnectionState:
        connection = None
        try:
            # The sqlite busy timeout is what bounds the liveness probe
            connection = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            self._init_schema(connection)
        except sqlite3.Error as e:
            logger.error(f"Failed to open history database '{self.database}': {e}")
            if connection is not None:
                connection.close()
            return ConnectionState.FAILED

        self._connection = connection
        logger.info(f"History database connected: {self.database}")
        return ConnectionState.CONNECTED

    @staticmethod
    def _init_schema(connection: sqlite3.Connection) -> None:
        version = connection.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise sqlite3.DatabaseError(
                f"History schema version {version} is newer than supported version {SCHEMA_VERSION}"
            )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS HISTORY (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                FilePath TEXT NOT NULL,
                Question TEXT NOT NULL,
                Created TIMESTAMP NOT NULL
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS idx_history_created ON HISTORY(Created)")
        connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        connection.commit()

    def is_connected(self) -> bool:
        """Liveness probe, re-run on every call rather than cached."""
        if self._connection is None:
            return False
        try:
            self._connection.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"History database probe failed: {e}")
            return False

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            logger.info(f"History database closed: {self.database}")

    # --- CRUD ---

    def current_time(self) -> datetime.datetime:
        """Now on the store's own timeline: the clock, but never at or before
        the newest stored record."""
        now = self.clock()
        if self._connection is None:
            return now
        try:
            row = self._connection.execute("SELECT MAX(Created) FROM HISTORY").fetchone()
        except sqlite3.Error as e:
            logger.warning(f"Could not read newest history timestamp: {e}")
            return now
        if row[0]:
            latest = parse_timestamp(row[0])
            if now <= latest:
                # Clock stalled or stepped back; keep Created strictly increasing
                now = latest + datetime.timedelta(microseconds=1)
        return now

    def create(self, source_path: str, query_text: str) -> bool:
        """Appends one record. Returns True if exactly one row was written."""
        if not self.is_connected():
            logger.warning("History not connected; entry not saved")
            return False

        try:
            with self._connection:
                created = self.current_time()
                cursor = self._connection.execute(
                    "INSERT INTO HISTORY (FilePath, Question, Created) VALUES (?, ?, ?)",
                    (source_path, query_text, format_timestamp(created)),
                )
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Failed to save history entry for '{query_text}': {e}")
            return False

        if cursor.rowcount != 1:
            logger.error(f"History insert affected {cursor.rowcount} rows")
            return False
        logger.debug(f"History entry saved: {source_path} | {query_text}")
        return True

    def list_all(self) -> List[HistoryRecord]:
        """Returns every record, oldest first."""
        if not self.is_connected():
            logger.warning("History not connected; nothing to list")
            return []

        try:
            rows = self._connection.execute(
                "SELECT id, FilePath, Question, Created FROM HISTORY ORDER BY Created, id"
            ).fetchall()
            return [
                HistoryRecord(
                    id=row["id"],
                    source_path=row["FilePath"],
                    query_text=row["Question"],
                    created_at=parse_timestamp(row["Created"]),
                )
                for row in rows
            ]
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Failed to load history: {e}")
            return []

    def delete_older_than(self, age_in_days: int) -> int:
        """Deletes records created before now minus `age_in_days` days.

        Returns the number of rows removed; 0 when disconnected or on error.
        """
        if age_in_days < 0:
            raise ValueError(f"Age must not be negative, got {age_in_days}")
        if not self.is_connected():
            logger.warning("History not connected; nothing deleted")
            return 0

        try:
            with self._connection:
                cutoff = compute_cutoff(age_in_days, self.current_time())
                cursor = self._connection.execute(
                    "DELETE FROM HISTORY WHERE Created < ?", (format_timestamp(cutoff),)
                )
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Failed to delete history older than {age_in_days} days: {e}")
            return 0

        logger.info(f"Deleted {cursor.rowcount} history entries created before {format_timestamp(cutoff)} UTC")
        return cursor.rowcount

    def delete_all(self) -> int:
        """Removes every record. Returns the number of rows removed."""
        if not self.is_connected():
            logger.warning("History not connected; nothing deleted")
            return 0

        try:
            with self._connection:
                cursor = self._connection.execute("DELETE FROM HISTORY")
        except sqlite3.Error as e:
            logger.error(f"Failed to clear history: {e}")
            return 0

        logger.info(f"Cleared {cursor.rowcount} history entries")
        return cursor.rowcount
