from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path

from birthday_messenger.errors import DuplicateRecordError, StoreError
from birthday_messenger.models import DELIVERY_STATUSES, DeliveryRecord, DeliveryStatus

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sent_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient_id TEXT NOT NULL,
    year INTEGER NOT NULL,
    message_id TEXT,
    message_content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('sent', 'failed', 'pending')),
    UNIQUE (recipient_id, year)
);
CREATE INDEX IF NOT EXISTS idx_sent_messages_recipient_year ON sent_messages (recipient_id, year);
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStore:
    """Durable (recipient, year) delivery ledger on SQLite.

    The ``UNIQUE (recipient_id, year)`` constraint is what guarantees a single
    record per recipient per year; a second insert surfaces as
    ``DuplicateRecordError`` regardless of how many writers race for it.
    Every call opens its own connection, so nothing is held in memory between calls.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = _utc_now, timeout: float = 10.0) -> None:
        self._path = path
        self._clock = clock
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as connection:
                connection.execute("PRAGMA journal_mode=WAL")
                connection.executescript(SCHEMA_SQL)
        except OSError as exc:
            raise StoreError(f"Cannot create database directory for {self._path}: {exc}") from exc
        LOGGER.info("Delivery store ready at %s", self._path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(sqlite3.connect(self._path, timeout=self._timeout)) as connection:
                with connection:
                    yield connection
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StoreError(f"Delivery store unavailable ({self._path}): {exc}") from exc

    def was_sent(self, recipient_id: str, year: int) -> bool:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT 1 FROM sent_messages WHERE recipient_id = ? AND year = ? LIMIT 1",
                (recipient_id, year),
            ).fetchone()
        return row is not None

    def record(
        self,
        recipient_id: str,
        year: int,
        message_id: str | None,
        message_content: str,
        status: DeliveryStatus,
    ) -> DeliveryRecord:
        if status not in DELIVERY_STATUSES:
            raise ValueError(f"status must be one of {DELIVERY_STATUSES}, got {status!r}")

        timestamp = self._clock()
        try:
            with self._connect() as connection:
                cursor = connection.execute(
                    """
                    INSERT INTO sent_messages (recipient_id, year, message_id, message_content, timestamp, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (recipient_id, year, message_id, message_content, timestamp.isoformat(), status),
                )
                record_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(recipient_id, year) from exc

        LOGGER.info("Recorded %s delivery for %s in %s", status, recipient_id, year)
        return DeliveryRecord(
            recipient_id=recipient_id,
            year=year,
            message_id=message_id,
            message_content=message_content,
            timestamp=timestamp,
            status=status,
            record_id=record_id,
        )

    def history(self, recipient_id: str) -> list[DeliveryRecord]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT id, recipient_id, year, message_id, message_content, timestamp, status
                FROM sent_messages
                WHERE recipient_id = ?
                ORDER BY timestamp DESC, id DESC
                """,
                (recipient_id,),
            ).fetchall()

        return [
            DeliveryRecord(
                recipient_id=row[1],
                year=int(row[2]),
                message_id=row[3],
                message_content=row[4],
                timestamp=datetime.fromisoformat(row[5]),
                status=row[6],
                record_id=int(row[0]),
            )
            for row in rows
        ]
