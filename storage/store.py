"""
SQLite-backed document store for users, streak records, notification preferences,
delivery claims (dedup) and delivery failure logs.
Documents are stored as JSON keyed by user id; streak records carry a version for compare-and-swap updates.
"""

import sqlite3
import json
import logging
import threading
import functools
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List

from errors import ConcurrentUpdate, StorageUnavailable
from normalize.models import DeliveryFailureLog, NotificationPreferences, StreakRecord, UserProfile

logger = logging.getLogger(__name__)

DB_PATH = None  # can be overridden by caller

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    doc TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS streak_records (
    user_id TEXT PRIMARY KEY,
    doc TEXT NOT NULL,
    version INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id TEXT PRIMARY KEY,
    doc TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS delivery_claims (
    user_id TEXT NOT NULL,
    notification_type TEXT NOT NULL,
    natural_key TEXT NOT NULL,
    day TEXT NOT NULL,
    claimed_at REAL NOT NULL,
    PRIMARY KEY (user_id, notification_type, natural_key, day)
);
CREATE TABLE IF NOT EXISTS delivery_failures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    notification_type TEXT NOT NULL,
    error TEXT,
    failure_type TEXT,
    occurred_at REAL NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_delivery_failures_occurred ON delivery_failures (occurred_at);
"""


def _guarded(fn):
    """Translate sqlite errors into StorageUnavailable."""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self.conn is None:
            raise StorageUnavailable('store is closed')
        try:
            return fn(self, *args, **kwargs)
        except sqlite3.Error as ex:
            logger.error("Storage operation %s failed: %s", fn.__name__, ex)
            raise StorageUnavailable(f"{fn.__name__}: {ex}")
    return wrapper


def _ts(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class Store:
    def __init__(self, path: Optional[str] = None):
        """Open (and create if needed) a store.

        :param path: SQLite file path or None for in-memory.
        """
        self.path = path or DB_PATH or ':memory:'
        try:
            self.conn = sqlite3.connect(self.path, check_same_thread=False)
        except sqlite3.Error as ex:
            raise StorageUnavailable(f"cannot open {self.path}: {ex}")
        self._lock = threading.RLock()
        self._init_db()

    @_guarded
    def _init_db(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                finally:
                    self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- users ---

    # noinspection SqlResolve
    @_guarded
    def put_user(self, user: UserProfile):
        with self._lock:
            self.conn.execute('REPLACE INTO users(user_id, doc) VALUES (?, ?)', (user.user_id, json.dumps(user.to_dict())))
            self.conn.commit()

    # noinspection SqlResolve
    @_guarded
    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            row = self.conn.execute('SELECT doc FROM users WHERE user_id = ?', (user_id,)).fetchone()
        return UserProfile.from_dict(json.loads(row[0])) if row else None

    # noinspection SqlResolve
    @_guarded
    def list_users(self) -> List[UserProfile]:
        with self._lock:
            rows = self.conn.execute('SELECT doc FROM users ORDER BY user_id').fetchall()
        return [UserProfile.from_dict(json.loads(r[0])) for r in rows]

    # --- streak records ---

    # noinspection SqlResolve
    @_guarded
    def get_streak_record(self, user_id: str) -> Optional[StreakRecord]:
        with self._lock:
            row = self.conn.execute('SELECT doc, version FROM streak_records WHERE user_id = ?', (user_id,)).fetchone()
        if not row:
            return None
        return StreakRecord.from_dict(json.loads(row[0]), version=int(row[1]))

    # noinspection SqlResolve
    @_guarded
    def put_streak_record(self, record: StreakRecord, expected_version: int) -> StreakRecord:
        """Compare-and-swap write. expected_version 0 means "must not exist yet".

        Returns the record with its new version; raises ConcurrentUpdate when another writer got there first.
        """
        doc = json.dumps(record.to_dict())
        new_version = expected_version + 1
        with self._lock:
            cur = self.conn.cursor()
            if expected_version == 0:
                try:
                    cur.execute('INSERT INTO streak_records(user_id, doc, version) VALUES (?, ?, ?)', (record.user_id, doc, new_version))
                except sqlite3.IntegrityError:
                    self.conn.rollback()
                    raise ConcurrentUpdate(f"streak record for {record.user_id} was created concurrently")
            else:
                cur.execute(
                    'UPDATE streak_records SET doc = ?, version = ? WHERE user_id = ? AND version = ?',
                    (doc, new_version, record.user_id, expected_version),
                )
                if cur.rowcount != 1:
                    self.conn.rollback()
                    raise ConcurrentUpdate(f"streak record for {record.user_id} changed since version {expected_version}")
            self.conn.commit()
        record.version = new_version
        return record

    # --- notification preferences ---

    # noinspection SqlResolve
    @_guarded
    def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        with self._lock:
            row = self.conn.execute('SELECT doc FROM notification_preferences WHERE user_id = ?', (user_id,)).fetchone()
        return NotificationPreferences.from_dict(json.loads(row[0])) if row else None

    # noinspection SqlResolve
    @_guarded
    def put_preferences(self, prefs: NotificationPreferences):
        with self._lock:
            self.conn.execute('REPLACE INTO notification_preferences(user_id, doc) VALUES (?, ?)', (prefs.user_id, json.dumps(prefs.to_dict())))
            self.conn.commit()

    # noinspection SqlResolve
    @_guarded
    def get_or_create_preferences(self, user_id: str) -> NotificationPreferences:
        with self._lock:
            prefs = self.get_preferences(user_id)
            if prefs is None:
                prefs = NotificationPreferences(user_id)
                self.conn.execute('INSERT OR IGNORE INTO notification_preferences(user_id, doc) VALUES (?, ?)', (user_id, json.dumps(prefs.to_dict())))
                self.conn.commit()
                logger.info("Created default notification preferences for %s", user_id)
        return prefs

    # --- delivery claims (dedup) ---

    # noinspection SqlResolve
    @_guarded
    def claim_delivery(self, user_id: str, notification_type: str, natural_key: str, day: str, claimed_at: Optional[datetime] = None) -> bool:
        """Atomically claim (user, type, key, day). Returns False when it was already claimed."""
        ts = _ts(claimed_at or datetime.now(timezone.utc))
        with self._lock:
            cur = self.conn.execute(
                'INSERT OR IGNORE INTO delivery_claims(user_id, notification_type, natural_key, day, claimed_at) VALUES (?, ?, ?, ?, ?)',
                (user_id, notification_type, natural_key, day, ts),
            )
            self.conn.commit()
            return cur.rowcount == 1

    # noinspection SqlResolve
    @_guarded
    def release_delivery(self, user_id: str, notification_type: str, natural_key: str, day: str):
        with self._lock:
            self.conn.execute(
                'DELETE FROM delivery_claims WHERE user_id = ? AND notification_type = ? AND natural_key = ? AND day = ?',
                (user_id, notification_type, natural_key, day),
            )
            self.conn.commit()

    # noinspection SqlResolve
    @_guarded
    def has_delivery(self, user_id: str, notification_type: str, natural_key: str, day: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                'SELECT 1 FROM delivery_claims WHERE user_id = ? AND notification_type = ? AND natural_key = ? AND day = ?',
                (user_id, notification_type, natural_key, day),
            ).fetchone()
        return row is not None

    # noinspection SqlResolve
    @_guarded
    def delete_claims_before(self, day: str) -> int:
        """Delete claims for days strictly before `day` (ISO date). Returns number of rows deleted."""
        with self._lock:
            cur = self.conn.execute('DELETE FROM delivery_claims WHERE day < ?', (day,))
            self.conn.commit()
            return cur.rowcount

    # --- delivery failure log ---

    # noinspection SqlResolve
    @_guarded
    def append_failure(self, log: DeliveryFailureLog) -> DeliveryFailureLog:
        with self._lock:
            cur = self.conn.execute(
                'INSERT INTO delivery_failures(user_id, notification_type, error, failure_type, occurred_at, resolved) VALUES (?, ?, ?, ?, ?, ?)',
                (log.user_id, log.notification_type, log.error, log.failure_type, _ts(log.occurred_at), 1 if log.resolved else 0),
            )
            self.conn.commit()
            log.id = cur.lastrowid
        return log

    # noinspection SqlResolve
    @_guarded
    def list_failures(self, limit: Optional[int] = None) -> List[DeliveryFailureLog]:
        """Return failure log entries, newest first."""
        sql = 'SELECT id, user_id, notification_type, error, failure_type, occurred_at, resolved FROM delivery_failures ORDER BY occurred_at DESC, id DESC'
        params: tuple = ()
        if limit is not None:
            sql += ' LIMIT ?'
            params = (int(limit),)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [
            DeliveryFailureLog(
                id=r[0], user_id=r[1], notification_type=r[2], error=r[3] or '', failure_type=r[4] or 'unknown',
                occurred_at=datetime.fromtimestamp(float(r[5]), tz=timezone.utc), resolved=bool(r[6]),
            )
            for r in rows
        ]

    # noinspection SqlResolve
    @_guarded
    def resolve_failures(self, user_id: str, notification_type: str) -> int:
        with self._lock:
            cur = self.conn.execute(
                'UPDATE delivery_failures SET resolved = 1 WHERE user_id = ? AND notification_type = ? AND resolved = 0',
                (user_id, notification_type),
            )
            self.conn.commit()
            return cur.rowcount

    # noinspection SqlResolve
    @_guarded
    def delete_failures_older_than(self, cutoff: datetime) -> int:
        """Delete entries with occurred_at strictly before cutoff. Returns number of rows deleted."""
        with self._lock:
            cur = self.conn.execute('DELETE FROM delivery_failures WHERE occurred_at < ?', (_ts(cutoff),))
            self.conn.commit()
            return cur.rowcount


__all__ = ["Store"]
