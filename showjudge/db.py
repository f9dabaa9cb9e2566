from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from showjudge.errors import StorageBusy, StorageError

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    category_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS groups (
    group_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    category_id INTEGER REFERENCES categories (category_id),
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS criteria (
    criterion_id INTEGER PRIMARY KEY AUTOINCREMENT,
    category_id INTEGER NOT NULL REFERENCES categories (category_id),
    label TEXT NOT NULL,
    min_score INTEGER NOT NULL DEFAULT 0,
    max_score INTEGER NOT NULL DEFAULT 10,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS entries (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    label TEXT NOT NULL,
    category_id INTEGER REFERENCES categories (category_id),
    group_id INTEGER REFERENCES groups (group_id),
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS specialty_tracks (
    track_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    allow_all_users INTEGER NOT NULL DEFAULT 0,
    category_id INTEGER REFERENCES categories (category_id),
    group_id INTEGER REFERENCES groups (group_id),
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS track_voters (
    track_id INTEGER NOT NULL REFERENCES specialty_tracks (track_id),
    voter_id INTEGER NOT NULL,
    PRIMARY KEY (track_id, voter_id)
);

-- one row per judge/entry/criterion; the unique key backs the submission guard
CREATE TABLE IF NOT EXISTS score_records (
    score_id INTEGER PRIMARY KEY AUTOINCREMENT,
    judge_id INTEGER NOT NULL,
    entry_id INTEGER NOT NULL REFERENCES entries (entry_id),
    criterion_id INTEGER NOT NULL REFERENCES criteria (criterion_id),
    score INTEGER NOT NULL,
    scored_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (judge_id, entry_id, criterion_id)
);

CREATE TABLE IF NOT EXISTS vote_records (
    vote_id INTEGER PRIMARY KEY AUTOINCREMENT,
    track_id INTEGER NOT NULL REFERENCES specialty_tracks (track_id),
    entry_id INTEGER NOT NULL REFERENCES entries (entry_id),
    voter_id INTEGER NOT NULL,
    voted_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (track_id, voter_id)
);

CREATE TABLE IF NOT EXISTS published_results (
    result_id INTEGER PRIMARY KEY AUTOINCREMENT,
    result_kind TEXT NOT NULL,
    group_id INTEGER NOT NULL,
    entry_id INTEGER NOT NULL,
    place INTEGER NOT NULL,
    score REAL NOT NULL,
    published_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_score_records_entry ON score_records (entry_id);
CREATE INDEX IF NOT EXISTS idx_vote_records_track ON vote_records (track_id, entry_id);
CREATE INDEX IF NOT EXISTS idx_published_kind ON published_results (result_kind, group_id, place);
"""


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class Database:
    """Opens one sqlite3 connection per unit of work; safe to share across threads."""

    def __init__(self, path: Path | str, busy_timeout: float = 5.0):
        self.path = str(path)
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        # autocommit mode; write transactions are opened explicitly by transaction()
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any error.

        Holding the write lock from the first statement makes read-then-write
        sequences inside the block atomic with respect to other writers.
        IntegrityError and VotingError propagate unchanged; other sqlite
        errors become StorageError.
        """
        with self.reading() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if _is_busy(e):
                    raise StorageBusy(str(e)) from e
                raise
            try:
                yield conn
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if _is_busy(e):
                    raise StorageBusy(str(e)) from e
                raise StorageError(str(e)) from e
            except BaseException:
                _rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if _is_busy(e):
                    raise StorageBusy(str(e)) from e
                raise StorageError(str(e)) from e

    def init(self) -> None:
        with self.reading() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

            # Simple migration safety if an older table exists
            cols = [r["name"] for r in conn.execute("PRAGMA table_info(specialty_tracks)").fetchall()]
            if "category_id" not in cols:
                conn.execute("ALTER TABLE specialty_tracks ADD COLUMN category_id INTEGER")
            if "group_id" not in cols:
                conn.execute("ALTER TABLE specialty_tracks ADD COLUMN group_id INTEGER")
        log.info(f"Database ready at {self.path}")


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")
