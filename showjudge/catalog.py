"""Registration and lookup of the things that get scored and voted on.

Functions take an open connection so they can run inside the caller's
transaction; the ``add_*`` helpers are what the admin routes and test
fixtures use to set up an event.
"""

from __future__ import annotations

import sqlite3
from typing import Dict, Iterable, List, Optional

from showjudge.errors import NotFound, ValidationError


# -----------------------
# Registration
# -----------------------
def add_category(conn: sqlite3.Connection, name: str) -> int:
    cur = conn.execute("INSERT INTO categories(name) VALUES(?)", (name.strip(),))
    return cur.lastrowid


def add_group(conn: sqlite3.Connection, name: str, category_id: Optional[int] = None) -> int:
    cur = conn.execute(
        "INSERT INTO groups(name, category_id) VALUES(?,?)", (name.strip(), category_id)
    )
    return cur.lastrowid


def add_criterion(
    conn: sqlite3.Connection,
    category_id: int,
    label: str,
    min_score: int = 0,
    max_score: int = 10,
    display_order: int = 0,
) -> int:
    if min_score > max_score:
        raise ValidationError(f"min_score {min_score} is above max_score {max_score}")
    cur = conn.execute(
        """
        INSERT INTO criteria(category_id, label, min_score, max_score, display_order)
        VALUES(?,?,?,?,?)
        """,
        (category_id, label.strip(), min_score, max_score, display_order),
    )
    return cur.lastrowid


def add_entry(
    conn: sqlite3.Connection,
    label: str,
    category_id: Optional[int] = None,
    group_id: Optional[int] = None,
    is_active: bool = True,
) -> int:
    cur = conn.execute(
        "INSERT INTO entries(label, category_id, group_id, is_active) VALUES(?,?,?,?)",
        (label.strip(), category_id, group_id, int(is_active)),
    )
    return cur.lastrowid


def add_specialty_track(
    conn: sqlite3.Connection,
    name: str,
    description: str = "",
    allow_all_users: bool = True,
    category_id: Optional[int] = None,
    group_id: Optional[int] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO specialty_tracks(name, description, allow_all_users, category_id, group_id)
        VALUES(?,?,?,?,?)
        """,
        (name.strip(), description, int(allow_all_users), category_id, group_id),
    )
    return cur.lastrowid


def add_track_voters(conn: sqlite3.Connection, track_id: int, voter_ids: Iterable[int]) -> int:
    get_track(conn, track_id)
    cur = conn.executemany(
        "INSERT OR IGNORE INTO track_voters(track_id, voter_id) VALUES(?,?)",
        [(track_id, int(v)) for v in voter_ids],
    )
    return cur.rowcount


def set_entry_active(conn: sqlite3.Connection, entry_id: int, active: bool) -> None:
    get_entry(conn, entry_id)
    conn.execute("UPDATE entries SET is_active=? WHERE entry_id=?", (int(active), entry_id))


# -----------------------
# Lookups
# -----------------------
def get_entry(conn: sqlite3.Connection, entry_id: int) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM entries WHERE entry_id=?", (entry_id,)).fetchone()
    if not row:
        raise NotFound(f"Entry {entry_id} not found.")
    return row


def require_active_entry(conn: sqlite3.Connection, entry_id: int) -> sqlite3.Row:
    entry = get_entry(conn, entry_id)
    if not entry["is_active"]:
        raise ValidationError(f"Entry {entry_id} is not active.")
    return entry


def get_track(conn: sqlite3.Connection, track_id: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM specialty_tracks WHERE track_id=?", (track_id,)
    ).fetchone()
    if not row:
        raise NotFound(f"Specialty vote {track_id} not found.")
    return row


def criteria_for_category(conn: sqlite3.Connection, category_id: Optional[int]) -> Dict[int, sqlite3.Row]:
    """Active criteria keyed by id, in display order."""
    rows = conn.execute(
        """
        SELECT * FROM criteria
        WHERE category_id IS ? AND is_active = 1
        ORDER BY display_order, criterion_id
        """,
        (category_id,),
    ).fetchall()
    return {r["criterion_id"]: r for r in rows}


def criterion_ids(conn: sqlite3.Connection) -> List[int]:
    return [r["criterion_id"] for r in conn.execute("SELECT criterion_id FROM criteria").fetchall()]


def voter_allowed(conn: sqlite3.Connection, track: sqlite3.Row, voter_id: int) -> bool:
    if track["allow_all_users"]:
        return True
    row = conn.execute(
        "SELECT 1 FROM track_voters WHERE track_id=? AND voter_id=?",
        (track["track_id"], voter_id),
    ).fetchone()
    return row is not None


def entry_eligible(track: sqlite3.Row, entry: sqlite3.Row) -> bool:
    """Specialty votes may be limited to one category and/or one group."""
    if not entry["is_active"]:
        return False
    if track["category_id"] is not None and entry["category_id"] != track["category_id"]:
        return False
    if track["group_id"] is not None and entry["group_id"] != track["group_id"]:
        return False
    return True
