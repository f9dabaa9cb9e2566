"""Live rankings computed from the stored score and vote records.

Read-only. Every call queries the latest committed rows, so the same call can
return different standings while a track is Open.

Ordering, for both tracks:
  1. entries that have at least one record before entries with none
  2. higher total score / vote count first
  3. lower entry_id first (deterministic tie-break)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import pandas as pd

from showjudge.db import Database
from showjudge.models import Standing

EXPERT_SQL = """
SELECT e.entry_id,
       e.group_id,
       COALESCE(SUM(s.score), 0) AS total_score,
       COUNT(s.score_id) AS record_count,
       COUNT(DISTINCT s.judge_id) AS judge_count
FROM entries e
JOIN groups g ON g.group_id = e.group_id
LEFT JOIN score_records s ON s.entry_id = e.entry_id
WHERE e.is_active = 1 AND g.is_active = 1 {where}
GROUP BY e.entry_id, e.group_id
"""

SPECIALTY_SQL = """
SELECT v.track_id,
       v.entry_id,
       COUNT(*) AS vote_count
FROM vote_records v
JOIN entries e ON e.entry_id = v.entry_id
JOIN specialty_tracks t ON t.track_id = v.track_id
WHERE e.is_active = 1 AND t.is_active = 1 {where}
GROUP BY v.track_id, v.entry_id
"""


def query_frame(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> pd.DataFrame:
    cur = conn.execute(sql, params)
    columns = [d[0] for d in cur.description]
    return pd.DataFrame.from_records([tuple(r) for r in cur.fetchall()], columns=columns)


def order_standings(frame: pd.DataFrame, value_col: str, partition: Optional[str] = None) -> pd.DataFrame:
    """Sort by (partition,) has-records desc, value desc, entry_id asc.

    mergesort keeps the sort stable so the result never depends on row order.
    """
    frame = frame.assign(_scored=frame["record_count"] > 0)
    by = ["_scored", value_col, "entry_id"]
    ascending = [False, False, True]
    if partition:
        by.insert(0, partition)
        ascending.insert(0, True)
    ordered = frame.sort_values(by=by, ascending=ascending, kind="mergesort")
    return ordered.drop(columns="_scored").reset_index(drop=True)


def with_places(frame: pd.DataFrame, partition: str, places: int) -> pd.DataFrame:
    """Keep the top ``places`` scored rows of each partition and number them 1..n."""
    scored = frame[frame["record_count"] > 0]
    top = scored.groupby(partition, sort=True).head(places).copy()
    top["place"] = top.groupby(partition).cumcount() + 1
    return top.reset_index(drop=True)


class AggregationEngine:
    def __init__(self, database: Database):
        self.database = database

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.database.reading() as fresh:
                yield fresh

    # -----------------------
    # Frames
    # -----------------------
    def expert_frame(self, conn: Optional[sqlite3.Connection] = None, group_id: Optional[int] = None) -> pd.DataFrame:
        """Columns: entry_id, group_id, total_score, record_count, judge_count (ordered)."""
        where, params = ("AND e.group_id = ?", (group_id,)) if group_id is not None else ("", ())
        with self._conn(conn) as c:
            frame = query_frame(c, EXPERT_SQL.format(where=where), params)
        return order_standings(frame, "total_score", partition="group_id")

    def specialty_frame(self, conn: Optional[sqlite3.Connection] = None, track_id: Optional[int] = None) -> pd.DataFrame:
        """Columns: track_id, entry_id, vote_count, record_count (ordered)."""
        where, params = ("AND v.track_id = ?", (track_id,)) if track_id is not None else ("", ())
        with self._conn(conn) as c:
            frame = query_frame(c, SPECIALTY_SQL.format(where=where), params)
        frame["record_count"] = frame["vote_count"]
        return order_standings(frame, "vote_count", partition="track_id")

    # -----------------------
    # Rankings
    # -----------------------
    def rank_expert(self, group_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Standing]:
        frame = self.expert_frame(conn, group_id=group_id)
        return [
            Standing(
                entry_id=int(r.entry_id),
                score=int(r.total_score),
                group_id=int(r.group_id),
                judge_count=int(r.judge_count),
            )
            for r in frame.itertuples(index=False)
        ]

    def rank_specialty(self, track_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Standing]:
        frame = self.specialty_frame(conn, track_id=track_id)
        return [
            Standing(entry_id=int(r.entry_id), score=int(r.vote_count), group_id=int(r.track_id))
            for r in frame.itertuples(index=False)
        ]

    def expert_podiums(self, places: int = 3, conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
        """Top ``places`` scored entries of every group, with a place column."""
        return with_places(self.expert_frame(conn), "group_id", places)

    def specialty_winners(self, conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
        """The single leader of every track that has votes."""
        return with_places(self.specialty_frame(conn), "track_id", 1)

    def judging_progress(self, conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, int]]:
        frame = self.expert_frame(conn)
        return [
            {
                "entry_id": int(r.entry_id),
                "group_id": int(r.group_id),
                "judge_count": int(r.judge_count),
                "total_score": int(r.total_score),
            }
            for r in frame.itertuples(index=False)
        ]
