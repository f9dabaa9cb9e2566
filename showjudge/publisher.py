from __future__ import annotations

import logging
import sqlite3
import threading
import time
from io import StringIO
from typing import Dict, List

import pandas as pd

from showjudge.aggregation import AggregationEngine
from showjudge.db import Database
from showjudge.errors import PublishConflict, StorageBusy, StorageError
from showjudge.models import Notice, Phase, PublishedResult, PublishReport, Role, Track
from showjudge.notifications import Broadcaster
from showjudge.phases import PhaseStore

log = logging.getLogger(__name__)

PUBLISHED_NOTICES: Dict[Track, Notice] = {
    Track.EXPERT: Notice("Judge Voting results are published", "\U0001F3C6"),
    Track.SPECIALTY: Notice("Votes sent to Judges for review", "\U0001F4E8"),
}


class ResultsPublisher:
    """Replaces the published snapshot of one result kind in a single transaction.

    The clear, the recompute and the inserts commit together, so a reader sees
    either the previous snapshot or the new one. Publishes of the same kind are
    serialized by a per-kind lock; different kinds run independently.
    """

    def __init__(
        self,
        database: Database,
        aggregation: AggregationEngine,
        phases: PhaseStore,
        broadcaster: Broadcaster,
        podium_places: int = 3,
        attempts: int = 3,
        retry_delay: float = 0.05,
    ):
        self.database = database
        self.aggregation = aggregation
        self.phases = phases
        self.broadcaster = broadcaster
        self.podium_places = podium_places
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self._locks = {kind: threading.Lock() for kind in Track}

    def publish(self, kind: Track) -> PublishReport:
        """Recompute and replace the snapshot, then announce it.

        An expert publish also locks the track. The snapshot commits before the
        phase write, so if that write fails the new results are already live,
        the track keeps its previous phase and StorageError reaches the caller.
        """
        kind = Track(kind)
        with self._locks[kind]:
            rows = None
            for attempt in range(1, self.attempts + 1):
                try:
                    rows = self._replace_snapshot(kind)
                    break
                except StorageBusy as e:
                    log.warning(f"Publish {kind.value} attempt {attempt}/{self.attempts} hit a busy database: {e}")
                    time.sleep(self.retry_delay * attempt)
            if rows is None:
                raise PublishConflict(f"Could not publish {kind.value} results after {self.attempts} attempts.")

        log.info(f"Published {len(rows)} {kind.value} result row(s)")
        notice = PUBLISHED_NOTICES[kind]
        if kind is Track.EXPERT:
            try:
                self.phases.set_phase(Track.EXPERT, Phase.LOCKED, notice=notice)
            except StorageError:
                log.error(f"Partial publish: {len(rows)} expert result row(s) are live but the track was not locked")
                raise
        else:
            # specialty publish leaves the phase alone
            self.broadcaster.broadcast(Role.ALL, notice.message, notice.icon)
        return PublishReport(result_kind=kind, rows=rows, attempts=attempt)

    def _replace_snapshot(self, kind: Track) -> List[PublishedResult]:
        with self.database.transaction() as conn:
            rows = self._compute(kind, conn)
            conn.execute("DELETE FROM published_results WHERE result_kind=?", (kind.value,))
            conn.executemany(
                """
                INSERT INTO published_results(result_kind, group_id, entry_id, place, score)
                VALUES(?,?,?,?,?)
                """,
                [(r.result_kind.value, r.group_id, r.entry_id, r.place, r.score) for r in rows],
            )
        return rows

    def _compute(self, kind: Track, conn: sqlite3.Connection) -> List[PublishedResult]:
        if kind is Track.EXPERT:
            top = self.aggregation.expert_podiums(self.podium_places, conn=conn)
            group_col, score_col = "group_id", "total_score"
        else:
            top = self.aggregation.specialty_winners(conn=conn)
            group_col, score_col = "track_id", "vote_count"
        return [
            PublishedResult(
                result_kind=kind,
                group_id=int(getattr(r, group_col)),
                entry_id=int(r.entry_id),
                place=int(r.place),
                score=float(getattr(r, score_col)),
            )
            for r in top.itertuples(index=False)
        ]

    # -----------------------
    # Read side
    # -----------------------
    def published_results(self, kind: Track) -> List[PublishedResult]:
        kind = Track(kind)
        with self.database.reading() as conn:
            rows = conn.execute(
                """
                SELECT result_kind, group_id, entry_id, place, score
                FROM published_results WHERE result_kind=?
                ORDER BY group_id, place
                """,
                (kind.value,),
            ).fetchall()
        return [
            PublishedResult(
                result_kind=Track(r["result_kind"]),
                group_id=r["group_id"],
                entry_id=r["entry_id"],
                place=r["place"],
                score=r["score"],
            )
            for r in rows
        ]

    def results_csv(self, kind: Track) -> str:
        frame = pd.DataFrame(
            [r.to_dict() for r in self.published_results(kind)],
            columns=["result_kind", "group_id", "entry_id", "place", "score"],
        )
        buf = StringIO()
        frame.to_csv(buf, index=False)
        return buf.getvalue()
