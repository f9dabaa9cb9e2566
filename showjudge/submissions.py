from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Mapping, Optional, Union

from showjudge import catalog
from showjudge.db import Database
from showjudge.errors import AlreadySubmitted, AlreadyVoted, NotFound, PhaseClosed, ValidationError
from showjudge.models import SubmitReceipt, Track, VoteReceipt
from showjudge.phases import PhaseStore

log = logging.getLogger(__name__)

ScoreValue = Union[int, str, None]


def parse_score(raw: ScoreValue, what: str) -> Optional[int]:
    """None/blank means "not provided"; anything else must be a whole number."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid score for {what}.")
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        raise ValidationError(f"Invalid score for {what}: {raw!r}.") from None


class SubmissionGuard:
    """At-most-once score sheets per (judge, entry) and votes per (track, voter).

    The duplicate check and the insert share one BEGIN IMMEDIATE transaction,
    and the unique keys on score_records / vote_records reject anything that
    slips past it.
    """

    def __init__(self, database: Database, phases: PhaseStore):
        self.database = database
        self.phases = phases

    # -----------------------
    # Expert scores
    # -----------------------
    def submit_scores(
        self,
        submitter_id: int,
        entry_id: int,
        criterion_scores: Mapping[int, ScoreValue],
    ) -> SubmitReceipt:
        if not self.phases.is_open(Track.EXPERT):
            raise PhaseClosed("Judge voting is not open.")

        scores: Dict[int, int] = {}
        for criterion_id, raw in criterion_scores.items():
            value = parse_score(raw, f"criterion {criterion_id}")
            if value is not None:
                scores[int(criterion_id)] = value
        if not scores:
            raise ValidationError("No scores provided.")

        with self.database.transaction() as conn:
            # phase may have changed while waiting for the write lock
            if not self.phases.is_open(Track.EXPERT):
                raise PhaseClosed("Judge voting is not open.")
            entry = catalog.require_active_entry(conn, entry_id)
            self._check_criteria(conn, entry, scores)

            scored = conn.execute(
                "SELECT COUNT(*) AS count FROM score_records WHERE judge_id=? AND entry_id=?",
                (submitter_id, entry_id),
            ).fetchone()
            if scored["count"] > 0:
                raise AlreadySubmitted(f"Entry {entry_id} already scored by judge {submitter_id}.")

            try:
                conn.executemany(
                    "INSERT INTO score_records(judge_id, entry_id, criterion_id, score) VALUES(?,?,?,?)",
                    [(submitter_id, entry_id, cid, value) for cid, value in scores.items()],
                )
            except sqlite3.IntegrityError as e:
                raise AlreadySubmitted(f"Entry {entry_id} already scored by judge {submitter_id}.") from e

        return SubmitReceipt(submitter_id=submitter_id, entry_id=entry_id, inserted=len(scores))

    @staticmethod
    def _check_criteria(conn: sqlite3.Connection, entry: sqlite3.Row, scores: Dict[int, int]) -> None:
        criteria = catalog.criteria_for_category(conn, entry["category_id"])
        for cid, value in scores.items():
            criterion = criteria.get(cid)
            if criterion is None:
                raise ValidationError(f"Criterion {cid} does not apply to entry {entry['entry_id']}.")
            if not criterion["min_score"] <= value <= criterion["max_score"]:
                raise ValidationError(
                    f"Score out of range for {criterion['label']}: {value} "
                    f"({criterion['min_score']}-{criterion['max_score']})."
                )

    def has_scored(self, submitter_id: int, entry_id: int) -> bool:
        with self.database.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM score_records WHERE judge_id=? AND entry_id=? LIMIT 1",
                (submitter_id, entry_id),
            ).fetchone()
        return row is not None

    # -----------------------
    # Specialty votes
    # -----------------------
    def cast_vote(self, voter_id: int, track_id: int, entry_id: int) -> VoteReceipt:
        if not self.phases.is_open(Track.SPECIALTY):
            raise PhaseClosed("Specialty voting is not open.")

        with self.database.transaction() as conn:
            if not self.phases.is_open(Track.SPECIALTY):
                raise PhaseClosed("Specialty voting is not open.")
            track = catalog.get_track(conn, track_id)
            if not track["is_active"]:
                raise ValidationError(f"Specialty vote {track_id} is not active.")
            if not catalog.voter_allowed(conn, track, voter_id):
                raise ValidationError(f"Voter {voter_id} may not vote in {track['name']}.")
            entry = catalog.get_entry(conn, entry_id)
            if not catalog.entry_eligible(track, entry):
                raise ValidationError(f"Entry {entry_id} is not eligible for {track['name']}.")

            try:
                cur = conn.execute(
                    "INSERT INTO vote_records(track_id, entry_id, voter_id) VALUES(?,?,?)",
                    (track_id, entry_id, voter_id),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyVoted(f"Voter {voter_id} already voted in {track['name']}.") from e

        return VoteReceipt(vote_id=cur.lastrowid, track_id=track_id, entry_id=entry_id, voter_id=voter_id)

    def list_votes(self, track_id: int) -> List[Dict[str, object]]:
        with self.database.reading() as conn:
            catalog.get_track(conn, track_id)
            rows = conn.execute(
                """
                SELECT vote_id, track_id, entry_id, voter_id, voted_at
                FROM vote_records WHERE track_id=?
                ORDER BY voted_at DESC, vote_id DESC
                """,
                (track_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_vote(self, vote_id: int) -> None:
        """Moderation: changes live tallies, never an already-published snapshot."""
        with self.database.transaction() as conn:
            cur = conn.execute("DELETE FROM vote_records WHERE vote_id=?", (vote_id,))
            if cur.rowcount == 0:
                raise NotFound(f"Vote {vote_id} not found.")
        log.info(f"Deleted vote {vote_id}")
