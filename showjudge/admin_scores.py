from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List

from showjudge import catalog
from showjudge.db import Database
from showjudge.errors import ValidationError
from showjudge.submissions import ScoreValue, parse_score

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreOverride:
    judge_id: int
    criterion_id: int
    score: ScoreValue


class AdminScoreEditor:
    """Operator correction tool: replaces every judge's scores for one entry.

    Skips the phase check and the already-submitted check on purpose. Values
    must still be whole numbers and name an existing criterion; blanks are
    dropped, so an all-blank sheet clears the entry.
    """

    def __init__(self, database: Database):
        self.database = database

    def replace_scores(self, entry_id: int, overrides: Iterable[ScoreOverride]) -> int:
        rows = []
        seen = set()
        for o in overrides:
            value = parse_score(o.score, f"judge {o.judge_id}, criterion {o.criterion_id}")
            if value is None:
                continue
            key = (int(o.judge_id), int(o.criterion_id))
            if key in seen:
                raise ValidationError(f"Duplicate score for judge {key[0]}, criterion {key[1]}.")
            seen.add(key)
            rows.append((key[0], entry_id, key[1], value))

        with self.database.transaction() as conn:
            catalog.get_entry(conn, entry_id)
            known = set(catalog.criterion_ids(conn))
            unknown = sorted({r[2] for r in rows} - known)
            if unknown:
                raise ValidationError(f"Unknown criteria: {unknown}")

            removed = conn.execute("DELETE FROM score_records WHERE entry_id=?", (entry_id,)).rowcount
            conn.executemany(
                "INSERT INTO score_records(judge_id, entry_id, criterion_id, score) VALUES(?,?,?,?)",
                rows,
            )

        log.info(f"Replaced scores for entry {entry_id}: removed {removed}, inserted {len(rows)}")
        return len(rows)

    def scores_for_entry(self, entry_id: int) -> List[dict]:
        with self.database.reading() as conn:
            catalog.get_entry(conn, entry_id)
            rows = conn.execute(
                """
                SELECT judge_id, criterion_id, score FROM score_records
                WHERE entry_id=? ORDER BY judge_id, criterion_id
                """,
                (entry_id,),
            ).fetchall()
        return [dict(r) for r in rows]
