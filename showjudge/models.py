from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class Track(str, Enum):
    """The two independent voting processes. Also used as the published result kind."""

    EXPERT = "expert"
    SPECIALTY = "specialty"


class Phase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    LOCKED = "locked"

    @classmethod
    def parse(cls, value: str) -> "Phase":
        """Accept both the stored values and the legacy Close/Open/Lock spellings."""
        raw = str(value).strip().lower()
        legacy = {"close": cls.CLOSED, "lock": cls.LOCKED}
        if raw in legacy:
            return legacy[raw]
        return cls(raw)


class Role(str, Enum):
    ADMIN = "admin"
    JUDGE = "judge"
    REGISTRAR = "registrar"
    VENDOR = "vendor"
    USER = "user"
    # reserved fan-out filter, never a caller role
    ALL = "all"


SUBSCRIBER_ROLES = tuple(r for r in Role if r is not Role.ALL)


@dataclass(frozen=True)
class Notice:
    message: str
    icon: str


@dataclass(frozen=True)
class Standing:
    """One row of a live ranking: expert totals or specialty vote counts."""

    entry_id: int
    score: int
    group_id: Optional[int] = None
    judge_count: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "entry_id": self.entry_id,
            "score": self.score,
            "group_id": self.group_id,
            "judge_count": self.judge_count,
        }


@dataclass(frozen=True)
class PublishedResult:
    """Snapshot row. group_id is the class for expert results, the track for specialty."""

    result_kind: Track
    group_id: int
    entry_id: int
    place: int
    score: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "result_kind": self.result_kind.value,
            "group_id": self.group_id,
            "entry_id": self.entry_id,
            "place": self.place,
            "score": self.score,
        }


@dataclass(frozen=True)
class SubmitReceipt:
    submitter_id: int
    entry_id: int
    inserted: int


@dataclass(frozen=True)
class VoteReceipt:
    vote_id: int
    track_id: int
    entry_id: int
    voter_id: int


@dataclass
class PublishReport:
    result_kind: Track
    rows: list = field(default_factory=list)
    attempts: int = 1

    @property
    def groups(self) -> int:
        return len({r.group_id for r in self.rows})
