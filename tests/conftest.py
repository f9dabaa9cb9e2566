"""Shared fixtures and helpers."""

from types import SimpleNamespace
from typing import Dict, List, Sequence

import pytest

from showjudge import catalog
from showjudge.config import AppConfig, ConfigStore
from showjudge.engine import VotingEngine
from showjudge.models import Phase, Role, Track
from showjudge.notifications import BroadcastReceipt, Broadcaster


class RecordingBroadcaster(Broadcaster):
    """Keeps every announcement instead of sending it anywhere."""

    def __init__(self):
        self.sent = []

    def broadcast(self, role_filter, message, icon):
        self.sent.append((Role(role_filter), message, icon))
        return BroadcastReceipt(recipients=0)


@pytest.fixture
def config_store(tmp_path, monkeypatch):
    monkeypatch.delenv("SHOWJUDGE_DB_PATH", raising=False)
    store = ConfigStore(tmp_path / "config.json")
    store.save(AppConfig(database_path=str(tmp_path / "show.sqlite")))
    return store


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def engine(config_store, broadcaster):
    return VotingEngine.from_store(config_store, broadcaster)


def seed_event(
    engine: VotingEngine,
    group_names: Sequence[str] = ("Stock",),
    entries_per_group: int = 4,
    criteria: Sequence[str] = ("Paint", "Interior"),
    max_score: int = 10,
) -> SimpleNamespace:
    """Register one category with its criteria, groups and entries.

    Returns:
        namespace with ``category``, ``criteria`` (ids in order), ``groups``
        ({name: id}) and ``entries`` ({group name: [entry ids]}).
    """
    groups: Dict[str, int] = {}
    entries: Dict[str, List[int]] = {}
    with engine.database.transaction() as conn:
        category_id = catalog.add_category(conn, "Cars")
        criterion_ids = [
            catalog.add_criterion(conn, category_id, label, 0, max_score, order)
            for order, label in enumerate(criteria)
        ]
        for name in group_names:
            group_id = catalog.add_group(conn, name, category_id)
            groups[name] = group_id
            entries[name] = [
                catalog.add_entry(conn, f"{name} #{n + 1}", category_id, group_id)
                for n in range(entries_per_group)
            ]
    return SimpleNamespace(category=category_id, criteria=criterion_ids, groups=groups, entries=entries)


def add_track(engine: VotingEngine, name: str = "People's Choice", **kwargs) -> int:
    with engine.database.transaction() as conn:
        return catalog.add_specialty_track(conn, name, **kwargs)


def open_track(engine: VotingEngine, track: Track) -> None:
    engine.phases.set_phase(track, Phase.OPEN)


def score_entry(engine: VotingEngine, event: SimpleNamespace, judge_id: int, entry_id: int, *values) -> None:
    """Submit one sheet; ``values`` line up with ``event.criteria``."""
    engine.submissions.submit_scores(judge_id, entry_id, dict(zip(event.criteria, values)))


def count_rows(engine: VotingEngine, table: str) -> int:
    with engine.database.reading() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
