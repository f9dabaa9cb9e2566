import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from showjudge.admin_scores import ScoreOverride
from showjudge.errors import PublishConflict, StorageBusy, StorageError
from showjudge.models import Phase, Role, Track
from tests.conftest import add_track, count_rows, open_track, score_entry, seed_event


@pytest.fixture
def two_classes(engine):
    """Stock has four scored entries; Modified has one; Vintage has none."""
    event = seed_event(engine, group_names=("Stock", "Modified", "Vintage"))
    open_track(engine, Track.EXPERT)
    for judge, totals in [(1, (9, 8, 7, 6)), (2, (9, 8, 7, 6))]:
        for entry, value in zip(event.entries["Stock"], totals):
            score_entry(engine, event, judge, entry, value, value)
    score_entry(engine, event, 1, event.entries["Modified"][2], 4, 4)
    return event


class TestExpertPublish:

    def test_top_three_per_group(self, engine, two_classes):
        report = engine.publisher.publish(Track.EXPERT)
        stock = [r for r in report.rows if r.group_id == two_classes.groups["Stock"]]
        assert [(r.place, r.entry_id, r.score) for r in stock] == [
            (1, two_classes.entries["Stock"][0], 36.0),
            (2, two_classes.entries["Stock"][1], 32.0),
            (3, two_classes.entries["Stock"][2], 28.0),
        ]
        modified = [r for r in report.rows if r.group_id == two_classes.groups["Modified"]]
        assert [(r.place, r.entry_id) for r in modified] == [(1, two_classes.entries["Modified"][2])]
        assert report.groups == 2

    def test_publish_locks_and_announces_once(self, engine, broadcaster, two_classes):
        before = len(broadcaster.sent)
        engine.publisher.publish(Track.EXPERT)
        assert engine.phases.get_phase(Track.EXPERT) is Phase.LOCKED
        assert broadcaster.sent[before:] == [
            (Role.JUDGE, "Judge Voting results are published", "\U0001F3C6"),
        ]

    def test_publish_is_idempotent(self, engine, two_classes):
        first = engine.publisher.publish(Track.EXPERT)
        second = engine.publisher.publish(Track.EXPERT)
        assert first.rows == second.rows
        assert count_rows(engine, "published_results") == len(first.rows) == 4
        assert engine.publisher.published_results(Track.EXPERT) == first.rows

    def test_republish_replaces_stale_rows(self, engine, two_classes):
        engine.publisher.publish(Track.EXPERT)
        underdog = two_classes.entries["Stock"][3]
        engine.admin_scores.replace_scores(underdog, [
            ScoreOverride(1, two_classes.criteria[0], 10),
            ScoreOverride(1, two_classes.criteria[1], 10),
            ScoreOverride(2, two_classes.criteria[0], 10),
            ScoreOverride(2, two_classes.criteria[1], 10),
        ])
        report = engine.publisher.publish(Track.EXPERT)
        winner = [r for r in report.rows if r.place == 1 and r.group_id == two_classes.groups["Stock"]]
        assert winner[0].entry_id == underdog
        assert count_rows(engine, "published_results") == 4

    def test_snapshot_survives_reopening(self, engine, two_classes):
        published = engine.publisher.publish(Track.EXPERT).rows
        engine.phases.set_phase(Track.EXPERT, Phase.CLOSED)
        engine.phases.set_phase(Track.EXPERT, Phase.OPEN)
        score_entry(engine, two_classes, 3, two_classes.entries["Stock"][3], 10, 10)
        assert engine.publisher.published_results(Track.EXPERT) == published

    def test_nothing_scored_publishes_nothing(self, engine):
        seed_event(engine)
        report = engine.publisher.publish(Track.EXPERT)
        assert report.rows == []
        assert engine.phases.get_phase(Track.EXPERT) is Phase.LOCKED

    def test_csv_export(self, engine, two_classes):
        engine.publisher.publish(Track.EXPERT)
        lines = engine.publisher.results_csv(Track.EXPERT).splitlines()
        assert lines[0] == "result_kind,group_id,entry_id,place,score"
        assert len(lines) == 5
        assert lines[1].startswith("expert,")

    def test_csv_export_before_publish(self, engine):
        assert engine.publisher.results_csv(Track.SPECIALTY).strip() == "result_kind,group_id,entry_id,place,score"


class TestSpecialtyPublish:

    def setup_method(self):
        self.votes = {"X": 5, "Y": 3}

    def _vote(self, engine):
        event = seed_event(engine)
        track = add_track(engine)
        open_track(engine, Track.SPECIALTY)
        x, y = event.entries["Stock"][:2]
        voter = 1
        for entry, n in [(x, self.votes["X"]), (y, self.votes["Y"])]:
            for _ in range(n):
                engine.submissions.cast_vote(voter, track, entry)
                voter += 1
        return track, x

    def test_single_winner_per_track(self, engine):
        track, x = self._vote(engine)
        report = engine.publisher.publish(Track.SPECIALTY)
        assert [(r.group_id, r.entry_id, r.place, r.score) for r in report.rows] == [(track, x, 1, 5.0)]

    def test_phase_is_left_alone(self, engine, broadcaster):
        self._vote(engine)
        engine.publisher.publish(Track.SPECIALTY)
        assert engine.phases.get_phase(Track.SPECIALTY) is Phase.OPEN
        assert broadcaster.sent[-1] == (Role.ALL, "Votes sent to Judges for review", "\U0001F4E8")

    def test_deleting_votes_does_not_touch_snapshot(self, engine):
        track, x = self._vote(engine)
        published = engine.publisher.publish(Track.SPECIALTY).rows
        for vote in engine.submissions.list_votes(track):
            if vote["entry_id"] == x:
                engine.submissions.delete_vote(vote["vote_id"])
        assert engine.publisher.published_results(Track.SPECIALTY) == published
        assert engine.aggregation.rank_specialty(track)[0].entry_id != x

    def test_kinds_do_not_overwrite_each_other(self, engine):
        self._vote(engine)
        engine.publisher.publish(Track.SPECIALTY)
        engine.publisher.publish(Track.EXPERT)
        assert len(engine.publisher.published_results(Track.SPECIALTY)) == 1
        assert engine.publisher.published_results(Track.EXPERT) == []


class TestPublishRetries:

    def test_busy_database_is_retried(self, engine, monkeypatch):
        seed_event(engine)
        engine.publisher.retry_delay = 0
        real = engine.publisher._replace_snapshot
        calls = []

        def flaky(kind):
            calls.append(kind)
            if len(calls) == 1:
                raise StorageBusy("database is locked")
            return real(kind)

        monkeypatch.setattr(engine.publisher, "_replace_snapshot", flaky)
        report = engine.publisher.publish(Track.EXPERT)
        assert report.attempts == 2

    def test_gives_up_with_conflict(self, engine, monkeypatch):
        seed_event(engine)
        engine.publisher.retry_delay = 0

        def always_busy(kind):
            raise StorageBusy("database is locked")

        monkeypatch.setattr(engine.publisher, "_replace_snapshot", always_busy)
        with pytest.raises(PublishConflict):
            engine.publisher.publish(Track.EXPERT)
        # a failed publish does not lock the track
        assert engine.phases.get_phase(Track.EXPERT) is Phase.CLOSED


class TestConcurrentPublish:

    def test_readers_never_see_a_partial_snapshot(self, engine, two_classes):
        expected = engine.publisher.publish(Track.EXPERT).rows
        stop = threading.Event()

        def republish():
            try:
                for _ in range(20):
                    engine.publisher.publish(Track.EXPERT)
            finally:
                stop.set()

        def read():
            seen = []
            while not stop.is_set():
                seen.append(engine.publisher.published_results(Track.EXPERT))
            return seen

        with ThreadPoolExecutor(max_workers=4) as pool:
            readers = [pool.submit(read) for _ in range(3)]
            pool.submit(republish).result(timeout=60)
            snapshots = [rows for r in readers for rows in r.result(timeout=10)]

        assert snapshots
        assert all(rows == expected for rows in snapshots)

    def test_concurrent_publishes_leave_one_snapshot(self, engine, two_classes):
        single = len(engine.publisher.publish(Track.EXPERT).rows)
        with ThreadPoolExecutor(max_workers=6) as pool:
            reports = list(pool.map(lambda _: engine.publisher.publish(Track.EXPERT), range(6)))
        assert all(len(r.rows) == single for r in reports)
        assert count_rows(engine, "published_results") == single == 4

    def test_kinds_publish_independently(self, engine, two_classes):
        track = add_track(engine)
        open_track(engine, Track.SPECIALTY)
        engine.submissions.cast_vote(1, track, two_classes.entries["Stock"][0])
        kinds = [Track.EXPERT, Track.SPECIALTY] * 3
        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(engine.publisher.publish, kinds))
        assert len(engine.publisher.published_results(Track.EXPERT)) == 4
        assert len(engine.publisher.published_results(Track.SPECIALTY)) == 1


class TestPartialPublish:

    def test_failed_lock_leaves_snapshot_live(self, engine, two_classes, monkeypatch):
        def broken_save(config):
            raise OSError("disk full")

        monkeypatch.setattr(engine.phases._config_store, "save", broken_save)
        with pytest.raises(StorageError):
            engine.publisher.publish(Track.EXPERT)
        assert len(engine.publisher.published_results(Track.EXPERT)) == 4
        assert engine.phases.get_phase(Track.EXPERT) is Phase.OPEN
