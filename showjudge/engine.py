from __future__ import annotations

from typing import Optional

from showjudge.admin_scores import AdminScoreEditor
from showjudge.aggregation import AggregationEngine
from showjudge.config import AppConfig, ConfigStore, resolve_database_path
from showjudge.db import Database
from showjudge.notifications import Broadcaster, NotificationHub
from showjudge.phases import PhaseStore
from showjudge.publisher import ResultsPublisher
from showjudge.submissions import SubmissionGuard


class VotingEngine:
    """All components of the voting lifecycle, built from one config and one broadcaster."""

    def __init__(
        self,
        config_store: ConfigStore,
        config: AppConfig,
        broadcaster: Broadcaster,
        database: Optional[Database] = None,
    ):
        self.config = config
        self.broadcaster = broadcaster
        self.database = database or Database(resolve_database_path(config), busy_timeout=config.busy_timeout_seconds)
        self.phases = PhaseStore(config_store, config, broadcaster)
        self.submissions = SubmissionGuard(self.database, self.phases)
        self.aggregation = AggregationEngine(self.database)
        self.publisher = ResultsPublisher(
            self.database,
            self.aggregation,
            self.phases,
            broadcaster,
            podium_places=config.podium_places,
            attempts=config.publish_attempts,
        )
        self.admin_scores = AdminScoreEditor(self.database)

    @classmethod
    def from_store(cls, config_store: ConfigStore, broadcaster: Optional[Broadcaster] = None) -> "VotingEngine":
        config = config_store.load()
        broadcaster = broadcaster or NotificationHub(send_timeout=config.notification_timeout_seconds)
        engine = cls(config_store, config, broadcaster)
        engine.database.init()
        return engine
