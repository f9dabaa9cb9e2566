from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from showjudge.config import AppConfig, ConfigStore
from showjudge.errors import StorageError
from showjudge.models import Notice, Phase, Role, Track
from showjudge.notifications import Broadcaster

log = logging.getLogger(__name__)

TRACK_AUDIENCE: Dict[Track, Role] = {
    Track.EXPERT: Role.JUDGE,
    Track.SPECIALTY: Role.ALL,
}

PHASE_NOTICES: Dict[Track, Dict[Phase, Notice]] = {
    Track.EXPERT: {
        Phase.OPEN: Notice("Judge Voting is open", "\U0001F513"),
        Phase.CLOSED: Notice("Judge Voting is closed", "\U0001F512"),
        Phase.LOCKED: Notice("Judge Voting is locked", "\U0001F512"),
    },
    Track.SPECIALTY: {
        Phase.OPEN: Notice("Cast your vote by clicking 'Vote Here!'", "\U0001F5F3\uFE0F"),
        Phase.CLOSED: Notice("Specialty Voting is closed", "\U0001F512"),
        Phase.LOCKED: Notice("Specialty Voting is locked", "\U0001F512"),
    },
}


class PhaseStore:
    """Current phase of each track, persisted in the application config.

    Any transition is legal. A write that cannot be persisted is undone in
    memory and reported as StorageError; a persisted write is announced to the
    track's audience.
    """

    def __init__(self, config_store: ConfigStore, config: AppConfig, broadcaster: Broadcaster):
        self._config_store = config_store
        self._config = config
        self._broadcaster = broadcaster
        self._lock = threading.Lock()
        self._phases: Dict[Track, Phase] = {t: config.phase_for(t) for t in Track}

    def get_phase(self, track: Track) -> Phase:
        return self._phases[Track(track)]

    def snapshot(self) -> Dict[str, str]:
        return {t.value: p.value for t, p in self._phases.items()}

    def set_phase(self, track: Track, phase: Phase, notice: Optional[Notice] = None) -> Phase:
        """Write ``phase`` and return the one it replaced.

        ``notice`` overrides the default announcement (the publisher uses this
        so that locking-by-publish produces a single "results published" event).
        """
        track, phase = Track(track), Phase(phase)
        with self._lock:
            previous = self._phases[track]
            self._phases[track] = phase
            updated = self._config.with_phase(track, phase)
            try:
                self._config_store.save(updated)
            except OSError as e:
                self._phases[track] = previous
                log.warning(f"Could not persist {track.value} phase {phase.value}: {e}")
                raise StorageError(f"Could not persist {track.value} phase: {e}") from e
            self._config = updated

        log.info(f"{track.value} voting: {previous.value} -> {phase.value}")
        notice = notice or PHASE_NOTICES[track][phase]
        self._broadcaster.broadcast(TRACK_AUDIENCE[track], notice.message, notice.icon)
        return previous

    def is_open(self, track: Track) -> bool:
        return self.get_phase(track) is Phase.OPEN

    def results_visible(self, track: Track) -> bool:
        return self.get_phase(track) is Phase.LOCKED
