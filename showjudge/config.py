from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

from showjudge.models import Phase, Track

log = logging.getLogger(__name__)

CONFIG_ENV = "SHOWJUDGE_CONFIG"
DB_PATH_ENV = "SHOWJUDGE_DB_PATH"
DEFAULT_CONFIG_PATH = "config.json"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_PHASE_KEYS = {
    Track.EXPERT: "expert_voting_status",
    Track.SPECIALTY: "specialty_voting_status",
}


@dataclass
class AppConfig:
    database_path: str = "showjudge.sqlite"
    expert_voting_status: str = Phase.CLOSED.value
    specialty_voting_status: str = Phase.CLOSED.value
    podium_places: int = 3
    publish_attempts: int = 3
    busy_timeout_seconds: float = 5.0
    notification_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    def phase_for(self, track: Track) -> Phase:
        raw = getattr(self, _PHASE_KEYS[track])
        try:
            return Phase.parse(raw)
        except ValueError:
            log.warning(f"Unknown phase {raw!r} for {track.value} track; using closed")
            return Phase.CLOSED

    def with_phase(self, track: Track, phase: Phase) -> "AppConfig":
        return replace(self, **{_PHASE_KEYS[track]: phase.value})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ConfigStore:
    """Loads and atomically rewrites the JSON application config."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    @classmethod
    def from_env(cls) -> "ConfigStore":
        return cls(os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH))

    def load(self) -> AppConfig:
        config = AppConfig()
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    config = AppConfig.from_dict(data)
                else:
                    log.warning(f"{self.path} does not hold an object; using defaults")
            except (OSError, ValueError, TypeError) as e:
                log.warning(f"Failed to load {self.path} ({e}); using defaults")
        else:
            log.info(f"No config at {self.path}; using defaults")

        return config

    def save(self, config: AppConfig) -> None:
        """Write via temp file + rename so a crash never leaves a half-written config."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(asdict(config), f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


def resolve_database_path(config: AppConfig) -> str:
    """The database to open: $SHOWJUDGE_DB_PATH if set, else the configured path.

    The override is never written back to the config file.
    """
    return os.getenv(DB_PATH_ENV) or config.database_path


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
