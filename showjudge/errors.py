"""Error taxonomy for the voting engine.

Every error carries a stable ``reason`` string so the request layer can map it
to a response without inspecting messages.
"""

from __future__ import annotations


class VotingError(Exception):
    reason = "voting_error"


class PhaseClosed(VotingError):
    """A submission was attempted while the track is not Open."""

    reason = "phase_closed"


class AlreadySubmitted(VotingError):
    reason = "already_submitted"


class AlreadyVoted(VotingError):
    reason = "already_voted"


class ValidationError(VotingError):
    reason = "validation_error"


class NotFound(ValidationError):
    reason = "not_found"


class StorageError(VotingError):
    reason = "storage_error"


class StorageBusy(StorageError):
    """The database stayed locked past the busy timeout."""


class PublishConflict(StorageError):
    """Every publish attempt collided with another writer."""

    reason = "publish_conflict"
