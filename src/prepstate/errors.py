"""Error taxonomy for the derived-state engine."""

from __future__ import annotations


class PrepStateError(Exception):
    """Base class for all engine errors."""


class MalformedEvent(PrepStateError):
    """A raw attempt record could not be normalized.

    Folds drop the record and log it; this never aborts a fold.
    """

    def __init__(self, reason: str, raw: object = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class StaleRefresh(PrepStateError):
    """An authoritative refresh landed after a newer one was requested."""

    def __init__(self, version: int, current_version: int) -> None:
        super().__init__(f"Refresh v{version} superseded by v{current_version}")
        self.version = version
        self.current_version = current_version


class DurableStoreUnavailable(PrepStateError):
    """The backing store could not be read or written."""


class PartialCompletionFailure(PrepStateError):
    """Completion flag and point award did not both succeed.

    ``completed`` and ``awarded`` record which half is durably confirmed,
    so a caller retries only the remaining half.
    """

    def __init__(self, quest_id: str, completed: bool, awarded: bool) -> None:
        super().__init__(
            f"Quest {quest_id} half-applied (completed={completed}, awarded={awarded})"
        )
        self.quest_id = quest_id
        self.completed = completed
        self.awarded = awarded

    @property
    def retryable(self) -> bool:
        return True


class ClaimNotConfirmed(PartialCompletionFailure):
    """A claim could not be durably confirmed within the claim timeout."""


class QuestGenerationCapExceeded(PrepStateError):
    """Generation produced more quests than the active cap allows.

    The generation pass clamps instead of raising; kept for callers that
    validate quest batches from other sources.
    """


class QuestNotFound(PrepStateError):
    """No quest with the given id exists in the user's snapshot."""


class QuestNotClaimable(PrepStateError):
    """The quest has not reached its target or has expired."""
