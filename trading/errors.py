"""Error taxonomy for the autonomous trading core."""

from __future__ import annotations


class AutonomousError(Exception):
    """Base class for failures the tick loop knows how to contain."""


class DataUnavailable(AutonomousError):
    """Market data could not be fetched; the step is retried next tick."""


class SubmissionError(AutonomousError):
    """Trade was never broadcast. No rate-limit slot is consumed."""


class ChainError(AutonomousError):
    """Trade was broadcast but the finalized transaction is missing or failed."""

    def __init__(self, message: str, tx_hash: str = "") -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class BalanceMismatch(ChainError):
    """Transaction settled but the expected balance change did not happen."""


class StorageError(AutonomousError):
    """Persistent storage failed; nothing from the current step is committed."""


class ConfigurationError(AutonomousError):
    """A rule is missing something it needs to run (e.g. exit conditions)."""
