"""
Error taxonomy for gemstone ledger operations.

Precondition violations and NoActiveSession are programming errors.
StoreUnavailable and PersistFailed are operational failures the caller may
retry. InsufficientBalance is a normal business-rule rejection.
"""


class GemstoneError(Exception):
    """Base class for all ledger errors."""


class NoActiveSession(GemstoneError):
    """An operation needed a loaded account but no user session is active."""


class StoreUnavailable(GemstoneError):
    """The profile store could not be read (network failure or timeout)."""


class PersistFailed(GemstoneError):
    """A balance change could not be written; the local balance was left unchanged."""


class InsufficientBalance(GemstoneError):
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough gemstones: requested {requested}, available {available}")


class PreconditionViolation(GemstoneError, ValueError):
    """Invalid argument, such as a zero or negative amount or an empty user id."""


class ProfileStoreError(Exception):
    """Raised by ProfileStore implementations when a fetch or upsert fails."""
