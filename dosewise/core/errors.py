"""Error taxonomy shared by the rewards aggregator and the calendar sync engine."""

from __future__ import annotations


class DosewiseError(Exception):
    """Base class for all dosewise errors."""


class ValidationError(DosewiseError):
    """Malformed input, rejected before any store or provider call."""


class NotConnectedError(DosewiseError):
    """The user has no usable calendar credential."""

    def __init__(self, message: str = "Google Calendar not connected") -> None:
        super().__init__(message)


class RegimenNotFoundError(DosewiseError):
    """The regimen does not exist or belongs to another user."""

    def __init__(self, regimen_id: str) -> None:
        super().__init__(f"Regimen not found: {regimen_id}")
        self.regimen_id = regimen_id


class StoreUnavailableError(DosewiseError):
    """The backing data store could not be reached."""


class SyncTimeoutError(DosewiseError):
    """A calendar sync ran past its timeout."""


class PartialFailure(DosewiseError):
    """Some items of a batch failed. Carried in outcomes, not raised."""

    def __init__(self, succeeded: int, attempted: int) -> None:
        super().__init__(f"{attempted - succeeded} of {attempted} events failed")
        self.succeeded = succeeded
        self.attempted = attempted
