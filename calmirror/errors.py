from __future__ import annotations


class CalMirrorError(Exception):
    """Base class for errors raised by the mirror engine."""


class AccessError(CalMirrorError):
    """A calendar could not be listed (missing, forbidden or unreachable)."""

    def __init__(self, calendar_id: str, message: str) -> None:
        super().__init__(f"{calendar_id}: {message}")
        self.calendar_id = calendar_id


class TransientError(CalMirrorError):
    """A single create/update/delete call failed and was not applied."""


class ConfigurationError(CalMirrorError):
    """A pass cannot start, e.g. the destination calendar is unreachable."""
