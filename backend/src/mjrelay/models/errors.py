"""Errors shared by lifecycle-tracked entities."""


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid status transition."""

    pass
