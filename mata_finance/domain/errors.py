"""
Error taxonomy for the transaction core.

Core operations raise these; the API boundary (``mata_finance.api.app``)
translates each kind into a status code and a user-facing message. Every
kind carries a stable ``code`` so clients can branch without parsing text.
"""

from __future__ import annotations


class MataError(Exception):
    """Base class for every failure the core reports to its callers."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MataError):
    """Malformed or out-of-policy input (OCR deviation, short reason, bad items)."""

    code = "validation_error"


class InvalidStateTransition(MataError):
    """Attempted transition not allowed from the current status, lost races included."""

    code = "invalid_state_transition"

    def __init__(self, current: str, attempted: str, message: str | None = None) -> None:
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Cannot move transaction from '{current}' to '{attempted}'"
        )


class NotFound(MataError):
    """Referenced entity is absent or not owned by the caller."""

    code = "not_found"


class ReplacementAlreadyExists(MataError):
    """The rejected transaction already has a replacement."""

    code = "replacement_already_exists"


class Forbidden(MataError):
    """Caller's role or ownership does not cover the requested scope."""

    code = "forbidden"
