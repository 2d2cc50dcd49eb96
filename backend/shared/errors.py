"""Exception hierarchy for the coordination service.

Arbitration outcomes (lock busy, stale, immutable) are *not* exceptions; they
come back as WriteResult statuses. Only programming errors and genuine
upstream/persistence failures raise.
"""
from __future__ import annotations


class ScorelineError(Exception):
    """Base class for all service-specific errors."""


class InvalidMatchId(ScorelineError, ValueError):
    """Raised when a match id cannot be mapped onto the MATCH lock key space."""

    def __init__(self, match_id: object, reason: str) -> None:
        self.match_id = match_id
        super().__init__(f"Invalid match id {match_id!r}: {reason}")


class RegistryError(ScorelineError):
    """Raised when a provenance or job registration is invalid."""


class UpstreamError(ScorelineError):
    """Raised when the upstream pull endpoint cannot deliver a match state."""

    def __init__(self, match_id: int, message: str, status_code: int | None = None) -> None:
        self.match_id = match_id
        self.status_code = status_code
        super().__init__(f"Upstream fetch failed for match {match_id}: {message}")


class PriorityMismatch(ScorelineError, ValueError):
    """Raised when an update carries a priority other than its source's configured level."""

    def __init__(self, source: str, priority: int, expected: int) -> None:
        self.source = source
        self.priority = priority
        self.expected = expected
        super().__init__(f"Source {source!r} has priority {expected}, update claims {priority}")
