"""Error taxonomy shared by every reconciliation component.

Each error carries a ``details`` dict (transaction code, reason, entity id)
so the outer layer can render a precise message without parsing strings.
"""

from __future__ import annotations

from typing import Any, Optional


class PayReconError(Exception):
    """Base class for all domain errors raised by payrecon."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.details}


class ValidationError(PayReconError):
    """Malformed input (missing transaction code, percentage out of range...).

    Raised before any write is attempted.
    """


class DuplicateError(PayReconError):
    """A transaction code collides with one already stored."""


class NotFoundError(PayReconError):
    """The referenced session / batch / payment / record does not exist."""


class ConsistencyError(PayReconError):
    """A multi-key write failed; the owning entity was marked FAILED."""


class StoreError(PayReconError):
    """The keyed store could not complete a read or write."""


class AggregationCancelled(PayReconError):
    """A long-running report was aborted by its caller."""
