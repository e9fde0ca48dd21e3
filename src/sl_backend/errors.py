"""
Error taxonomy for the linking core.

Validation, duplicate and not-found errors are recovered at the call boundary
(CLI / API) and never abort a batch run. Provider errors are recorded per item.
Persistence errors and state errors are escalated to the caller.
"""

from __future__ import annotations

from typing import Optional


class LinkerError(RuntimeError):
    """Base class for all expected failures raised by sl_backend."""


class ValidationError(LinkerError):
    """Bad input shape. Nothing was written."""


class DuplicateRejected(LinkerError):
    """
    A link dedup invariant would be violated. Nothing was written.

    ``rule`` names the check that fired: ``source_anchor``, ``global_anchor``
    or ``duplicate_edge``.
    """

    def __init__(self, message: str, *, rule: str) -> None:
        super().__init__(message)
        self.rule = rule


class NotFound(LinkerError):
    """A referenced row does not exist."""


class ProviderError(LinkerError):
    """The embedding provider failed (timeout, HTTP error, malformed response)."""


class PersistenceError(LinkerError):
    """
    A store write failed after a destructive step.

    Distinct from "no rows affected", which is a valid outcome.
    """

    def __init__(self, message: str, *, item_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class StateError(LinkerError):
    """The operation is not allowed in the current run state."""


__all__ = [
    "LinkerError",
    "ValidationError",
    "DuplicateRejected",
    "NotFound",
    "ProviderError",
    "PersistenceError",
    "StateError",
]
