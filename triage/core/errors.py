"""
Error taxonomy shared by the engine, the remote store adapters and the API.

NotAuthenticatedError and ValidationError are raised before any cache change.
RemoteWriteError is raised after the optimistic state has been rolled back.
NotFoundError is raised by remote adapters; the engine itself treats a target
missing from its cache as a zero-delta no-op rather than an error.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for every error raised by this package."""


class NotAuthenticatedError(TriageError):
    def __init__(self, message: str = "No active user") -> None:
        super().__init__(message)


class ValidationError(TriageError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(TriageError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class RemoteReadError(TriageError):
    """A read against the remote store failed (network, server, decode)."""


class RemoteWriteError(TriageError):
    """A write against the remote store failed; the cache has been restored."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class SupersededError(TriageError):
    """A mutation was replaced by a newer one before it settled; nothing to surface."""


class ReorderSuperseded(SupersededError):
    """A queue reorder was replaced by a newer drag before it settled."""
