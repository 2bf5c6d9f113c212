"""Exception hierarchy for stageline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base error for pipeline operations.

    Keyword context (ids, step names) is kept on the instance so callers can
    log or report it without parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        pipeline_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.pipeline_id = pipeline_id
        self.instance_id = instance_id
        self.step_id = step_id
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class NotFoundError(PipelineError):
    """A definition, instance, approval or step id did not resolve."""


class PipelineNotFoundError(NotFoundError):
    pass


class InstanceNotFoundError(NotFoundError):
    pass


class ApprovalNotFoundError(NotFoundError):
    pass


class StepNotFoundError(NotFoundError):
    pass


class PipelineValidationError(PipelineError):
    """Raised when a definition's step graph is empty or structurally invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: {'; '.join(self.errors)}"


class StateConflictError(PipelineError):
    """The target is not in a state that allows the requested operation."""


class DuplicateInstanceError(StateConflictError):
    """The entity already has a non-terminal pipeline instance."""


class ChainLimitExceededError(PipelineError):
    """Too many steps were auto-chained within a single event."""


class StoreError(Exception):
    """Persistence failure; propagated so the transport can redeliver."""


class ConcurrencyConflictError(StoreError):
    """A replace was attempted with a stale etag."""

    def __init__(self, collection: str, key: str, expected: Optional[int] = None):
        super().__init__(
            f"Concurrent modification of {collection}/{key} (expected etag {expected})"
        )
        self.collection = collection
        self.key = key
        self.expected = expected


class DuplicateDocumentError(StoreError):
    """A create was attempted for a key that already exists."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"Document {collection}/{key} already exists")
        self.collection = collection
        self.key = key


__all__ = [
    "PipelineError",
    "NotFoundError",
    "PipelineNotFoundError",
    "InstanceNotFoundError",
    "ApprovalNotFoundError",
    "StepNotFoundError",
    "PipelineValidationError",
    "StateConflictError",
    "DuplicateInstanceError",
    "ChainLimitExceededError",
    "StoreError",
    "ConcurrencyConflictError",
    "DuplicateDocumentError",
]
