"""Workflow error taxonomy.

Every error carries a stable ``code`` and a ``context`` dict (current state,
attempted action, ids) so the API layer can render an accurate message
without re-deriving state. ``retryable`` errors are retried once internally
by the component that hit them before they surface.
"""
from typing import Any, Optional


class WorkflowError(Exception):
    code = "workflow_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "context": self.context}


class NotFound(WorkflowError):
    code = "not_found"
    http_status = 404


class Conflict(WorkflowError):
    """A conditional write lost a race. Recoverable by re-reading."""
    code = "conflict"
    http_status = 409
    retryable = True


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, entity: str, current: str, attempted: str, message: Optional[str] = None, **context: Any):
        super().__init__(
            message or f"Cannot {attempted} {entity} while it is {current}",
            entity=entity,
            current_state=current,
            attempted=attempted,
            **context,
        )


class DuplicateContract(WorkflowError):
    code = "duplicate_contract"
    http_status = 409


class PitchClosed(WorkflowError):
    code = "pitch_closed"
    http_status = 409


class PitchUnavailable(WorkflowError):
    code = "pitch_unavailable"
    http_status = 409


class Forbidden(WorkflowError):
    code = "forbidden"
    http_status = 403


class UpstreamUnavailable(WorkflowError):
    """Storage or network failure. Retryable with backoff."""
    code = "upstream_unavailable"
    http_status = 503
    retryable = True
