# errors.py - Domain error taxonomy shared by the core services
#
# Every mutation and query path raises one of these. Store-level failures are
# converted in store.py; main.py renders them as JSON responses.

from typing import Optional


class TaskDeskError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    code = "LD-SYS-001"
    retryable = False

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        body = {"detail": self.message, "error": self.kind, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class AuthorizationError(TaskDeskError):
    """Permission or ownership check failed. Never retried."""

    status_code = 403
    code = "LD-AUTH-001"


class ValidationError(TaskDeskError):
    """Input rejected before it reaches the store (or by a store constraint)"""

    status_code = 400
    code = "LD-VAL-001"


class InvalidTransitionError(TaskDeskError):
    """Requested status change is not in the transition table"""

    status_code = 409
    code = "LD-TASK-001"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Cannot move task from '{from_status}' to '{to_status}'",
            details={"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ConflictError(TaskDeskError):
    """Optimistic compare-and-set lost; the caller must re-read before retrying"""

    status_code = 409
    code = "LD-TASK-002"


class TransientIOError(TaskDeskError):
    """Store or blob storage failure; safe to retry later"""

    status_code = 503
    code = "LD-IO-001"
    retryable = True


class NotFoundError(TaskDeskError):
    """Record is missing or outside the requester's scope"""

    status_code = 404
    code = "LD-NF-001"
