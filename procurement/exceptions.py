from __future__ import annotations

from typing import Any

from rest_framework import status


class WorkflowError(Exception):
    """Base class for every rejection raised by the procurement workflow.

    ``code`` and ``status_code`` are used by the API error envelope; ``details``
    carries machine-readable context (field names, quantities, statuses).
    """

    code = "workflow_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def for_request(self, request) -> "WorkflowError":
        """Tag the error with the request it was raised for (bulk processing)."""
        self.details.setdefault("request_pk", request.id)
        self.details.setdefault("request_id", request.request_id)
        self.message = f"{request.part_name}: {self.message}"
        self.args = (self.message,)
        return self


class StateMismatch(WorkflowError):
    code = "state_mismatch"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, expected, actual: str, **details: Any):
        expected_statuses = [expected] if isinstance(expected, str) else sorted(expected)
        self.expected = expected_statuses
        self.actual = actual
        super().__init__(
            f"Expected status {' or '.join(expected_statuses)} but found {actual}.",
            expected=expected_statuses,
            actual=actual,
            **details,
        )


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, field: str, message: str, **details: Any):
        self.field = field
        super().__init__(message, field=field, **details)


class CapacityExceeded(WorkflowError):
    code = "capacity_exceeded"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, requested: int, available: int, **details: Any):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Total dispatch quantity ({requested}) exceeds the warehouse received quantity ({available}).",
            requested=requested,
            available=available,
            **details,
        )


class MixedStateError(WorkflowError):
    code = "mixed_state"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, statuses):
        self.statuses = sorted(statuses)
        super().__init__(
            "Only requests in the same status can be processed together.",
            statuses=self.statuses,
        )


class TerminalStateError(WorkflowError):
    code = "terminal_state"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str, **details: Any):
        self.status = current_status
        super().__init__(f"Request is in terminal status {current_status} and cannot change.", status=current_status, **details)


class PartialCommitError(WorkflowError):
    code = "partial_commit"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, succeeded, failed):
        self.succeeded = list(succeeded)
        self.failed = list(failed)
        super().__init__(
            f"Bulk commit stopped after {len(self.succeeded)} of {len(self.succeeded) + len(self.failed)} requests.",
            succeeded=self.succeeded,
            failed=self.failed,
        )


class RequestNotFound(WorkflowError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, key: str, kind: str = "request"):
        self.key = key
        super().__init__(f"No {kind} found for {key}.", request_id=key, kind=kind)
