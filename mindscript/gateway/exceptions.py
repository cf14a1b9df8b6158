from typing import Any


class APIError(Exception):
    """Base exception for all API errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {"detail": str(self)}


class ValidationError(APIError):
    """Raised for semantically invalid request parameters - maps to HTTP 422."""

    status_code = 422


class PayloadValidationError(ValidationError):
    """Raised when a render payload is malformed. Carries one entry per offending field."""

    def __init__(self, errors: list[dict[str, str]], *, message: str | None = None):
        super().__init__(message or f"Invalid render payload: {len(errors)} error(s)")
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "errors": self.errors}


class LayerCompositionError(PayloadValidationError):
    """Raised when the combination of enabled audio layers is not allowed."""

    def __init__(self, reason: str):
        super().__init__([{"loc": "layers", "msg": reason, "type": "layer_composition"}], message=reason)
        self.reason = reason


class ResourceNotFoundError(APIError):
    """Raised when a required resource is not found - maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any, *, message: str | None = None):
        super().__init__(message or f"{resource_type} {resource_id!r} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "resource_type": self.resource_type, "resource_id": str(self.resource_id)}


class JobStateError(APIError):
    """Raised when a request is not legal for the job's current status - maps to HTTP 409."""

    status_code = 409

    def __init__(self, job_id: Any, status: str, *, message: str | None = None):
        super().__init__(message or f"Job {job_id} is {status}")
        self.job_id = job_id
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "job_id": str(self.job_id), "status": self.status}


class IllegalTransitionError(RuntimeError):
    """A code path asked for a status transition the state machine does not have."""


class LeaseLostError(Exception):
    """The worker no longer holds the job: cancelled, reaped, or claimed by someone else."""

    def __init__(self, job_id: Any, worker_id: str):
        super().__init__(f"Worker {worker_id} no longer owns job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id
