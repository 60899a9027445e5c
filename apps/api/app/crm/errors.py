from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error for funnel, opportunity and batch-job failures surfaced to callers."""

    code = "pipeline_error"
    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(PipelineError):
    code = "not_found"
    status_code = 404


class InvalidTransition(PipelineError):
    """Raised when an opportunity cannot move to the requested stage or status."""

    code = "invalid_transition"
    status_code = 422


class MissingRequiredValue(PipelineError):
    """Raised when a stage requires a value (e.g. proposal value) that was not supplied."""

    code = "missing_required_value"
    status_code = 422

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"{field} is required for this transition", details={"field": field})


class MissingLostReason(PipelineError):
    code = "missing_lost_reason"
    status_code = 422


class StageInUseError(PipelineError):
    code = "stage_in_use"
    status_code = 409


class RegistryConflictError(PipelineError):
    code = "registry_conflict"
    status_code = 409


class JobAlreadyRunningError(PipelineError):
    code = "job_already_running"
    status_code = 409
