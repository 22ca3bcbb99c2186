"""Error types raised by the pipeline.

Every error carries a stable ``error_code`` (used in run records and API
payloads) and the HTTP status the API layer answers with.

- ValidationError         - bad input, rejected before any side effect
- AuthenticationError     - provider rejected the credentials
- AuthorizationError      - forbidden or rate-limited
- NotFoundError           - project, branch, commit or run does not exist
- IntegrationError        - provider or git failure, keeps the raw message
- BranchAlreadyExistsError - branch creation raced with an existing branch
- OperationTimeoutError   - source fetch exceeded its upper bound
- OperationCancelledError - source fetch cancelled by the client
- StateTransitionError    - run store refused a non-monotonic status write
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    error_code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PipelineError, ValueError):
    """Rejected input. Also a ValueError so pydantic validators can raise it."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(PipelineError):
    error_code = "AUTHENTICATION_ERROR"
    status_code = 401


class AuthorizationError(PipelineError):
    error_code = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(PipelineError):
    error_code = "NOT_FOUND_ERROR"
    status_code = 404


class IntegrationError(PipelineError):
    """Failure talking to git or a hosting provider."""

    error_code = "INTEGRATION_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        raw: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if service:
            details.setdefault("service", service)
        if raw:
            details.setdefault("raw", raw)
        super().__init__(message, details=details)
        self.service = service
        self.raw = raw


class BranchAlreadyExistsError(IntegrationError):
    error_code = "BRANCH_EXISTS"
    status_code = 409


class OperationTimeoutError(PipelineError):
    error_code = "TIMEOUT_ERROR"
    status_code = 408


class OperationCancelledError(PipelineError):
    error_code = "CANCELLED_ERROR"
    status_code = 499


class StateTransitionError(PipelineError):
    error_code = "INVALID_TRANSITION"
    status_code = 409
