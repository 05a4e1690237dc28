from __future__ import annotations

from typing import Any, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WorkflowValidationError(ValidationError):
    """The graph has hard validation errors and must not run."""

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[Any]] = None,
        warnings: Optional[List[Any]] = None,
    ) -> None:
        self.issues = list(issues or [])
        self.warnings = list(warnings or [])
        super().__init__(
            message,
            detail={
                "hardErrors": [_issue_dict(i) for i in self.issues],
                "warnings": [_issue_dict(w) for w in self.warnings],
            },
        )


class RunInProgressError(ConflictError):
    """A run for the same flow is already executing."""

    def __init__(self, flow_key: str) -> None:
        super().__init__(
            "a run for this flow is already in progress",
            detail={"flow_key": flow_key},
        )
        self.flow_key = flow_key


class NodeExecutionError(ServerError):
    """An executor failed; scoped to a single node."""

    def __init__(self, message: str, *, node_id: Optional[str] = None) -> None:
        super().__init__(message, detail={"node_id": node_id} if node_id else None)
        self.node_id = node_id


class UnsupportedConditionError(ValidationError):
    """Branch condition uses syntax outside the supported grammar."""

    def __init__(self, condition: str, reason: str = "") -> None:
        shown = condition if len(condition) <= 60 else condition[:57] + "..."
        message = f'unsupported expression format: "{shown}"'
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, detail={"condition": condition})
        self.condition = condition


class ToolExecutionError(ServerError):
    """A tool call failed validation or its external call failed."""

    def __init__(
        self, message: str, *, tool: Optional[str] = None, errors: Optional[List[str]] = None
    ) -> None:
        detail: dict = {}
        if tool:
            detail["tool"] = tool
        if errors:
            detail["errors"] = errors
        super().__init__(message, detail=detail)
        self.tool = tool
        self.errors = errors or []


class StreamReadError(ServerError):
    """A streaming read failed part way through."""


def _issue_dict(issue: Any) -> Any:
    to_dict = getattr(issue, "to_dict", None)
    return to_dict() if callable(to_dict) else issue


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "WorkflowValidationError",
    "RunInProgressError",
    "NodeExecutionError",
    "UnsupportedConditionError",
    "ToolExecutionError",
    "StreamReadError",
]
