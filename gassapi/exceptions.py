"""Error taxonomy for flow execution."""

from __future__ import annotations

from typing import List, Optional


class GassapiError(Exception):
    """Base class for all gassapi errors."""


class ConfigError(GassapiError):
    """Configuration file could not be read or validated."""


class BackendError(GassapiError):
    """The remote backend rejected a request or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class FlowValidationError(GassapiError):
    """A flow or step definition is invalid; raised before any step runs."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Invalid flow: " + "; ".join(self.errors))


class DuplicateFlowError(GassapiError):
    """A live flow with the same id already exists."""

    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow {flow_id} is already active")
        self.flow_id = flow_id


class UnresolvedReferenceError(GassapiError):
    """A ``{{scope.path}}`` reference could not be resolved."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(reason)
        self.reference = reference
        self.reason = reason


class StepExecutionError(GassapiError):
    """A step failed: network error, timeout, status mismatch or bad request."""

    def __init__(self, message: str, step_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.step_id = step_id


class FlowTimeoutError(GassapiError):
    """The whole-flow deadline was exceeded."""

    def __init__(self, flow_id: str, timeout: float) -> None:
        super().__init__(f"Flow {flow_id} timed out after {timeout}s")
        self.flow_id = flow_id
        self.timeout = timeout


class InterpolationWarning(UserWarning):
    """An unresolved reference was left verbatim in a materialized request."""

    def __init__(self, reference: str, reason: str, step_id: Optional[str] = None) -> None:
        self.reference = reference
        self.reason = reason
        self.step_id = step_id
        prefix = f"Step {step_id}: " if step_id else ""
        super().__init__(f"{prefix}unresolved reference {reference} ({reason})")
