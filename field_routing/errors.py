"""
Error taxonomy for the routing core.

Each error carries a stable ``code`` that the API layer maps to an HTTP
status and a tagged failure body.
"""

from typing import Any, Dict, List, Optional


class RoutingError(Exception):
    """Base class for errors surfaced to callers."""
    code = "routing_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidRequest(RoutingError):
    """Missing or malformed input; the caller must correct it."""
    code = "invalid_request"
    status_code = 400


class NotFound(RoutingError):
    """Business, team, task or route absent or not owned by the business."""
    code = "not_found"
    status_code = 404


class ConstraintViolationError(RoutingError):
    """Hard constraints failed on an assign path; lists every violation."""
    code = "constraint_violation"
    status_code = 422

    def __init__(self, message: str, violations: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.violations = violations or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = self.violations
        return data


class InvalidTransition(RoutingError):
    """A status change that regresses or skips a lifecycle step."""
    code = "invalid_transition"
    status_code = 409


class ConcurrencyConflict(RoutingError):
    """A concurrent write won; the caller should retry the whole operation."""
    code = "concurrency_conflict"
    status_code = 409


class ProviderFailure(RoutingError):
    """External provider unreachable or erroring after retries.

    Absorbed by the service layer and turned into a warning unless the
    deployment runs with the strict fallback policy.
    """
    code = "provider_failure"
    status_code = 502


class DependencyUnavailable(RoutingError):
    """A provider input the caller explicitly required could not be obtained."""
    code = "dependency_unavailable"
    status_code = 503
