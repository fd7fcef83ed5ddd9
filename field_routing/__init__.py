"""
Field Routing Engine - route optimization and scheduling for field teams.

Assigns geographically distributed tasks to mobile teams under time,
distance, skill, equipment, service-area and weather constraints, tracks
route progress, and reports on historical outcomes.
"""

__version__ = "0.1.0"

from .errors import (
    RoutingError, InvalidRequest, NotFound, ConstraintViolationError,
    InvalidTransition, ConcurrencyConflict, ProviderFailure, DependencyUnavailable,
)
from .service import RouteOptimizationService
from .api import app, create_app

__all__ = [
    "RouteOptimizationService",
    "app",
    "create_app",
    "RoutingError",
    "InvalidRequest",
    "NotFound",
    "ConstraintViolationError",
    "InvalidTransition",
    "ConcurrencyConflict",
    "ProviderFailure",
    "DependencyUnavailable",
]
