"""dualstore - one repository API over a relational or a key-value backend.

This module provides the public API used by business code.
"""

from .domain import (
    ApiKey,
    ApiKeyType,
    Category,
    CloudProvider,
    ConfigValue,
    Entity,
    Stack,
    StackResource,
    StackType,
    Team,
)
from .errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    UnavailableError,
    ValidationFailure,
)
from .health import HealthMonitor, HealthReport, HealthStatus
from .provider import DatabaseProvider, PersistenceSettings, build_repositories
from .repositories import Delete, Put, RepositorySet

__all__ = [
    # Startup
    "DatabaseProvider",
    "PersistenceSettings",
    "RepositorySet",
    "build_repositories",
    # Domain
    "ApiKey",
    "ApiKeyType",
    "Category",
    "CloudProvider",
    "ConfigValue",
    "Entity",
    "Stack",
    "StackResource",
    "StackType",
    "Team",
    # Batches
    "Delete",
    "Put",
    # Errors
    "ConfigurationError",
    "ConflictError",
    "NotFoundError",
    "PersistenceError",
    "UnavailableError",
    "ValidationFailure",
    # Health
    "HealthMonitor",
    "HealthReport",
    "HealthStatus",
]
