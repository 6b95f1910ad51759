"""SQLAlchemy integration: the relational backend.

Each entity maps to one row, relationships are foreign keys enforced by the
engine, and batches run inside one engine transaction. The schema is owned
by the versioned scripts in ``migrations``.

Installation:
    pip install dualstore[postgres]

Usage:
    >>> from dualstore.integrations.sqlalchemy import (
    ...     SqlConfiguration,
    ...     create_engine_from_config,
    ...     create_repositories,
    ... )
    >>>
    >>> config = SqlConfiguration(url="sqlite://")
    >>> engine = create_engine_from_config(config)
    >>> repositories = create_repositories(engine)
    >>> team = repositories.teams.save(Team(name="platform"))
"""

from .config import SqlConfiguration
from .factory import build_stores, create_repositories
from .migrations import Migration, MigrationRunner, load_migrations
from .repositories import (
    SqlApiKeyRepository,
    SqlCategoryRepository,
    SqlCloudProviderRepository,
    SqlRepository,
    SqlStackRepository,
    SqlStackResourceRepository,
    SqlTeamRepository,
)
from .session import create_engine_from_config
from .store import SqlEntityStore
from .transaction import SqlTransactionRunner

__all__ = [
    "Migration",
    "MigrationRunner",
    "SqlApiKeyRepository",
    "SqlCategoryRepository",
    "SqlCloudProviderRepository",
    "SqlConfiguration",
    "SqlEntityStore",
    "SqlRepository",
    "SqlStackRepository",
    "SqlStackResourceRepository",
    "SqlTeamRepository",
    "SqlTransactionRunner",
    "build_stores",
    "create_engine_from_config",
    "create_repositories",
    "load_migrations",
]
