"""MongoDB integration: the key-value backend.

MongoDB is used strictly as a key-value store. Each entity type lives in its
own collection keyed by the canonical identifier, queried by point lookup or
through the secondary indexes declared in ``schema.TABLES``. Multi-item
writes go through the ``TransactionCoordinator`` rather than server-side
transactions.

Usage:
    >>> from dualstore.integrations.mongodb import MongoConfiguration, create_repositories
    >>>
    >>> config = MongoConfiguration(database="idp")
    >>> repositories = create_repositories(
    ...     config.db,
    ...     max_transaction_items=config.max_transaction_items,
    ...     close=config.close,
    ... )
    >>> team = repositories.teams.save(Team(name="platform"))
"""

from .config import MongoConfiguration
from .factory import build_stores, create_repositories
from .mapper import EntityItemMapper
from .repositories import (
    MongoApiKeyRepository,
    MongoCategoryRepository,
    MongoCloudProviderRepository,
    MongoRepository,
    MongoStackRepository,
    MongoStackResourceRepository,
    MongoTeamRepository,
)
from .schema import TABLES, IndexDirection, IndexSpec, MongoSchemaInitializer, TableDefinition
from .store import MongoEntityStore
from .transaction import TransactionCoordinator

__all__ = [
    "TABLES",
    "EntityItemMapper",
    "IndexDirection",
    "IndexSpec",
    "MongoApiKeyRepository",
    "MongoCategoryRepository",
    "MongoCloudProviderRepository",
    "MongoConfiguration",
    "MongoEntityStore",
    "MongoRepository",
    "MongoSchemaInitializer",
    "MongoStackRepository",
    "MongoStackResourceRepository",
    "MongoTeamRepository",
    "TableDefinition",
    "TransactionCoordinator",
    "build_stores",
    "create_repositories",
]
