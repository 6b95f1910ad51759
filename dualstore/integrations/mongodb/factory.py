"""Wiring of the key-value backend into a ``RepositorySet``."""

import logging
from collections.abc import Callable
from typing import Any

from pymongo.database import Database

from dualstore.domain import ApiKey, Category, CloudProvider, Entity, Stack, StackResource, Team
from dualstore.health import SENTINEL_ID, HealthMonitor
from dualstore.repositories import RepositorySet

from .repositories import (
    MongoApiKeyRepository,
    MongoCategoryRepository,
    MongoCloudProviderRepository,
    MongoStackRepository,
    MongoStackResourceRepository,
    MongoTeamRepository,
)
from .schema import MongoSchemaInitializer, table_for
from .store import MongoEntityStore
from .transaction import DEFAULT_MAX_ITEMS, TransactionCoordinator

LOGGER = logging.getLogger(__name__)

PROVIDER = "key-value"


def build_stores(database: Database[dict[str, Any]]) -> dict[type[Entity], MongoEntityStore[Any]]:
    """Create one store per entity type and declare their relationships.

    Stacks reference teams, categories and cloud providers, which cannot be
    deleted while referenced.
    Resources belong to a stack and go with it. API keys stand alone.
    """
    stores: dict[type[Entity], MongoEntityStore[Any]] = {
        entity_type: MongoEntityStore(database, table_for(entity_type))
        for entity_type in (Team, CloudProvider, Category, Stack, StackResource, ApiKey)
    }
    teams, providers, categories = stores[Team], stores[CloudProvider], stores[Category]
    stacks, resources = stores[Stack], stores[StackResource]

    stacks.references = {
        "team_id": teams,
        "category_id": categories,
        "cloud_provider_id": providers,
    }
    resources.references = {"stack_id": stacks}

    teams.restricted_by = [(stacks, "team_id")]
    categories.restricted_by = [(stacks, "category_id")]
    providers.restricted_by = [(stacks, "cloud_provider_id")]
    stacks.cascades_to = [(resources, "stack_id")]
    return stores


def create_repositories(
    database: Database[dict[str, Any]],
    *,
    max_transaction_items: int = DEFAULT_MAX_ITEMS,
    degraded_after_seconds: float = 1.0,
    initialize: bool = True,
    close: Callable[[], None] | None = None,
) -> RepositorySet:
    """Bind every repository interface to collections of ``database``.

    Args:
        database: Database holding one collection per entity type.
        max_transaction_items: Batch limit of the transaction coordinator.
        degraded_after_seconds: Lookup latency above which health is degraded.
        initialize: Provision collections and indexes and repair abandoned
            transactions before returning.
        close: Releases the client when the set is closed.

    Raises:
        ConfigurationError: If ``max_transaction_items`` is out of range.
    """
    stores = build_stores(database)
    coordinator = TransactionCoordinator(database, stores, max_items=max_transaction_items)
    for store in stores.values():
        store.lock_resolver = coordinator.recover_one

    if initialize:
        MongoSchemaInitializer(database, recover=coordinator.recover).initialize()

    teams = MongoTeamRepository(stores[Team], coordinator)
    repositories = RepositorySet(
        provider=PROVIDER,
        teams=teams,
        cloud_providers=MongoCloudProviderRepository(stores[CloudProvider], coordinator),
        categories=MongoCategoryRepository(stores[Category], coordinator),
        stacks=MongoStackRepository(stores[Stack], coordinator),
        stack_resources=MongoStackResourceRepository(stores[StackResource], coordinator),
        api_keys=MongoApiKeyRepository(stores[ApiKey], coordinator),
        transactions=coordinator,
        health=HealthMonitor(
            PROVIDER,
            lambda: teams.find_by_id(SENTINEL_ID),
            degraded_after_seconds=degraded_after_seconds,
        ),
        _close=close or (lambda: None),
    )
    LOGGER.info(
        "Key-value repositories ready",
        extra={"database": database.name, "max_transaction_items": max_transaction_items},
    )
    return repositories
