"""Wiring of the relational backend into a ``RepositorySet``."""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.engine import Engine

from dualstore.domain import ApiKey, Category, CloudProvider, Entity, Stack, StackResource, Team
from dualstore.health import SENTINEL_ID, HealthMonitor
from dualstore.repositories import RepositorySet

from .migrations import MigrationRunner
from .repositories import (
    SqlApiKeyRepository,
    SqlCategoryRepository,
    SqlCloudProviderRepository,
    SqlStackRepository,
    SqlStackResourceRepository,
    SqlTeamRepository,
)
from .store import SqlEntityStore
from .tables import TABLES
from .transaction import DEFAULT_MAX_ITEMS, SqlTransactionRunner

LOGGER = logging.getLogger(__name__)

PROVIDER = "relational"


def build_stores(engine: Engine) -> dict[type[Entity], SqlEntityStore[Any]]:
    """Create one store per entity type.

    Only the cascade from stacks to their resources is declared here, so the
    transaction runner can count cascaded rows against its batch limit.
    Enforcement itself is left to the foreign keys.
    """
    stores: dict[type[Entity], SqlEntityStore[Any]] = {
        entity_type: SqlEntityStore(engine, table, entity_type)
        for entity_type, table in TABLES.items()
    }
    stores[Stack].cascades_to = [(stores[StackResource], "stack_id")]
    return stores


def create_repositories(
    engine: Engine,
    *,
    max_transaction_items: int = DEFAULT_MAX_ITEMS,
    degraded_after_seconds: float = 1.0,
    migrate: bool = True,
    close: Callable[[], None] | None = None,
) -> RepositorySet:
    """Bind every repository interface to tables reached through ``engine``.

    Args:
        engine: The process-wide engine.
        max_transaction_items: Batch limit of the transaction runner.
        degraded_after_seconds: Lookup latency above which health is degraded.
        migrate: Apply pending migrations before returning.
        close: Releases the engine when the set is closed. Defaults to
            ``engine.dispose``.

    Raises:
        ConfigurationError: If the migration history does not match the
            shipped scripts, or ``max_transaction_items`` is out of range.
    """
    if migrate:
        MigrationRunner(engine).migrate()

    stores = build_stores(engine)
    teams = SqlTeamRepository(stores[Team])
    repositories = RepositorySet(
        provider=PROVIDER,
        teams=teams,
        cloud_providers=SqlCloudProviderRepository(stores[CloudProvider]),
        categories=SqlCategoryRepository(stores[Category]),
        stacks=SqlStackRepository(stores[Stack]),
        stack_resources=SqlStackResourceRepository(stores[StackResource]),
        api_keys=SqlApiKeyRepository(stores[ApiKey]),
        transactions=SqlTransactionRunner(engine, stores, max_items=max_transaction_items),
        health=HealthMonitor(
            PROVIDER,
            lambda: teams.find_by_id(SENTINEL_ID),
            degraded_after_seconds=degraded_after_seconds,
        ),
        _close=close or engine.dispose,
    )
    LOGGER.info(
        "Relational repositories ready",
        extra={"dialect": engine.dialect.name, "max_transaction_items": max_transaction_items},
    )
    return repositories
