"""Central test fixtures.

Both backends run in-process: SQLite in memory for the relational one and
mongomock for the key-value one. Tests that take the ``repositories``
fixture run once per backend and must observe identical outcomes.
"""

import re
from collections.abc import Iterator
from typing import Any

import mongomock
import pytest
from pymongo.database import Database
from sqlalchemy.engine import Engine

from dualstore.domain import Category, CloudProvider, Stack, Team
from dualstore.integrations.mongodb import create_repositories as create_key_value_repositories
from dualstore.integrations.sqlalchemy import (
    SqlConfiguration,
    create_engine_from_config,
)
from dualstore.integrations.sqlalchemy import create_repositories as create_relational_repositories
from dualstore.repositories import RepositorySet
from tests.fixtures import make_stack

BACKENDS = ["relational", "key-value"]


@pytest.fixture
def sql_engine() -> Iterator[Engine]:
    """Create an in-memory SQLite engine with foreign keys enabled."""
    engine = create_engine_from_config(SqlConfiguration(url="sqlite://"))
    yield engine
    engine.dispose()


@pytest.fixture
def mongo_database(request: pytest.FixtureRequest) -> Iterator[Database[dict[str, Any]]]:
    """Create an empty in-process MongoDB database."""
    client = mongomock.MongoClient()
    name = re.sub(r"[^\w-]", "_", f"test_{request.node.name}")[:63]
    yield client[name]
    client.drop_database(name)
    client.close()


@pytest.fixture
def relational_repositories(sql_engine: Engine) -> RepositorySet:
    """Repositories over a freshly migrated SQLite database."""
    return create_relational_repositories(sql_engine, max_transaction_items=5)


@pytest.fixture
def key_value_repositories(mongo_database: Database[dict[str, Any]]) -> RepositorySet:
    """Repositories over a freshly provisioned mongomock database."""
    return create_key_value_repositories(mongo_database, max_transaction_items=5)


@pytest.fixture(params=BACKENDS)
def repositories(request: pytest.FixtureRequest) -> RepositorySet:
    """Run the test once against each backend."""
    if request.param == "relational":
        return request.getfixturevalue("relational_repositories")
    return request.getfixturevalue("key_value_repositories")


@pytest.fixture
def team(repositories: RepositorySet) -> Team:
    """A saved team."""
    return repositories.teams.save(Team(name="platform", description="Platform engineering"))


@pytest.fixture
def category(repositories: RepositorySet) -> Category:
    """A saved category."""
    return repositories.categories.save(Category(name="services"))


@pytest.fixture
def cloud_provider(repositories: RepositorySet) -> CloudProvider:
    """A saved cloud provider."""
    return repositories.cloud_providers.save(
        CloudProvider(name="aws", display_name="Amazon Web Services")
    )


@pytest.fixture
def stack(repositories: RepositorySet, team: Team, category: Category) -> Stack:
    """A saved stack owned by ``team`` in ``category``."""
    return repositories.stacks.save(make_stack(team_id=team.id, category_id=category.id))
