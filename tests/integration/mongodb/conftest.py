"""Pytest fixtures for MongoDB integration tests."""

import os
import re
from collections.abc import Iterator

import pytest

from dualstore.integrations.mongodb import MongoConfiguration, create_repositories
from dualstore.repositories import RepositorySet

# Assumes a MongoDB container is running locally on port 27017
LOCAL_MONGO_URI = os.environ.get("DUALSTORE_TEST_MONGO_URI", "mongodb://localhost:27017")


@pytest.fixture
def mongo_config(request: pytest.FixtureRequest) -> Iterator[MongoConfiguration]:
    """Create a MongoConfiguration pointing to local MongoDB, on a fresh database."""
    db_name = re.sub(r"[^\w-]", "_", f"test_{request.node.name}")[:63]
    config = MongoConfiguration(
        endpoint=LOCAL_MONGO_URI,
        database=db_name,
        server_selection_timeout_ms=2000,
    )
    config.client.drop_database(db_name)
    try:
        yield config
    finally:
        config.client.drop_database(db_name)
        config.close()


@pytest.fixture
def mongo_repositories(mongo_config: MongoConfiguration) -> RepositorySet:
    """Repositories over a freshly provisioned MongoDB database."""
    return create_repositories(mongo_config.db, max_transaction_items=5)
