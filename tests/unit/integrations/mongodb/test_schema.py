"""Unit tests for MongoSchemaInitializer."""

from typing import Any
from unittest.mock import MagicMock

from pymongo.database import Database

from dualstore.domain import Stack
from dualstore.integrations.mongodb import TABLES, IndexDirection, IndexSpec, MongoSchemaInitializer
from dualstore.integrations.mongodb.schema import TRANSACTIONS_COLLECTION, table_for


def test_initialize_creates_collections_and_indexes(mongo_database: Database[dict[str, Any]]):
    """Test that every declared collection and index is provisioned."""
    MongoSchemaInitializer(mongo_database).initialize()

    names = set(mongo_database.list_collection_names())
    assert {table.collection for table in TABLES} | {TRANSACTIONS_COLLECTION} <= names
    index_names = set(mongo_database["stacks"].index_information())
    assert {"created_by_1", "team_id_1", "category_id_1", "cloud_provider_id_1"} <= index_names


def test_initialize_is_idempotent(mongo_database: Database[dict[str, Any]]):
    """Test that running the initializer twice changes nothing."""
    initializer = MongoSchemaInitializer(mongo_database)
    initializer.initialize()
    before = mongo_database["teams"].index_information()

    initializer.initialize()

    assert mongo_database["teams"].index_information() == before


def test_initialize_runs_recovery(mongo_database: Database[dict[str, Any]]):
    """Test that recovery runs once the collections exist."""
    recover = MagicMock(return_value=0)

    MongoSchemaInitializer(mongo_database, recover=recover).initialize()

    recover.assert_called_once_with()


def test_index_spec_name():
    """Test that index names are derived from their keys."""
    spec = IndexSpec(keys=[("is_active", IndexDirection.ASC), ("created_at", IndexDirection.DESC)])

    assert spec.name == "is_active_1_created_at_-1"
    assert spec.leading_field == "is_active"


def test_stack_type_is_not_indexed():
    """Test that stack_type queries are served by a scan."""
    assert "stack_type" not in table_for(Stack).indexed_fields()
