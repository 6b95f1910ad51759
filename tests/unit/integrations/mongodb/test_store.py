"""Unit tests for MongoEntityStore."""

import logging
from typing import Any
from uuid import uuid4

import pytest
from pymongo.database import Database

from dualstore.domain import ApiKey, ApiKeyType, Stack, Team
from dualstore.errors import ConflictError, NotFoundError, ValidationFailure
from dualstore.integrations.mongodb import MongoEntityStore, build_stores
from dualstore.integrations.mongodb.schema import MongoSchemaInitializer
from dualstore.repositories import prepare_write
from tests.fixtures import make_stack


@pytest.fixture
def stores(mongo_database: Database[dict[str, Any]]) -> dict[type, MongoEntityStore[Any]]:
    MongoSchemaInitializer(mongo_database).initialize()
    return build_stores(mongo_database)


def test_item_is_keyed_by_canonical_identifier(stores, mongo_database):
    """Test that the partition key is the string form of the id."""
    team = stores[Team].put(prepare_write(Team(name="platform"))).entity

    raw = mongo_database["teams"].find_one({"_id": str(team.id)})

    assert raw["name"] == "platform"
    assert raw["configuration"] == {"M": {}}
    assert raw["updated_at"].endswith("+00:00")


def test_query_requires_secondary_index(stores):
    """Test that only indexed fields can be queried."""
    with pytest.raises(ValidationFailure):
        stores[Team].query("description", "anything")


def test_scan_is_logged(stores, caplog):
    """Test that a full scan is reported in the logs."""
    with caplog.at_level(logging.INFO):
        stores[Stack].scan()

    assert "Full collection scan" in caplog.text


def test_put_rejects_stale_marker(stores):
    """Test the conditional update on the updated_at marker."""
    team = stores[Team].put(prepare_write(Team(name="platform"))).entity
    stores[Team].put(prepare_write(team.model_copy(update={"name": "first"})))

    with pytest.raises(ConflictError):
        stores[Team].put(prepare_write(team.model_copy(update={"name": "second"})))


def test_delete_reports_whether_removed(stores):
    """Test that delete returns False for an absent item."""
    team = stores[Team].put(prepare_write(Team(name="platform"))).entity

    assert stores[Team].delete(team.id) is True
    assert stores[Team].delete(team.id) is False
    assert stores[Team].delete(uuid4()) is False


def test_check_references_sees_batch_context(stores):
    """Test that parents created or deleted earlier in a batch are honoured."""
    team = stores[Team].put(prepare_write(Team(name="platform"))).entity
    pending_id = uuid4()
    stack = Stack(
        name="orders",
        cloud_name="orders-svc",
        stack_type="RESTFUL_API",
        created_by="alice",
        team_id=pending_id,
    )

    stores[Stack].check_references(stack, {stores[Team].key(pending_id): {"name": "fresh"}})
    with pytest.raises(ValidationFailure):
        stores[Stack].check_references(stack)
    with pytest.raises(ValidationFailure):
        stores[Stack].check_references(
            stack.model_copy(update={"team_id": team.id}),
            {stores[Team].key(team.id): None},
        )


def test_matching_applies_batch_images(stores):
    """Test that children moved or created by a batch are matched by their new parent."""
    team = stores[Team].save(Team(name="platform"))
    other = stores[Team].save(Team(name="other"))
    moved = stores[Stack].save(make_stack(team_id=team.id))
    created_id = uuid4()
    planned = {
        stores[Stack].key(moved.id): stores[Stack].mapper.to_item(
            moved.model_copy(update={"team_id": other.id})
        ),
        stores[Stack].key(created_id): stores[Stack].mapper.to_item(
            make_stack(id=created_id, team_id=team.id)
        ),
    }

    matched = stores[Stack].matching("team_id", team.id, planned)

    assert matched == {stores[Stack].key(created_id): None}
    assert set(stores[Stack].matching("team_id", other.id, planned)) == {
        stores[Stack].key(moved.id)
    }


def test_check_unique_rejects_taken_value(stores):
    """Test that a unique field value held by another record is refused."""
    store = stores[ApiKey]
    first = store.save(
        ApiKey(
            key_name="ci",
            key_hash="h1",
            key_prefix="dsk_1",
            key_type=ApiKeyType.SYSTEM,
            created_by_email="ops@example.com",
        )
    )

    store.check_unique(first.model_copy(update={"key_name": "renamed"}))
    with pytest.raises(ConflictError):
        store.check_unique(first.model_copy(update={"id": uuid4()}))
    store.check_unique(
        first.model_copy(update={"id": uuid4()}),
        {store.key(first.id): None},
    )


def test_require_raises_for_absent_item(stores):
    """Test that require turns an absent item into NotFoundError."""
    with pytest.raises(NotFoundError):
        stores[Team].require(uuid4())


def test_remove_refuses_referenced_parent(stores):
    """Test that a parent still referenced by a child is kept."""
    team = stores[Team].save(Team(name="platform"))
    stores[Stack].save(make_stack(team_id=team.id))

    with pytest.raises(ValidationFailure):
        stores[Team].remove(team.id)

    assert stores[Team].exists(team.id)
