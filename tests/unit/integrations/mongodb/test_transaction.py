"""Unit tests for the key-value transaction coordinator.

A writer crash is simulated by making one step of ``execute`` raise an
exception the coordinator does not handle, which leaves the batch exactly
where a dead process would have left it.
"""

from typing import Any
from unittest.mock import patch
from uuid import uuid4

import pytest
from pymongo.database import Database

from dualstore import Delete, Put
from dualstore.domain import Category, Team
from dualstore.errors import ConflictError, UnavailableError
from dualstore.integrations.mongodb import TransactionCoordinator, create_repositories
from dualstore.integrations.mongodb.schema import TRANSACTIONS_COLLECTION
from dualstore.integrations.mongodb.store import LOCK_FIELD, PLACEHOLDER_FIELD
from dualstore.repositories import RepositorySet

LONG_AGO = "2000-01-01T00:00:00.000000+00:00"


class WriterCrashed(Exception):
    pass


def _age_records(database: Database[dict[str, Any]]) -> None:
    database[TRANSACTIONS_COLLECTION].update_many({}, {"$set": {"created_at": LONG_AGO}})


def _crash_before_commit(repositories: RepositorySet, team: Team) -> Category:
    """Stage a batch that updates ``team`` and creates a category, then die."""
    category = Category(id=uuid4(), name="half-written")
    with patch.object(TransactionCoordinator, "_commit", side_effect=WriterCrashed):
        with pytest.raises(WriterCrashed):
            repositories.transactions.execute(
                [Put(team.model_copy(update={"name": "changed"})), Put(category)]
            )
    return category


def _crash_after_commit(repositories: RepositorySet, team: Team) -> list:
    """Commit a batch that updates ``team`` and creates a category, then die."""
    with patch.object(TransactionCoordinator, "_finish"):
        return repositories.transactions.execute(
            [
                Put(team.model_copy(update={"name": "changed"})),
                Put(Category(name="committed")),
            ]
        )


@pytest.fixture
def team(key_value_repositories: RepositorySet) -> Team:
    return key_value_repositories.teams.save(Team(name="platform"))


# ========== Reads during an unfinished batch ==========


def test_pending_batch_is_invisible(key_value_repositories: RepositorySet, team: Team):
    """Test that readers see the old state of every item in a pending batch."""
    repositories = key_value_repositories

    _crash_before_commit(repositories, team)

    assert repositories.teams.get(team.id) == team
    assert repositories.teams.find_by_name("changed") is None
    assert repositories.categories.count() == 0
    assert repositories.categories.find_all() == []
    assert repositories.categories.find_by_name("half-written") is None


def test_committed_batch_is_visible_before_cleanup(
    key_value_repositories: RepositorySet, team: Team
):
    """Test that readers see every item's new state once the batch commits."""
    repositories = key_value_repositories

    _, category = _crash_after_commit(repositories, team)

    assert repositories.teams.get(team.id).name == "changed"
    assert repositories.categories.get(category.id) == category


def test_pending_batch_blocks_writers(key_value_repositories: RepositorySet, team: Team):
    """Test that an item held by a batch cannot be overwritten or deleted."""
    repositories = key_value_repositories
    category = _crash_before_commit(repositories, team)

    with pytest.raises(ConflictError):
        repositories.teams.save(team.model_copy(update={"name": "other"}))
    with pytest.raises(ConflictError):
        repositories.teams.delete(team)
    with pytest.raises(ConflictError):
        repositories.categories.save(category)


# ========== Writes meeting a decided batch ==========


def test_interrupted_cleanup_does_not_block_writers(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that a committed batch whose cleanup failed is finished by the next writer."""
    repositories = key_value_repositories
    with patch.object(
        TransactionCoordinator, "_apply", side_effect=UnavailableError("timed out")
    ):
        (updated,) = repositories.transactions.execute(
            [Put(team.model_copy(update={"name": "changed"}))]
        )

    fresh = repositories.teams.get(team.id)
    saved = repositories.teams.save(fresh.model_copy(update={"name": "after"}))

    assert fresh == updated
    assert saved.name == "after"
    assert repositories.teams.get(team.id) == saved
    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0


def test_interrupted_rollback_does_not_block_writers(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that an aborted batch whose release failed is finished by the next writer."""
    repositories = key_value_repositories
    with patch.object(
        TransactionCoordinator, "_release", side_effect=UnavailableError("timed out")
    ):
        with pytest.raises(ConflictError):
            repositories.transactions.execute(
                [
                    Put(team.model_copy(update={"name": "changed"})),
                    Delete(Category(id=uuid4(), name="missing")),
                ]
            )

    assert repositories.teams.get(team.id) == team
    saved = repositories.teams.save(team.model_copy(update={"name": "after"}))
    repositories.teams.delete(saved)

    assert repositories.teams.count() == 0
    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0


def test_count_follows_committed_batch_before_cleanup(
    key_value_repositories: RepositorySet, team: Team
):
    """Test that count includes created items and excludes deleted ones once committed."""
    repositories = key_value_repositories
    doomed = repositories.categories.save(Category(name="doomed"))
    with patch.object(TransactionCoordinator, "_finish"):
        repositories.transactions.execute([Put(Category(name="created")), Delete(doomed)])

    assert repositories.categories.count() == 1
    assert repositories.categories.find_by_name("created") is not None
    assert repositories.teams.count() == 1


def test_count_ignores_pending_batch(key_value_repositories: RepositorySet, team: Team):
    """Test that placeholders of an uncommitted batch are not counted."""
    repositories = key_value_repositories

    _crash_before_commit(repositories, team)

    assert repositories.categories.count() == 0
    assert repositories.teams.count() == 1


# ========== Recovery ==========


def test_recover_rolls_back_pending_batch(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that an abandoned pending batch is rolled back."""
    repositories = key_value_repositories
    _crash_before_commit(repositories, team)
    _age_records(mongo_database)

    assert repositories.transactions.recover() == 1

    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0
    assert mongo_database["teams"].count_documents({LOCK_FIELD: {"$exists": True}}) == 0
    assert mongo_database["categories"].count_documents({PLACEHOLDER_FIELD: True}) == 0
    saved = repositories.teams.save(team.model_copy(update={"name": "after recovery"}))
    assert saved.name == "after recovery"


def test_recover_rolls_forward_committed_batch(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that an abandoned committed batch is applied."""
    repositories = key_value_repositories
    updated, category = _crash_after_commit(repositories, team)
    _age_records(mongo_database)

    assert repositories.transactions.recover() == 1

    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0
    assert repositories.teams.get(team.id) == updated
    assert repositories.categories.get(category.id) == category
    raw = mongo_database["teams"].find_one({"_id": str(team.id)})
    assert LOCK_FIELD not in raw
    assert raw["name"] == "changed"


def test_recover_ignores_recent_batches(key_value_repositories: RepositorySet, team: Team):
    """Test that batches that may still be running are left alone."""
    repositories = key_value_repositories
    _crash_before_commit(repositories, team)

    assert repositories.transactions.recover() == 0

    with pytest.raises(ConflictError):
        repositories.teams.save(team.model_copy(update={"name": "other"}))


def test_commit_after_recovery_is_refused(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that a slow writer cannot commit a batch recovery rolled back."""
    repositories = key_value_repositories
    _crash_before_commit(repositories, team)
    txn_id = mongo_database[TRANSACTIONS_COLLECTION].find_one()["_id"]
    _age_records(mongo_database)
    repositories.transactions.recover()

    with pytest.raises(ConflictError):
        repositories.transactions._commit(txn_id)


def test_startup_repairs_abandoned_batches(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that provisioning the backend runs recovery."""
    _crash_before_commit(key_value_repositories, team)
    _age_records(mongo_database)

    restarted = create_repositories(mongo_database)

    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0
    assert restarted.teams.get(team.id) == team


def test_successful_batch_leaves_no_trace(
    key_value_repositories: RepositorySet,
    mongo_database: Database[dict[str, Any]],
    team: Team,
):
    """Test that a completed batch removes its record and every lock."""
    key_value_repositories.transactions.execute(
        [Put(team.model_copy(update={"name": "x"})), Put(Category(name="c"))]
    )

    assert mongo_database[TRANSACTIONS_COLLECTION].count_documents({}) == 0
    for name in ("teams", "categories"):
        assert mongo_database[name].count_documents({LOCK_FIELD: {"$exists": True}}) == 0
