"""Atomic batches on both backends.

The ``repositories`` fixture builds both runners with a limit of 5 items.
"""

from uuid import uuid4

import pytest

from dualstore import Delete, Put
from dualstore.domain import Category, Stack, StackResource, Team
from dualstore.errors import ConfigurationError, ConflictError, ValidationFailure
from dualstore.integrations.mongodb import create_repositories as create_key_value
from dualstore.integrations.sqlalchemy import create_repositories as create_relational
from dualstore.repositories import RepositorySet
from tests.fixtures import make_api_key, make_stack


def test_empty_batch_is_noop(repositories: RepositorySet):
    """Test that an empty batch succeeds and writes nothing."""
    assert repositories.transactions.execute([]) == []


def test_batch_applies_every_operation(repositories: RepositorySet, team: Team, category: Category):
    """Test that a successful batch makes every write visible."""
    renamed = team.model_copy(update={"name": "renamed"})

    results = repositories.transactions.execute(
        [
            Put(renamed),
            Put(Category(name="new")),
            Delete(category),
        ]
    )

    assert len(results) == 3
    assert results[0].updated_at > team.updated_at
    assert results[1].id is not None
    assert results[2] == category
    assert repositories.teams.get(team.id).name == "renamed"
    assert repositories.categories.find_by_name("new") == results[1]
    assert repositories.categories.find_by_id(category.id) is None


def test_batch_results_can_be_saved_again(repositories: RepositorySet, team: Team):
    """Test that an entity returned by a batch can be saved again."""
    (updated,) = repositories.transactions.execute([Put(team.model_copy(update={"name": "a"}))])

    saved = repositories.teams.save(updated.model_copy(update={"name": "b"}))

    assert saved.name == "b"


def test_parent_created_earlier_in_batch(repositories: RepositorySet):
    """Test that a stack may reference a team created by the same batch."""
    team = Team(id=uuid4(), name="fresh")

    _, stack = repositories.transactions.execute(
        [Put(team), Put(make_stack(team_id=team.id))]
    )

    assert repositories.teams.exists(team.id)
    assert repositories.stacks.get(stack.id).team_id == team.id


def test_failed_batch_changes_nothing(repositories: RepositorySet, team: Team, stack: Stack):
    """Test that a conflict on the last operation undoes the earlier ones."""
    stale = stack.model_copy()
    repositories.stacks.save(stack.model_copy(update={"name": "moved on"}))

    with pytest.raises(ConflictError):
        repositories.transactions.execute(
            [
                Put(team.model_copy(update={"name": "changed"})),
                Put(Category(name="created-in-batch")),
                Put(stale.model_copy(update={"name": "stale write"})),
            ]
        )

    assert repositories.teams.get(team.id) == team
    assert repositories.categories.find_by_name("created-in-batch") is None
    assert repositories.stacks.get(stack.id).name == "moved on"


def test_failed_batch_leaves_records_writable(repositories: RepositorySet, team: Team):
    """Test that a rolled back batch does not keep its records locked."""
    with pytest.raises(ConflictError):
        repositories.transactions.execute(
            [
                Put(team.model_copy(update={"name": "changed"})),
                Delete(Category(id=uuid4(), name="missing")),
            ]
        )

    saved = repositories.teams.save(team.model_copy(update={"name": "after"}))
    repositories.teams.delete(saved)

    assert repositories.teams.count() == 0


def test_delete_of_missing_record_fails(repositories: RepositorySet):
    """Test that a batch delete asserts the record exists."""
    with pytest.raises(ConflictError):
        repositories.transactions.execute([Delete(Team(id=uuid4(), name="ghost"))])


def test_delete_with_stale_marker_fails(repositories: RepositorySet, team: Team):
    """Test that a batch delete carrying a marker rejects a stale one."""
    repositories.teams.save(team.model_copy(update={"name": "newer"}))

    with pytest.raises(ConflictError):
        repositories.transactions.execute([Delete(team)])

    assert repositories.teams.exists(team.id)


def test_dangling_reference_fails_batch(repositories: RepositorySet, category: Category):
    """Test that a dangling relationship aborts the whole batch."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute(
            [
                Put(category.model_copy(update={"name": "renamed"})),
                Put(make_stack(team_id=uuid4())),
            ]
        )

    assert repositories.categories.get(category.id).name == "services"
    assert repositories.stacks.count() == 0


def test_referenced_parent_delete_fails_batch(
    repositories: RepositorySet, team: Team, stack: Stack
):
    """Test that deleting a referenced team in a batch is refused."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute([Delete(team)])

    assert repositories.teams.exists(team.id)


def test_duplicate_entity_in_batch_is_rejected(repositories: RepositorySet, team: Team):
    """Test that a batch may touch each record only once."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute(
            [Put(team.model_copy(update={"name": "x"})), Delete(team)]
        )

    assert repositories.teams.get(team.id) == team


def test_oversized_batch_is_rejected(repositories: RepositorySet):
    """Test that a batch over the limit is refused before writing anything."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute([Put(Team(name=f"t{i}")) for i in range(6)])

    assert repositories.teams.count() == 0


def test_batch_at_limit_is_accepted(repositories: RepositorySet):
    """Test that a batch of exactly the limit succeeds."""
    repositories.transactions.execute([Put(Team(name=f"t{i}")) for i in range(5)])

    assert repositories.teams.count() == 5


def test_cascaded_rows_count_towards_limit(repositories: RepositorySet, stack: Stack):
    """Test that resources deleted with their stack count against the limit."""
    for i in range(5):
        repositories.stack_resources.save(
            StackResource(stack_id=stack.id, name=f"r{i}", resource_type="s3")
        )

    with pytest.raises(ValidationFailure):
        repositories.transactions.execute([Delete(stack)])

    assert repositories.stacks.exists(stack.id)
    assert repositories.stack_resources.count() == 5


def test_cascading_delete_in_batch(repositories: RepositorySet, stack: Stack):
    """Test that a batch delete of a stack removes its resources atomically."""
    for i in range(2):
        repositories.stack_resources.save(
            StackResource(stack_id=stack.id, name=f"r{i}", resource_type="s3")
        )

    repositories.transactions.execute([Delete(stack)])

    assert repositories.stacks.count() == 0
    assert repositories.stack_resources.count() == 0


def test_cascade_includes_children_created_in_batch(repositories: RepositorySet, stack: Stack):
    """Test that a resource added earlier in the batch goes with its stack."""
    repositories.transactions.execute(
        [
            Put(StackResource(stack_id=stack.id, name="late", resource_type="s3")),
            Delete(stack),
        ]
    )

    assert repositories.stacks.count() == 0
    assert repositories.stack_resources.count() == 0


def test_cascade_includes_children_updated_in_batch(repositories: RepositorySet, stack: Stack):
    """Test that a resource updated earlier in the batch is deleted with its stack."""
    resource = repositories.stack_resources.save(
        StackResource(stack_id=stack.id, name="r", resource_type="s3")
    )

    repositories.transactions.execute(
        [Put(resource.model_copy(update={"name": "renamed"})), Delete(stack)]
    )

    assert repositories.stacks.count() == 0
    assert repositories.stack_resources.count() == 0


def test_parent_freed_earlier_in_batch_can_be_deleted(
    repositories: RepositorySet, team: Team, stack: Stack
):
    """Test that moving a stack to another team releases the old one in the same batch."""
    other = repositories.teams.save(Team(name="other"))

    repositories.transactions.execute(
        [Put(stack.model_copy(update={"team_id": other.id})), Delete(team)]
    )

    assert not repositories.teams.exists(team.id)
    assert repositories.stacks.get(stack.id).team_id == other.id


def test_parent_referenced_earlier_in_batch_cannot_be_deleted(
    repositories: RepositorySet, team: Team
):
    """Test that a stack created earlier in the batch protects its team."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute([Put(make_stack(team_id=team.id)), Delete(team)])

    assert repositories.teams.get(team.id) == team
    assert repositories.stacks.count() == 0


def test_duplicate_key_hash_in_batch_is_rejected(repositories: RepositorySet):
    """Test that two keys with the same hash cannot be created together."""
    with pytest.raises(ConflictError):
        repositories.transactions.execute(
            [Put(make_api_key()), Put(make_api_key(key_name="desktop"))]
        )

    assert repositories.api_keys.count() == 0


def test_unsaved_entity_cannot_be_deleted(repositories: RepositorySet):
    """Test that a batch delete needs an identifier."""
    with pytest.raises(ValidationFailure):
        repositories.transactions.execute([Delete(Team(name="unsaved"))])


@pytest.mark.parametrize("limit", [0, 101])
def test_limit_out_of_range_is_a_configuration_error(limit: int, sql_engine, mongo_database):
    """Test that both factories refuse a batch limit outside 1..100."""
    with pytest.raises(ConfigurationError):
        create_relational(sql_engine, max_transaction_items=limit)
    with pytest.raises(ConfigurationError):
        create_key_value(mongo_database, max_transaction_items=limit)
