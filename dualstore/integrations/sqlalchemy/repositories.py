"""Relational implementations of the repository interfaces."""

from typing import TypeVar
from uuid import UUID

from dualstore.domain import (
    ApiKey,
    ApiKeyType,
    Category,
    CloudProvider,
    Entity,
    Stack,
    StackResource,
    StackType,
    Team,
)
from dualstore.repositories import (
    ApiKeyRepository,
    CategoryRepository,
    CloudProviderRepository,
    EntityId,
    Repository,
    StackRepository,
    StackResourceRepository,
    TeamRepository,
    coerce_id,
)

from .store import SqlEntityStore

E = TypeVar("E", bound=Entity)


class SqlRepository(Repository[E]):
    """Binds a repository interface to a ``SqlEntityStore``.

    Relationship checks and the delete policy are enforced by the foreign
    keys declared in the migrations: a dangling reference or a delete that
    would orphan a stack fails with ``ValidationFailure``, and deleting a
    stack removes its resources.
    """

    def __init__(self, store: SqlEntityStore[E]):
        self.store = store

    def save(self, entity: E) -> E:
        return self.store.save(entity)

    def find_by_id(self, entity_id: EntityId) -> E | None:
        return self.store.get(coerce_id(entity_id))

    def get(self, entity_id: EntityId) -> E:
        return self.store.require(coerce_id(entity_id))

    def exists(self, entity_id: EntityId) -> bool:
        return self.store.exists(coerce_id(entity_id))

    def find_all(self) -> list[E]:
        return self.store.select()

    def count(self) -> int:
        return self.store.count()

    def delete(self, entity: E) -> None:
        if entity.id is not None:
            self.delete_by_id(entity.id)

    def delete_by_id(self, entity_id: EntityId, *, must_exist: bool = False) -> None:
        self.store.remove(coerce_id(entity_id), must_exist=must_exist)

    def _first_where(self, column: str, value: str) -> E | None:
        table = self.store.table
        found = self.store.select(
            table.c[column] == value,
            order_by=[table.c.created_at, table.c.id],
            limit=1,
        )
        return found[0] if found else None


class SqlTeamRepository(SqlRepository[Team], TeamRepository):
    def find_by_name(self, name: str) -> Team | None:
        return self._first_where("name", name)

    def find_by_active(self, is_active: bool) -> list[Team]:
        return self.store.select(self.store.table.c.is_active == is_active)


class SqlCloudProviderRepository(SqlRepository[CloudProvider], CloudProviderRepository):
    def find_by_name(self, name: str) -> CloudProvider | None:
        return self._first_where("name", name)

    def find_by_enabled(self, enabled: bool) -> list[CloudProvider]:
        return self.store.select(self.store.table.c.enabled == enabled)


class SqlCategoryRepository(SqlRepository[Category], CategoryRepository):
    def find_by_name(self, name: str) -> Category | None:
        return self._first_where("name", name)

    def find_by_active(self, is_active: bool) -> list[Category]:
        return self.store.select(self.store.table.c.is_active == is_active)


class SqlStackRepository(SqlRepository[Stack], StackRepository):
    def find_by_created_by(self, created_by: str) -> list[Stack]:
        return self.store.select(self.store.table.c.created_by == created_by)

    def find_by_team_id(self, team_id: UUID | str) -> list[Stack]:
        return self.store.select(self.store.table.c.team_id == coerce_id(team_id))

    def find_by_category_id(self, category_id: UUID | str) -> list[Stack]:
        return self.store.select(self.store.table.c.category_id == coerce_id(category_id))

    def find_by_cloud_provider_id(self, cloud_provider_id: UUID | str) -> list[Stack]:
        return self.store.select(
            self.store.table.c.cloud_provider_id == coerce_id(cloud_provider_id)
        )

    def find_by_stack_type(self, stack_type: StackType) -> list[Stack]:
        try:
            stack_type = StackType(stack_type)
        except ValueError:
            # No stored row can carry an unknown type.
            return []
        return self.store.select(self.store.table.c.stack_type == stack_type)


class SqlStackResourceRepository(SqlRepository[StackResource], StackResourceRepository):
    def find_by_stack_id(self, stack_id: UUID | str) -> list[StackResource]:
        return self.store.select(self.store.table.c.stack_id == coerce_id(stack_id))


class SqlApiKeyRepository(SqlRepository[ApiKey], ApiKeyRepository):
    def find_by_key_hash(self, key_hash: str) -> ApiKey | None:
        return self._first_where("key_hash", key_hash)

    def find_by_user_email(self, user_email: str) -> list[ApiKey]:
        return self.store.select(self.store.table.c.user_email == user_email)

    def find_by_user_email_and_active(self, user_email: str, is_active: bool) -> list[ApiKey]:
        table = self.store.table
        return self.store.select(table.c.user_email == user_email, table.c.is_active == is_active)

    def find_by_created_by_email(self, created_by_email: str) -> list[ApiKey]:
        return self.store.select(self.store.table.c.created_by_email == created_by_email)

    def find_by_key_type(self, key_type: ApiKeyType) -> list[ApiKey]:
        return self.store.select(self.store.table.c.key_type == ApiKeyType(key_type))

    def find_by_active(self, is_active: bool) -> list[ApiKey]:
        return self.store.select(self.store.table.c.is_active == is_active)
