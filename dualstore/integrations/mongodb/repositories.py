"""Key-value implementations of the repository interfaces."""

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

from .store import MongoEntityStore
from .transaction import TransactionCoordinator

E = TypeVar("E", bound=Entity)


def _first_created(entities: list[E]) -> E | None:
    return min(entities, key=lambda e: (e.created_at, str(e.id)), default=None)


class MongoRepository(Repository[E]):
    """Binds a repository interface to a ``MongoEntityStore``.

    Every operation is forwarded to the store; deletes that cascade go
    through the coordinator so parent and children disappear together.

    Args:
        store: Store for this repository's collection.
        transactions: Coordinator used for deletes that cascade.
    """

    def __init__(self, store: MongoEntityStore[E], transactions: TransactionCoordinator):
        self.store = store
        self.transactions = transactions

    def save(self, entity: E) -> E:
        return self.store.save(entity)

    def find_by_id(self, entity_id: EntityId) -> E | None:
        return self.store.get(coerce_id(entity_id))

    def get(self, entity_id: EntityId) -> E:
        return self.store.require(coerce_id(entity_id))

    def exists(self, entity_id: EntityId) -> bool:
        return self.store.exists(coerce_id(entity_id))

    def find_all(self) -> list[E]:
        return self.store.scan()

    def count(self) -> int:
        return self.store.count()

    def delete(self, entity: E) -> None:
        if entity.id is not None:
            self.delete_by_id(entity.id)

    def delete_by_id(self, entity_id: EntityId, *, must_exist: bool = False) -> None:
        entity_id = coerce_id(entity_id)
        if self.store.cascades_to:
            self.transactions.delete_cascading(self.store, entity_id, must_exist=must_exist)
        else:
            self.store.remove(entity_id, must_exist=must_exist)


class MongoTeamRepository(MongoRepository[Team], TeamRepository):
    def find_by_name(self, name: str) -> Team | None:
        return _first_created(self.store.query("name", name))

    def find_by_active(self, is_active: bool) -> list[Team]:
        return self.store.query("is_active", is_active)


class MongoCloudProviderRepository(MongoRepository[CloudProvider], CloudProviderRepository):
    def find_by_name(self, name: str) -> CloudProvider | None:
        return _first_created(self.store.query("name", name))

    def find_by_enabled(self, enabled: bool) -> list[CloudProvider]:
        return self.store.query("enabled", enabled)


class MongoCategoryRepository(MongoRepository[Category], CategoryRepository):
    def find_by_name(self, name: str) -> Category | None:
        return _first_created(self.store.query("name", name))

    def find_by_active(self, is_active: bool) -> list[Category]:
        return self.store.query("is_active", is_active)


class MongoStackRepository(MongoRepository[Stack], StackRepository):
    def find_by_created_by(self, created_by: str) -> list[Stack]:
        return self.store.query("created_by", created_by)

    def find_by_team_id(self, team_id: UUID | str) -> list[Stack]:
        return self.store.query("team_id", coerce_id(team_id))

    def find_by_category_id(self, category_id: UUID | str) -> list[Stack]:
        return self.store.query("category_id", coerce_id(category_id))

    def find_by_cloud_provider_id(self, cloud_provider_id: UUID | str) -> list[Stack]:
        return self.store.query("cloud_provider_id", coerce_id(cloud_provider_id))

    def find_by_stack_type(self, stack_type: StackType) -> list[Stack]:
        return self.store.scan(lambda stack: stack.stack_type == stack_type)


class MongoStackResourceRepository(MongoRepository[StackResource], StackResourceRepository):
    def find_by_stack_id(self, stack_id: UUID | str) -> list[StackResource]:
        return self.store.query("stack_id", coerce_id(stack_id))


class MongoApiKeyRepository(MongoRepository[ApiKey], ApiKeyRepository):
    def find_by_key_hash(self, key_hash: str) -> ApiKey | None:
        return _first_created(self.store.query("key_hash", key_hash))

    def find_by_user_email(self, user_email: str) -> list[ApiKey]:
        return self.store.query("user_email", user_email)

    def find_by_user_email_and_active(self, user_email: str, is_active: bool) -> list[ApiKey]:
        return [key for key in self.find_by_user_email(user_email) if key.is_active == is_active]

    def find_by_created_by_email(self, created_by_email: str) -> list[ApiKey]:
        return self.store.query("created_by_email", created_by_email)

    def find_by_key_type(self, key_type: ApiKeyType) -> list[ApiKey]:
        return self.store.query("key_type", key_type)

    def find_by_active(self, is_active: bool) -> list[ApiKey]:
        return self.store.query("is_active", is_active)
