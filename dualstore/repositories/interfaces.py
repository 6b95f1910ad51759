"""Per-entity repository contracts.

Business code depends on these interfaces only; the provider selector binds
them to one backend at startup.
"""

from abc import abstractmethod
from uuid import UUID

from ..domain import (
    ApiKey,
    ApiKeyType,
    Category,
    CloudProvider,
    Stack,
    StackResource,
    StackType,
    Team,
)
from .base import Repository


class TeamRepository(Repository[Team]):
    entity_type = Team

    @abstractmethod
    def find_by_name(self, name: str) -> Team | None:
        pass

    @abstractmethod
    def find_by_active(self, is_active: bool) -> list[Team]:
        pass


class CloudProviderRepository(Repository[CloudProvider]):
    entity_type = CloudProvider

    @abstractmethod
    def find_by_name(self, name: str) -> CloudProvider | None:
        pass

    @abstractmethod
    def find_by_enabled(self, enabled: bool) -> list[CloudProvider]:
        pass


class CategoryRepository(Repository[Category]):
    entity_type = Category

    @abstractmethod
    def find_by_name(self, name: str) -> Category | None:
        pass

    @abstractmethod
    def find_by_active(self, is_active: bool) -> list[Category]:
        pass


class StackRepository(Repository[Stack]):
    """Stacks reference a team, a category and a cloud provider by id.

    Deleting a stack also deletes its resources on both backends.
    """

    entity_type = Stack

    @abstractmethod
    def find_by_created_by(self, created_by: str) -> list[Stack]:
        """Stacks owned by a user."""

    @abstractmethod
    def find_by_team_id(self, team_id: UUID | str) -> list[Stack]:
        pass

    @abstractmethod
    def find_by_category_id(self, category_id: UUID | str) -> list[Stack]:
        pass

    @abstractmethod
    def find_by_cloud_provider_id(self, cloud_provider_id: UUID | str) -> list[Stack]:
        pass

    @abstractmethod
    def find_by_stack_type(self, stack_type: StackType) -> list[Stack]:
        """Stacks of a given type.

        Not backed by a secondary index on the key-value backend: this is a
        full scan there and should stay off latency-sensitive paths.
        """


class StackResourceRepository(Repository[StackResource]):
    entity_type = StackResource

    @abstractmethod
    def find_by_stack_id(self, stack_id: UUID | str) -> list[StackResource]:
        pass


class ApiKeyRepository(Repository[ApiKey]):
    """API keys, looked up by the hash of the presented key.

    ``key_hash`` is unique: saving a second key with the same hash raises
    ``ConflictError``.
    """

    entity_type = ApiKey

    @abstractmethod
    def find_by_key_hash(self, key_hash: str) -> ApiKey | None:
        pass

    @abstractmethod
    def find_by_user_email(self, user_email: str) -> list[ApiKey]:
        pass

    @abstractmethod
    def find_by_user_email_and_active(self, user_email: str, is_active: bool) -> list[ApiKey]:
        pass

    @abstractmethod
    def find_by_created_by_email(self, created_by_email: str) -> list[ApiKey]:
        pass

    @abstractmethod
    def find_by_key_type(self, key_type: ApiKeyType) -> list[ApiKey]:
        pass

    @abstractmethod
    def find_by_active(self, is_active: bool) -> list[ApiKey]:
        pass
