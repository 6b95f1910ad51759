from collections.abc import Callable
from dataclasses import dataclass, field

from ..health import HealthMonitor
from .interfaces import (
    ApiKeyRepository,
    CategoryRepository,
    CloudProviderRepository,
    StackRepository,
    StackResourceRepository,
    TeamRepository,
)
from .transactions import TransactionRunner


@dataclass(frozen=True)
class RepositorySet:
    """Every repository bound to the one backend selected at startup.

    Built once by ``dualstore.provider.build_repositories`` and handed to
    business code through explicit injection. The underlying client or
    engine is shared by all members for the lifetime of the process.
    """

    provider: str
    teams: TeamRepository
    cloud_providers: CloudProviderRepository
    categories: CategoryRepository
    stacks: StackRepository
    stack_resources: StackResourceRepository
    api_keys: ApiKeyRepository
    transactions: TransactionRunner
    health: HealthMonitor
    _close: Callable[[], None] = field(default=lambda: None, repr=False)

    def close(self) -> None:
        """Release the shared client or connection pool."""
        self._close()
