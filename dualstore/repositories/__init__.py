from .base import EntityId, PreparedWrite, Repository, coerce_id, prepare_write
from .interfaces import (
    ApiKeyRepository,
    CategoryRepository,
    CloudProviderRepository,
    StackRepository,
    StackResourceRepository,
    TeamRepository,
)
from .repository_set import RepositorySet
from .transactions import Delete, Put, TransactionRunner, WriteOperation

__all__ = [
    "ApiKeyRepository",
    "CategoryRepository",
    "CloudProviderRepository",
    "Delete",
    "EntityId",
    "PreparedWrite",
    "Put",
    "Repository",
    "RepositorySet",
    "StackRepository",
    "StackResourceRepository",
    "TeamRepository",
    "TransactionRunner",
    "WriteOperation",
    "coerce_id",
    "prepare_write",
]
