"""Collection and secondary index declarations for the key-value backend.

Collections and indexes are declared in code and reconciled at startup:
anything missing is created, anything present is left alone. Several
processes may run the initializer at the same time; losing a creation race
("already exists") counts as success.
"""

import logging
from collections.abc import Callable
from enum import IntEnum
from typing import Any

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import CollectionInvalid, OperationFailure

from dualstore.domain import (
    ApiKey,
    Category,
    CloudProvider,
    Entity,
    Stack,
    StackResource,
    Team,
)

from .errors import translate_errors

LOGGER = logging.getLogger(__name__)

TRANSACTIONS_COLLECTION = "_transactions"

# Server error codes meaning an equivalent index is already in place.
_INDEX_ALREADY_EXISTS = {68, 85}


class IndexDirection(IntEnum):
    """Sort direction for MongoDB index fields."""

    ASC = ASCENDING
    """Ascending order (1)."""

    DESC = DESCENDING
    """Descending order (-1)."""


class IndexSpec(BaseModel):
    """Specification for a secondary index.

    Example:
        >>> IndexSpec(keys=[("team_id", IndexDirection.ASC)])
        >>>
        >>> # Compound index
        >>> IndexSpec(
        ...     keys=[
        ...         ("is_active", IndexDirection.ASC),
        ...         ("created_at", IndexDirection.DESC),
        ...     ],
        ... )
    """

    keys: list[tuple[str, IndexDirection]]
    """(field_name, direction) tuples."""

    unique: bool = False
    """If True, enforce uniqueness."""

    @property
    def name(self) -> str:
        return "_".join(f"{field}_{int(direction)}" for field, direction in self.keys)

    @property
    def leading_field(self) -> str:
        return self.keys[0][0]

    def apply(self, collection: Collection[dict[str, Any]]) -> None:
        """Create this index on ``collection`` unless it already exists."""
        kwargs: dict[str, Any] = {"name": self.name}
        if self.unique:
            kwargs["unique"] = True
        try:
            collection.create_index([(f, int(d)) for f, d in self.keys], **kwargs)
        except OperationFailure as err:
            if err.code not in _INDEX_ALREADY_EXISTS:
                raise
            LOGGER.debug(
                "Index already exists",
                extra={"collection": collection.name, "index": self.name},
            )


class TableDefinition(BaseModel):
    """One collection per entity type, with its declared secondary indexes.

    ``unique_fields`` are checked by the store before every write rather
    than by a unique index: an item staged by a batch does not carry its
    fields at the top level until it is rolled forward. Each must also be
    indexed.
    """

    model_config = {"arbitrary_types_allowed": True}

    entity_type: type[Entity]
    collection: str
    indexes: list[IndexSpec] = []
    unique_fields: list[str] = []

    def indexed_fields(self) -> set[str]:
        return {spec.leading_field for spec in self.indexes}


def _index(field: str) -> IndexSpec:
    return IndexSpec(keys=[(field, IndexDirection.ASC)])


TABLES: list[TableDefinition] = [
    TableDefinition(
        entity_type=Team,
        collection="teams",
        indexes=[_index("name"), _index("is_active")],
    ),
    TableDefinition(
        entity_type=CloudProvider,
        collection="cloud_providers",
        indexes=[_index("name"), _index("enabled")],
    ),
    TableDefinition(
        entity_type=Category,
        collection="categories",
        indexes=[_index("name"), _index("is_active")],
    ),
    TableDefinition(
        entity_type=Stack,
        collection="stacks",
        indexes=[
            _index("created_by"),
            _index("team_id"),
            _index("category_id"),
            _index("cloud_provider_id"),
        ],
    ),
    TableDefinition(
        entity_type=StackResource,
        collection="stack_resources",
        indexes=[_index("stack_id")],
    ),
    TableDefinition(
        entity_type=ApiKey,
        collection="api_keys",
        indexes=[
            _index("key_hash"),
            _index("user_email"),
            _index("created_by_email"),
            _index("key_type"),
            _index("is_active"),
        ],
        unique_fields=["key_hash"],
    ),
]


def table_for(entity_type: type[Entity]) -> TableDefinition:
    for table in TABLES:
        if table.entity_type is entity_type:
            return table
    raise KeyError(f"No table declared for {entity_type.__name__}")


class MongoSchemaInitializer:
    """Idempotently provisions every declared collection and index.

    Args:
        database: Target database.
        tables: Declarations to reconcile. Defaults to ``TABLES``.
        recover: Called once everything exists, to repair batches left
            behind by writers that crashed (``TransactionCoordinator.recover``).

    Examples:
        >>> initializer = MongoSchemaInitializer(config.db, recover=coordinator.recover)
        >>> initializer.initialize()
    """

    def __init__(
        self,
        database: Database[dict[str, Any]],
        tables: list[TableDefinition] | None = None,
        recover: Callable[[], int] | None = None,
    ):
        self.database = database
        self.tables = tables if tables is not None else TABLES
        self.recover = recover

    def initialize(self) -> None:
        existing = set(self._list_collections())
        for table in self.tables:
            self._ensure_collection(table.collection, existing)
            collection = self.database[table.collection]
            with translate_errors("create_index", table.collection):
                for spec in table.indexes:
                    spec.apply(collection)
            LOGGER.info(
                "Collection ready",
                extra={"collection": table.collection, "indexes": len(table.indexes)},
            )
        self._ensure_collection(TRANSACTIONS_COLLECTION, existing)
        if self.recover is not None:
            repaired = self.recover()
            if repaired:
                LOGGER.info("Repaired abandoned transactions", extra={"count": repaired})

    def _list_collections(self) -> list[str]:
        with translate_errors("list_collections", self.database.name):
            return self.database.list_collection_names()

    def _ensure_collection(self, name: str, existing: set[str]) -> None:
        if name in existing:
            return
        with translate_errors("create_collection", name):
            try:
                self.database.create_collection(name)
                LOGGER.info("Created collection", extra={"collection": name})
            except CollectionInvalid:
                # Another process created it between the listing and now.
                LOGGER.debug("Collection already exists", extra={"collection": name})
