"""All-or-nothing batches on the relational backend."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.engine import Engine

from dualstore.domain import Entity
from dualstore.errors import ConfigurationError, ConflictError, ValidationFailure
from dualstore.repositories.base import as_utc, prepare_write
from dualstore.repositories.transactions import Delete, Put, TransactionRunner, WriteOperation

from .errors import translate_errors
from .store import SqlEntityStore

LOGGER = logging.getLogger(__name__)

MAX_ITEMS_LIMIT = 100
DEFAULT_MAX_ITEMS = 25


class SqlTransactionRunner(TransactionRunner):
    """Runs a whole batch inside one engine transaction.

    The batch limit counts rows removed by cascading deletes, the same way
    the key-value coordinator does, so a batch accepted by one backend is
    accepted by the other.

    Raises:
        ConfigurationError: If ``max_items`` is outside 1..100.
    """

    def __init__(
        self,
        engine: Engine,
        stores: Mapping[type[Entity], SqlEntityStore[Any]],
        max_items: int = DEFAULT_MAX_ITEMS,
    ):
        if not 1 <= max_items <= MAX_ITEMS_LIMIT:
            raise ConfigurationError(
                f"max_items must be between 1 and {MAX_ITEMS_LIMIT}, got {max_items}"
            )
        self.engine = engine
        self.stores = dict(stores)
        self.max_items = max_items

    def _store_for(self, entity: Entity) -> SqlEntityStore[Any]:
        try:
            return self.stores[type(entity)]
        except KeyError:
            raise ValidationFailure(f"No store for {type(entity).__name__}") from None

    def execute(self, operations: Sequence[WriteOperation]) -> list[Entity]:
        if not operations:
            return []
        if len(operations) > self.max_items:
            raise ValidationFailure(
                f"Batch of {len(operations)} items exceeds the limit of {self.max_items}"
            )

        seen: set[tuple[str, UUID]] = set()
        results: list[Entity] = []
        items = 0
        with translate_errors("execute", "batch"):
            with self.engine.begin() as conn:
                for operation in operations:
                    store = self._store_for(operation.entity)
                    entity = operation.entity
                    if isinstance(operation, Put):
                        prepared = prepare_write(entity)
                        entity = prepared.entity
                    elif not isinstance(operation, Delete):
                        raise ValidationFailure(f"Unsupported operation: {operation!r}")
                    elif entity.id is None:
                        raise ValidationFailure(
                            f"Cannot delete an unsaved {type(entity).__name__}"
                        )

                    key = (store.name, entity.id)
                    if key in seen:
                        raise ValidationFailure(f"Batch touches {store.name} {entity.id} twice")
                    seen.add(key)

                    if isinstance(operation, Put):
                        store.put(prepared, connection=conn)
                    else:
                        items += store.count_cascaded(entity.id, connection=conn)
                        marker = as_utc(entity.updated_at) if entity.updated_at else None
                        if not store.delete(entity.id, marker, connection=conn):
                            raise ConflictError(
                                f"{store.name}: {entity.id} is missing or was modified"
                            )
                    results.append(entity)

                    items += 1
                    if items > self.max_items:
                        raise ValidationFailure(
                            f"Batch exceeds the limit of {self.max_items} items"
                        )

        LOGGER.debug("Transaction committed", extra={"items": items})
        return results
