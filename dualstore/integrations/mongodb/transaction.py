"""All-or-nothing batches over a key-value store without server transactions.

The coordinator writes a commit record to ``_transactions`` and stages every
item of the batch under a lock that points at it. The single atomic update
of the record from ``pending`` to ``committed`` is the commit point: before
it, readers see the old content of every item; after it, the new one. Items
are then rolled forward and the record is removed.

A writer that dies mid-batch leaves locked items behind. ``recover`` finishes
such batches: committed ones are rolled forward, the rest are rolled back. A
writer that merely lost the connection while cleaning up leaves a decided
batch behind; ``recover_one`` finishes it as soon as another write needs one
of its items.
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pymongo.collection import Collection
from pymongo.database import Database

from dualstore.domain import Entity, utc_now
from dualstore.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    UnavailableError,
    ValidationFailure,
)
from dualstore.repositories.base import as_utc, prepare_write
from dualstore.repositories.transactions import Delete, Put, TransactionRunner, WriteOperation

from .errors import translate_errors
from .mapper import PARTITION_KEY, format_timestamp
from .schema import TRANSACTIONS_COLLECTION
from .store import (
    COMMITTED,
    LOCK_FIELD,
    PENDING_FIELD,
    PLACEHOLDER_FIELD,
    ItemKey,
    MongoEntityStore,
)

LOGGER = logging.getLogger(__name__)

MAX_ITEMS_LIMIT = 100
DEFAULT_MAX_ITEMS = 25

PENDING = "pending"
ABORTED = "aborted"

DEFAULT_RECOVERY_AGE = timedelta(minutes=1)


@dataclass(frozen=True)
class _Step:
    """One item of a planned batch."""

    store: MongoEntityStore[Any]
    entity_id: UUID
    image: dict[str, Any] | None
    expected_marker: datetime | None
    is_create: bool

    @property
    def key(self) -> ItemKey:
        return self.store.key(self.entity_id)


def _unmarked(entity: Entity) -> Entity:
    """Copy of ``entity`` whose deletion asserts existence only."""
    return entity.model_copy(update={"updated_at": None})


def _record_items(record: dict[str, Any]) -> list[tuple[str, str]]:
    return [(item["collection"], item["key"]) for item in record.get("items", [])]


class TransactionCoordinator(TransactionRunner):
    """Atomic multi-item writes for the key-value backend.

    Args:
        database: Database holding the entity collections.
        stores: One store per entity type, used to map and check each item.
        max_items: Largest batch accepted, cascaded deletes included.

    Raises:
        ConfigurationError: If ``max_items`` is outside 1..100.

    Examples:
        >>> coordinator = TransactionCoordinator(db, stores, max_items=25)
        >>> coordinator.execute([Put(team), Delete(old_category)])
    """

    def __init__(
        self,
        database: Database[dict[str, Any]],
        stores: Mapping[type[Entity], MongoEntityStore[Any]],
        max_items: int = DEFAULT_MAX_ITEMS,
    ):
        if not 1 <= max_items <= MAX_ITEMS_LIMIT:
            raise ConfigurationError(
                f"max_items must be between 1 and {MAX_ITEMS_LIMIT}, got {max_items}"
            )
        self.database = database
        self.stores = dict(stores)
        self.max_items = max_items

    @property
    def _records(self) -> Collection[dict[str, Any]]:
        return self.database[TRANSACTIONS_COLLECTION]

    def _store_for(self, entity: Entity) -> MongoEntityStore[Any]:
        try:
            return self.stores[type(entity)]
        except KeyError:
            raise ValidationFailure(f"No store for {type(entity).__name__}") from None

    # ========== Planning ==========

    def _plan(self, operations: Sequence[WriteOperation]) -> tuple[list[_Step], list[Entity]]:
        """Expand operations into item steps and run every check against them.

        Checks see the batch in order. A parent created earlier in the batch
        is present, one deleted earlier is gone. A child the batch points at
        a stack is deleted with that stack, and one it moves away from a
        parent no longer holds that parent back.
        """
        steps: dict[ItemKey, _Step] = {}
        planned: dict[ItemKey, dict[str, Any] | None] = {}
        touched: set[ItemKey] = set()
        results: list[Entity] = []
        counted = 0

        def claim(key: ItemKey) -> None:
            if key in touched:
                raise ValidationFailure(f"Batch touches {key[0]} {key[1]} twice")
            touched.add(key)

        for operation in operations:
            store = self._store_for(operation.entity)
            if isinstance(operation, Put):
                prepared = prepare_write(operation.entity)
                key = store.key(prepared.entity_id)
                claim(key)
                store.check_references(prepared.entity, planned)
                store.check_unique(prepared.entity, planned)
                image = store.mapper.to_item(prepared.entity)
                steps[key] = _Step(
                    store,
                    prepared.entity_id,
                    image,
                    prepared.expected_marker,
                    prepared.is_create,
                )
                planned[key] = image
                results.append(prepared.entity)
                counted += 1
            elif isinstance(operation, Delete):
                entity = operation.entity
                if entity.id is None:
                    raise ValidationFailure(f"Cannot delete an unsaved {type(entity).__name__}")
                key = store.key(entity.id)
                claim(key)
                for child_store, field in store.cascades_to:
                    children = child_store.matching(field, entity.id, planned)
                    for child_key, marker in children.items():
                        self._cascade(child_store, child_key, marker, steps)
                        planned[child_key] = None
                        touched.add(child_key)
                        counted += 1
                store.check_dependents(entity.id, planned)
                marker = as_utc(entity.updated_at) if entity.updated_at else None
                steps[key] = _Step(store, entity.id, None, marker, False)
                planned[key] = None
                results.append(entity)
                counted += 1
            else:
                raise ValidationFailure(f"Unsupported operation: {operation!r}")

        if counted > self.max_items:
            raise ValidationFailure(
                f"Batch of {counted} items exceeds the limit of {self.max_items}"
            )
        return list(steps.values()), results

    @staticmethod
    def _cascade(
        store: MongoEntityStore[Any],
        key: ItemKey,
        marker: datetime | None,
        steps: dict[ItemKey, _Step],
    ) -> None:
        """Turn a child of a deleted parent into a deletion step."""
        earlier = steps.get(key)
        entity_id = UUID(key[1])
        if earlier is None:
            steps[key] = _Step(store, entity_id, None, marker, False)
        elif earlier.is_create:
            # Created and cascaded in the same batch: never written at all.
            del steps[key]
        else:
            steps[key] = _Step(store, entity_id, None, earlier.expected_marker, False)

    # ========== Execution ==========

    def execute(self, operations: Sequence[WriteOperation]) -> list[Entity]:
        if not operations:
            return []

        steps, results = self._plan(operations)
        if not steps:
            return results

        txn_id = uuid4().hex
        extra = {"transaction": txn_id, "items": len(steps)}

        items = [(step.store.name, step.key[1]) for step in steps]
        with translate_errors("begin", TRANSACTIONS_COLLECTION):
            self._records.insert_one(
                {
                    "_id": txn_id,
                    "state": PENDING,
                    "created_at": format_timestamp(utc_now()),
                    "items": [{"collection": c, "key": k} for c, k in items],
                }
            )

        try:
            for step in steps:
                self._stage(txn_id, step)
            self._commit(txn_id)
        except PersistenceError:
            LOGGER.info("Transaction aborted", extra=extra)
            # Releasing is conditioned on the lock, so unstaged items are untouched.
            self._abort(txn_id, items)
            raise

        self._finish(txn_id, items, self._apply)
        LOGGER.debug("Transaction committed", extra=extra)
        return results

    def _stage(self, txn_id: str, step: _Step) -> None:
        store = step.store
        with translate_errors("stage", store.name):
            if step.is_create:
                store.insert(
                    step.entity_id,
                    {
                        PARTITION_KEY: step.key[1],
                        LOCK_FIELD: txn_id,
                        PENDING_FIELD: step.image,
                        PLACEHOLDER_FIELD: True,
                    },
                )
                return

            condition = store.condition(step.entity_id, step.expected_marker)
            update = {"$set": {LOCK_FIELD: txn_id, PENDING_FIELD: step.image}}
            result = store.collection.update_one(condition, update)
            if result.matched_count == 0 and store.settle_lock(step.entity_id):
                result = store.collection.update_one(condition, update)
        if result.matched_count == 0:
            raise ConflictError(f"{store.name}: {step.entity_id} is missing, stale or locked")

    def _commit(self, txn_id: str) -> None:
        with translate_errors("commit", TRANSACTIONS_COLLECTION):
            result = self._records.update_one(
                {"_id": txn_id, "state": PENDING}, {"$set": {"state": COMMITTED}}
            )
        if result.matched_count == 0:
            # Recovery declared this batch dead before it could commit.
            raise ConflictError(f"Transaction {txn_id} was rolled back before commit")

    def _abort(self, txn_id: str, items: list[tuple[str, str]]) -> None:
        try:
            state = self._settle(txn_id)
        except UnavailableError:
            LOGGER.warning(
                "Rollback interrupted, left for recovery",
                extra={"transaction": txn_id},
                exc_info=True,
            )
            return
        if state == COMMITTED:
            # The commit reached the server even though its reply did not.
            self._finish(txn_id, items, self._apply)
        elif state is not None:
            self._finish(txn_id, items, self._release)

    def _settle(self, txn_id: str) -> str | None:
        """Move a pending record to ``aborted`` and return its final state.

        Uses the same conditional update as ``_commit``, so a batch is
        either committed or aborted, never both. Returns ``None`` when the
        record is already gone.
        """
        with translate_errors("abort", TRANSACTIONS_COLLECTION):
            result = self._records.update_one(
                {"_id": txn_id, "state": PENDING}, {"$set": {"state": ABORTED}}
            )
            if result.matched_count:
                return ABORTED
            record = self._records.find_one({"_id": txn_id}, {"state": 1})
        return record["state"] if record else None

    def _complete(
        self,
        txn_id: str,
        items: list[tuple[str, str]],
        action: Callable[[str, str, str], None],
    ) -> None:
        """Apply ``action`` to every item, then drop the record."""
        for collection, key in items:
            with translate_errors("finish", collection):
                action(txn_id, collection, key)
        with translate_errors("finish", TRANSACTIONS_COLLECTION):
            self._records.delete_one({"_id": txn_id})

    def _finish(
        self,
        txn_id: str,
        items: list[tuple[str, str]],
        action: Callable[[str, str, str], None],
    ) -> None:
        """``_complete``, tolerating an outage.

        The outcome of the batch is already decided by the record's state,
        so the remainder is left for ``recover_one`` or ``recover``.
        """
        try:
            self._complete(txn_id, items, action)
        except UnavailableError:
            LOGGER.warning(
                "Transaction cleanup interrupted, left for recovery",
                extra={"transaction": txn_id},
                exc_info=True,
            )

    def _apply(self, txn_id: str, collection: str, key: str) -> None:
        """Replace a staged item by its pending image, or delete it."""
        target = self.database[collection]
        doc = target.find_one({PARTITION_KEY: key, LOCK_FIELD: txn_id})
        if doc is None:
            return
        image = doc.get(PENDING_FIELD)
        if image is None:
            target.delete_one({PARTITION_KEY: key, LOCK_FIELD: txn_id})
        else:
            target.replace_one({PARTITION_KEY: key, LOCK_FIELD: txn_id}, image)

    def _release(self, txn_id: str, collection: str, key: str) -> None:
        """Undo staging: drop a placeholder, or unlock the committed content."""
        target = self.database[collection]
        target.delete_one({PARTITION_KEY: key, LOCK_FIELD: txn_id, PLACEHOLDER_FIELD: True})
        target.update_one(
            {PARTITION_KEY: key, LOCK_FIELD: txn_id},
            {"$unset": {LOCK_FIELD: "", PENDING_FIELD: ""}},
        )

    # ========== Deletes that cascade ==========

    def delete_cascading(
        self, store: MongoEntityStore[Any], entity_id: UUID, *, must_exist: bool = False
    ) -> None:
        """Delete an entity together with the children that go with it.

        When everything fits in one batch it is removed atomically. Otherwise
        the children go first, a batch at a time, and the parent last, so an
        interruption never leaves children behind a live parent.

        Raises:
            NotFoundError: If ``must_exist`` is set and no record exists.
        """
        parent = store.get(entity_id)
        if parent is None:
            if must_exist:
                raise NotFoundError.for_id(store.entity_type, entity_id)
            return

        children = [
            child
            for child_store, field in store.cascades_to
            for child in child_store.query(field, entity_id)
        ]
        if len(children) >= self.max_items:
            LOGGER.info(
                "Cascading delete split into batches",
                extra={
                    "collection": store.name,
                    "entity_id": str(entity_id),
                    "children": len(children),
                },
            )
            for start in range(0, len(children), self.max_items):
                chunk = children[start : start + self.max_items]
                self.execute([Delete(_unmarked(child)) for child in chunk])
        self.execute([Delete(_unmarked(parent))])
        LOGGER.debug(
            "Deleted entity", extra={"collection": store.name, "entity_id": str(entity_id)}
        )

    # ========== Recovery ==========

    def recover_one(
        self,
        txn_id: str,
        collection: str,
        key: str,
        older_than: timedelta = DEFAULT_RECOVERY_AGE,
    ) -> bool:
        """Finish the batch holding one item, if its outcome is decided.

        Called by a store whose conditional write found the item locked. A
        committed or aborted batch is completed on the spot. A pending one is
        rolled back only once older than ``older_than``, as in ``recover``.
        A lock whose record is gone is released.

        Returns:
            True if the item is no longer held by ``txn_id``.

        Raises:
            UnavailableError: If the backend cannot be reached to finish it.
        """
        with translate_errors("recover", TRANSACTIONS_COLLECTION):
            record = self._records.find_one({"_id": txn_id})

        state = record.get("state") if record else None
        if state == PENDING:
            if record["created_at"] >= format_timestamp(utc_now() - older_than):
                return False
            state = self._settle(txn_id)

        if state is None:
            with translate_errors("recover", collection):
                self._release(txn_id, collection, key)
            return True

        items = _record_items(record)
        self._complete(txn_id, items, self._apply if state == COMMITTED else self._release)
        LOGGER.info(
            "Finished transaction blocking a write",
            extra={"transaction": txn_id, "state": state, "items": len(items)},
        )
        return True

    def recover(self, older_than: timedelta = DEFAULT_RECOVERY_AGE) -> int:
        """Finish batches whose writer stopped before cleaning up.

        Only records older than ``older_than`` are touched so that live
        writers are not interrupted. A pending batch is first moved to
        ``aborted`` with the same conditional update its writer would use
        to commit, so exactly one of them wins.

        Returns:
            The number of batches repaired.
        """
        cutoff = format_timestamp(utc_now() - older_than)
        with translate_errors("recover", TRANSACTIONS_COLLECTION):
            stale = list(self._records.find({"created_at": {"$lt": cutoff}}))

        for record in stale:
            txn_id = record["_id"]
            items = _record_items(record)
            state = self._settle(txn_id) if record.get("state") == PENDING else record.get("state")
            if state == COMMITTED:
                self._finish(txn_id, items, self._apply)
            elif state is not None:
                self._finish(txn_id, items, self._release)
            LOGGER.warning(
                "Recovered abandoned transaction",
                extra={"transaction": txn_id, "state": state, "items": len(items)},
            )
        return len(stale)
