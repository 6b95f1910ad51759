"""Generic key-value persistence helper, composed into every repository."""

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from dualstore.domain import Entity
from dualstore.errors import ConflictError, NotFoundError, ValidationFailure
from dualstore.repositories.base import PreparedWrite, prepare_write

from .errors import translate_errors
from .mapper import PARTITION_KEY, EntityItemMapper, format_timestamp
from .schema import TRANSACTIONS_COLLECTION, TableDefinition

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

# Fields the transaction coordinator adds to an item while a batch holds it.
LOCK_FIELD = "_txn"
PENDING_FIELD = "_pending"
PLACEHOLDER_FIELD = "_placeholder"

COMMITTED = "committed"

ItemKey = tuple[str, str]
"""(collection, partition key) of one item."""

PlannedImages = Mapping[ItemKey, dict[str, Any] | None]
"""Item images a batch will leave behind, ``None`` for a deletion."""

LockResolver = Callable[[str, str, str], bool]
"""(transaction id, collection, partition key) -> whether the lock is gone."""


class MongoEntityStore(Generic[E]):
    """Point lookups, index queries and conditional writes for one collection.

    The partition key (``_id``) is the canonical string form of the entity
    id. Only the fields declared as secondary indexes in the table
    definition can be queried; anything else goes through ``scan``, which
    reads the whole collection and is logged as such.

    Every write is conditional:

    - a creation requires that no item exists under the key;
    - an update requires the stored ``updated_at`` to equal the marker the
      caller read, and that no transaction currently holds the item.

    A failed condition raises ``ConflictError``; nothing is ever overwritten
    blindly. When the item is held by a batch whose outcome is already
    decided (its writer lost the connection while cleaning up), the
    ``lock_resolver`` finishes that batch and the write is tried once more.

    Reads resolve items held by an in-flight transaction to their committed
    state, so a reader never observes half of a batch.

    Relationships and the lock resolver are attached after construction
    because stores and the coordinator refer to each other.
    """

    def __init__(
        self,
        database: Database[dict[str, Any]],
        table: TableDefinition,
        mapper: EntityItemMapper[E] | None = None,
    ):
        self.database = database
        self.table = table
        self.mapper: EntityItemMapper[E] = mapper or EntityItemMapper(table.entity_type)
        self.references: dict[str, MongoEntityStore[Any]] = {}
        self.restricted_by: list[tuple[MongoEntityStore[Any], str]] = []
        self.cascades_to: list[tuple[MongoEntityStore[Any], str]] = []
        self.lock_resolver: LockResolver | None = None

    @property
    def name(self) -> str:
        return self.table.collection

    @property
    def entity_type(self) -> type[E]:
        return self.table.entity_type  # type: ignore[return-value]

    @property
    def collection(self) -> Collection[dict[str, Any]]:
        return self.database[self.table.collection]

    @property
    def _transactions(self) -> Collection[dict[str, Any]]:
        return self.database[TRANSACTIONS_COLLECTION]

    def key(self, entity_id: UUID) -> ItemKey:
        return (self.name, str(entity_id))

    # ========== Reads ==========

    def get(self, entity_id: UUID) -> E | None:
        with translate_errors("get", self.name):
            doc = self.collection.find_one({PARTITION_KEY: str(entity_id)})
            items = self._resolve([doc] if doc else [])
        return self.mapper.from_item(items[0]) if items else None

    def require(self, entity_id: UUID) -> E:
        """Like ``get``, but an absent record raises ``NotFoundError``."""
        if (found := self.get(entity_id)) is None:
            raise NotFoundError.for_id(self.entity_type, entity_id)
        return found

    def exists(self, entity_id: UUID) -> bool:
        return self.get(entity_id) is not None

    def query(self, field: str, value: Any) -> list[E]:
        """Return the entities whose indexed ``field`` equals ``value``.

        Raises:
            ValidationFailure: If ``field`` has no declared secondary index.
        """
        if field not in self.table.indexed_fields():
            raise ValidationFailure(f"{self.name}: no secondary index on {field!r}")

        encoded = self.mapper.encode_field(field, value)
        with translate_errors("query", self.name):
            items = self._resolve(self.collection.find({field: encoded}))
        return [self.mapper.from_item(item) for item in items if item.get(field) == encoded]

    def scan(self, predicate: Callable[[E], bool] | None = None) -> list[E]:
        """Read the whole collection, optionally filtering client-side.

        This is not suitable for latency-sensitive paths.
        """
        LOGGER.info("Full collection scan", extra={"collection": self.name})
        with translate_errors("scan", self.name):
            items = self._resolve(self.collection.find({}))
        entities = [self.mapper.from_item(item) for item in items]
        return [e for e in entities if predicate is None or predicate(e)]

    def count(self) -> int:
        """Number of records, counting held items by their committed state."""
        with translate_errors("count", self.name):
            unlocked = self.collection.count_documents({LOCK_FIELD: {"$exists": False}})
            held = self._resolve(self.collection.find({LOCK_FIELD: {"$exists": True}}))
        return unlocked + len(held)

    def _resolve(self, docs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        """Map raw documents to their committed item images."""
        docs = list(docs)
        held = {doc[LOCK_FIELD] for doc in docs if doc.get(LOCK_FIELD)}
        committed: set[str] = set()
        if held:
            committed = {
                record["_id"]
                for record in self._transactions.find(
                    {"_id": {"$in": list(held)}, "state": COMMITTED}, {"_id": 1}
                )
            }

        items = []
        for doc in docs:
            txn_id = doc.get(LOCK_FIELD)
            if txn_id is None:
                items.append(doc)
            elif txn_id in committed:
                if doc.get(PENDING_FIELD) is not None:
                    items.append(doc[PENDING_FIELD])
            elif not doc.get(PLACEHOLDER_FIELD):
                items.append(doc)
        return items

    # ========== Writes ==========

    def save(self, entity: E) -> E:
        """Check relationships and unique values, then write ``entity``."""
        prepared = prepare_write(entity)
        self.check_references(prepared.entity)
        self.check_unique(prepared.entity)
        saved = self.put(prepared)
        LOGGER.debug(
            "Saved entity",
            extra={
                "collection": self.name,
                "entity_id": str(prepared.entity_id),
                "created": prepared.is_create,
            },
        )
        return saved

    def condition(self, entity_id: UUID, expected_marker: datetime | None) -> dict[str, Any]:
        """Filter matching the item only if it is unlocked and carries the marker."""
        condition: dict[str, Any] = {
            PARTITION_KEY: str(entity_id),
            LOCK_FIELD: {"$exists": False},
        }
        if expected_marker is not None:
            condition["updated_at"] = format_timestamp(expected_marker)
        return condition

    def settle_lock(self, entity_id: UUID) -> bool:
        """Finish the batch holding ``entity_id`` if its outcome is decided.

        Returns:
            True if the item is no longer locked and the write may be retried.
        """
        if self.lock_resolver is None:
            return False
        doc = self.collection.find_one(
            {PARTITION_KEY: str(entity_id), LOCK_FIELD: {"$exists": True}}, {LOCK_FIELD: 1}
        )
        if doc is None:
            return False
        return self.lock_resolver(doc[LOCK_FIELD], self.name, str(entity_id))

    def insert(self, entity_id: UUID, doc: dict[str, Any]) -> None:
        """Insert a new document under ``entity_id``.

        Must run inside ``translate_errors``: an existing key surfaces as
        ``DuplicateKeyError``.
        """
        try:
            self.collection.insert_one(doc)
        except DuplicateKeyError:
            if not self.settle_lock(entity_id):
                raise
            self.collection.insert_one(doc)

    def put(self, prepared: PreparedWrite[E]) -> E:
        """Write a stamped entity under its precondition.

        Raises:
            ConflictError: If the item already exists (creation), or was
                modified, removed or locked since it was read (update).
        """
        item = self.mapper.to_item(prepared.entity)
        with translate_errors("put", self.name):
            if prepared.is_create:
                self.insert(prepared.entity_id, item)
                return prepared.entity

            condition = self.condition(prepared.entity_id, prepared.expected_marker)
            result = self.collection.replace_one(condition, item)
            if result.matched_count == 0 and self.settle_lock(prepared.entity_id):
                result = self.collection.replace_one(condition, item)
        if result.matched_count == 0:
            LOGGER.info(
                "Stale write rejected",
                extra={"collection": self.name, "entity_id": str(prepared.entity_id)},
            )
            raise ConflictError(
                f"{self.name}: {prepared.entity_id} was modified or removed concurrently"
            )
        return prepared.entity

    def delete(self, entity_id: UUID, expected_marker: datetime | None = None) -> bool:
        """Remove the item if its condition holds.

        Returns:
            True if an item was removed.
        """
        condition = self.condition(entity_id, expected_marker)
        with translate_errors("delete", self.name):
            result = self.collection.delete_one(condition)
            if result.deleted_count == 0 and self.settle_lock(entity_id):
                result = self.collection.delete_one(condition)
        return result.deleted_count == 1

    def remove(self, entity_id: UUID, *, must_exist: bool = False) -> None:
        """Delete a record that has no cascading children.

        Raises:
            NotFoundError: If ``must_exist`` is set and no record exists.
            ValidationFailure: If restricting children still reference it.
            ConflictError: If a pending batch holds the record.
        """
        if self.get(entity_id) is None:
            if must_exist:
                raise NotFoundError.for_id(self.entity_type, entity_id)
            return
        self.check_dependents(entity_id)
        if not self.delete(entity_id) and self.exists(entity_id):
            raise ConflictError(f"{self.name}: {entity_id} is held by a pending transaction")
        LOGGER.debug(
            "Deleted entity", extra={"collection": self.name, "entity_id": str(entity_id)}
        )

    # ========== Relationships and unique values ==========

    def matching(
        self, field: str, value: Any, planned: PlannedImages | None = None
    ) -> dict[ItemKey, datetime | None]:
        """Items whose indexed ``field`` equals ``value`` once ``planned`` is applied.

        ``planned`` holds the images a batch has queued so far, so an item
        the batch creates or moves onto ``value`` is included and one it
        deletes or moves away is not.

        Returns:
            Item key to the marker read from the index, or ``None`` for an
            item that only matches through the batch.
        """
        encoded = self.mapper.encode_field(field, value)
        found: dict[ItemKey, datetime | None] = {
            self.key(entity.id): entity.updated_at for entity in self.query(field, value)
        }
        for key, image in (planned or {}).items():
            if key[0] != self.name:
                continue
            if image is not None and image.get(field) == encoded:
                found.setdefault(key, None)
            else:
                found.pop(key, None)
        return found

    def check_references(self, entity: E, planned: PlannedImages | None = None) -> None:
        """Verify that every non-null relationship resolves to a live entity.

        A parent the batch writes counts as present and one it deletes as
        absent. The check and the subsequent write are not atomic: a parent
        deleted in between leaves a dangling reference.

        Raises:
            ValidationFailure: If a relationship does not resolve.
        """
        planned = planned or {}
        for field, parent in self.references.items():
            parent_id = getattr(entity, field)
            if parent_id is None:
                continue
            key = parent.key(parent_id)
            present = planned[key] is not None if key in planned else parent.exists(parent_id)
            if not present:
                raise ValidationFailure(
                    f"{self.name}.{field} references missing {parent.name} {parent_id}"
                )

    def check_dependents(self, entity_id: UUID, planned: PlannedImages | None = None) -> None:
        """Refuse to delete an entity that restricting children still reference.

        Raises:
            ValidationFailure: If a child still references ``entity_id``.
        """
        for child, field in self.restricted_by:
            remaining = child.matching(field, entity_id, planned)
            if remaining:
                raise ValidationFailure(
                    f"{self.name} {entity_id} is still referenced by "
                    f"{len(remaining)} {child.name}"
                )

    def check_unique(self, entity: E, planned: PlannedImages | None = None) -> None:
        """Refuse a value of a unique field that another record holds.

        Raises:
            ConflictError: If another record has, or the batch gives another
                record, the same value.
        """
        own = {self.key(entity.id)} if entity.id is not None else set()
        for field in self.table.unique_fields:
            value = getattr(entity, field)
            if value is None:
                continue
            if set(self.matching(field, value, planned)) - own:
                LOGGER.info(
                    "Unique value rejected", extra={"collection": self.name, "field": field}
                )
                raise ConflictError(f"{self.name}: {field} is already taken")
