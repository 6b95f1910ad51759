from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generic, TypeVar
from uuid import UUID, uuid4

from ..domain import Entity, utc_now
from ..errors import ValidationFailure

E = TypeVar("E", bound=Entity)

EntityId = UUID | str

MARKER_RESOLUTION = timedelta(microseconds=1)


def coerce_id(value: EntityId) -> UUID:
    """Parse an identifier given as a ``UUID`` or its string form.

    Raises:
        ValidationFailure: If the value is not a well-formed UUID.
    """
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError) as err:
        raise ValidationFailure(f"Malformed identifier: {value!r}") from err


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to an aware UTC value (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PreparedWrite(Generic[E]):
    """An entity stamped for writing, plus the precondition the write carries.

    Attributes:
        entity: Copy of the caller's entity with id and timestamps assigned.
        entity_id: The identifier the write targets (always set).
        expected_marker: The ``updated_at`` value the stored record must still
            have, or ``None`` when the record must not exist yet.
    """

    entity: E
    entity_id: UUID
    expected_marker: datetime | None

    @property
    def is_create(self) -> bool:
        return self.expected_marker is None


def prepare_write(entity: E) -> PreparedWrite[E]:
    """Assign identity and timestamps for a save without mutating ``entity``.

    - No id: a new id is generated and the record must not exist.
    - An id but no ``updated_at``: the record must not exist under that id.
    - Both: the stored record must still carry ``updated_at``; the new
      marker is strictly greater than it.
    """
    now = utc_now()
    if entity.id is None or entity.updated_at is None:
        entity_id = entity.id or uuid4()
        created_at = as_utc(entity.created_at) if entity.created_at else now
        stamped = entity.model_copy(
            update={
                "id": entity_id,
                "created_at": created_at,
                "updated_at": max(now, created_at),
            }
        )
        return PreparedWrite(stamped, entity_id, None)

    expected = as_utc(entity.updated_at)
    stamped = entity.model_copy(
        update={
            "created_at": as_utc(entity.created_at) if entity.created_at else expected,
            "updated_at": max(now, expected + MARKER_RESOLUTION),
        }
    )
    return PreparedWrite(stamped, entity.id, expected)


class Repository(ABC, Generic[E]):
    """Storage-independent CRUD contract for one entity type.

    Implementations exist for the relational and the key-value backend and
    must be observably identical. The interface carries no behaviour; each
    backend delegates to a generic per-type store. Every method may raise
    ``UnavailableError`` when the backend cannot be reached in time.
    """

    entity_type: type[E]

    @abstractmethod
    def save(self, entity: E) -> E:
        """Create or overwrite the whole record.

        Returns a new instance with ``id``, ``created_at`` and ``updated_at``
        assigned; the argument is left untouched.

        Raises:
            ConflictError: If the record changed since it was read, or a record
                with a caller-chosen id already exists, or a unique value
                (such as an API key hash) is already taken.
            ValidationFailure: If a relationship does not resolve.
        """

    @abstractmethod
    def find_by_id(self, entity_id: EntityId) -> E | None:
        """Return the entity, or ``None`` when absent."""

    @abstractmethod
    def get(self, entity_id: EntityId) -> E:
        """Return the entity.

        Raises:
            NotFoundError: If no record exists for ``entity_id``.
        """

    @abstractmethod
    def find_all(self) -> list[E]:
        pass

    @abstractmethod
    def delete(self, entity: E) -> None:
        """Remove the record. Deleting an absent record is a no-op."""

    @abstractmethod
    def delete_by_id(self, entity_id: EntityId, *, must_exist: bool = False) -> None:
        """Remove the record by identifier.

        Raises:
            NotFoundError: If ``must_exist`` is set and no record exists.
        """

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def exists(self, entity_id: EntityId) -> bool:
        pass
