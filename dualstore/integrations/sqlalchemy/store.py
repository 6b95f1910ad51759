"""Generic relational persistence helper, composed into every repository."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import ColumnElement, Table, func, select
from sqlalchemy.engine import Connection, Engine, RowMapping

from dualstore.domain import Entity
from dualstore.errors import ConflictError, NotFoundError
from dualstore.repositories.base import PreparedWrite, prepare_write

from .errors import translate_errors

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class SqlEntityStore(Generic[E]):
    """Row-level operations for one entity table.

    Each call runs in its own transaction unless a ``connection`` is passed,
    in which case it joins the caller's transaction (this is how the
    transaction runner groups a batch).

    Updates are conditional on the ``updated_at`` marker the caller read, so
    the relational backend rejects stale writes exactly like the key-value
    one does.
    """

    def __init__(self, engine: Engine, table: Table, entity_type: type[E]):
        self.engine = engine
        self.table = table
        self.entity_type = entity_type
        self.cascades_to: list[tuple[SqlEntityStore[Any], str]] = []

    @property
    def name(self) -> str:
        return self.table.name

    @contextmanager
    def _connect(self, operation: str, connection: Connection | None) -> Iterator[Connection]:
        with translate_errors(operation, self.name):
            if connection is not None:
                yield connection
            else:
                with self.engine.begin() as conn:
                    yield conn

    def _to_row(self, entity: E) -> dict[str, Any]:
        return {column.name: getattr(entity, column.name) for column in self.table.columns}

    def _to_entity(self, row: RowMapping) -> E:
        return self.entity_type.model_validate(dict(row))

    # ========== Reads ==========

    def get(self, entity_id: UUID, connection: Connection | None = None) -> E | None:
        with self._connect("get", connection) as conn:
            row = conn.execute(
                select(self.table).where(self.table.c.id == entity_id)
            ).mappings().first()
        return None if row is None else self._to_entity(row)

    def require(self, entity_id: UUID) -> E:
        """Like ``get``, but an absent row raises ``NotFoundError``."""
        if (found := self.get(entity_id)) is None:
            raise NotFoundError.for_id(self.entity_type, entity_id)
        return found

    def exists(self, entity_id: UUID) -> bool:
        query = select(self.table.c.id).where(self.table.c.id == entity_id)
        with self._connect("exists", None) as conn:
            return conn.execute(query).first() is not None

    def select(
        self,
        *criteria: ColumnElement[bool],
        order_by: list[ColumnElement[Any]] | None = None,
        limit: int | None = None,
        connection: Connection | None = None,
    ) -> list[E]:
        """Rows matching every criterion, as entities."""
        query = select(self.table).where(*criteria)
        if order_by:
            query = query.order_by(*order_by)
        if limit is not None:
            query = query.limit(limit)
        with self._connect("select", connection) as conn:
            rows = conn.execute(query).mappings().all()
        return [self._to_entity(row) for row in rows]

    def count(self, *criteria: ColumnElement[bool], connection: Connection | None = None) -> int:
        query = select(func.count()).select_from(self.table).where(*criteria)
        with self._connect("count", connection) as conn:
            return conn.execute(query).scalar_one()

    # ========== Writes ==========

    def save(self, entity: E) -> E:
        """Stamp and write ``entity``; foreign keys check its relationships."""
        prepared = prepare_write(entity)
        saved = self.put(prepared)
        LOGGER.debug(
            "Saved entity",
            extra={
                "table": self.name,
                "entity_id": str(prepared.entity_id),
                "created": prepared.is_create,
            },
        )
        return saved

    def put(self, prepared: PreparedWrite[E], connection: Connection | None = None) -> E:
        """Insert or conditionally update a stamped entity.

        Raises:
            ConflictError: If the row already exists (creation), or its
                marker changed or it was removed (update).
        """
        row = self._to_row(prepared.entity)
        with self._connect("put", connection) as conn:
            if prepared.is_create:
                conn.execute(self.table.insert().values(**row))
            else:
                result = conn.execute(
                    self.table.update()
                    .where(
                        self.table.c.id == prepared.entity_id,
                        self.table.c.updated_at == prepared.expected_marker,
                    )
                    .values(**row)
                )
                if result.rowcount == 0:
                    LOGGER.info(
                        "Stale write rejected",
                        extra={"table": self.name, "entity_id": str(prepared.entity_id)},
                    )
                    raise ConflictError(
                        f"{self.name}: {prepared.entity_id} was modified or removed concurrently"
                    )
        return prepared.entity

    def delete(
        self,
        entity_id: UUID,
        expected_marker: datetime | None = None,
        connection: Connection | None = None,
    ) -> bool:
        """Delete the row, optionally asserting its marker.

        Returns:
            True if a row was removed.
        """
        query = self.table.delete().where(self.table.c.id == entity_id)
        if expected_marker is not None:
            query = query.where(self.table.c.updated_at == expected_marker)
        with self._connect("delete", connection) as conn:
            return conn.execute(query).rowcount == 1

    def remove(self, entity_id: UUID, *, must_exist: bool = False) -> None:
        """Delete the row; the engine removes or protects its children.

        Raises:
            NotFoundError: If ``must_exist`` is set and no row exists.
            ValidationFailure: If a restricting child still references it.
        """
        if not self.delete(entity_id):
            if must_exist:
                raise NotFoundError.for_id(self.entity_type, entity_id)
            return
        LOGGER.debug("Deleted entity", extra={"table": self.name, "entity_id": str(entity_id)})

    def count_cascaded(self, entity_id: UUID, connection: Connection | None = None) -> int:
        """Rows the engine will delete together with ``entity_id``."""
        return sum(
            child.count(child.table.c[column] == entity_id, connection=connection)
            for child, column in self.cascades_to
        )
