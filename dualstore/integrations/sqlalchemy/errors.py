"""Translation of SQLAlchemy failures into dualstore errors."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from dualstore.errors import (
    ConflictError,
    PersistenceError,
    UnavailableError,
    ValidationFailure,
)

LOGGER = logging.getLogger(__name__)

# SQLSTATE for unique_violation.
_UNIQUE_VIOLATION = "23505"


def is_unique_violation(err: IntegrityError) -> bool:
    """Whether an integrity error comes from a primary key or unique constraint."""
    original = err.orig
    code = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if code:
        return code == _UNIQUE_VIOLATION
    message = str(original)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


@contextmanager
def translate_errors(operation: str, table: str) -> Iterator[None]:
    """Re-raise SQLAlchemy exceptions raised inside the block as dualstore errors.

    Examples:
        >>> with translate_errors("insert", "teams"):
        ...     connection.execute(teams.insert().values(**row))
    """
    extra = {"operation": operation, "table": table}
    try:
        yield
    except IntegrityError as err:
        if is_unique_violation(err):
            LOGGER.info("Conditional write rejected: key exists", extra=extra)
            raise ConflictError(f"{table}: record already exists") from err
        raise ValidationFailure(f"{table}: constraint violated: {err.orig}") from err
    except (OperationalError, InterfaceError, PoolTimeoutError) as err:
        LOGGER.warning("Relational backend unavailable", extra=extra)
        raise UnavailableError(f"{table}: {operation} failed: {err}") from err
    except DBAPIError as err:
        if err.connection_invalidated:
            LOGGER.warning("Relational connection lost", extra=extra)
            raise UnavailableError(f"{table}: {operation} failed: {err}") from err
        LOGGER.error("Relational operation failed", extra=extra, exc_info=True)
        raise PersistenceError(f"{table}: {operation} failed: {err}") from err
    except SQLAlchemyError as err:
        LOGGER.error("Relational operation failed", extra=extra, exc_info=True)
        raise PersistenceError(f"{table}: {operation} failed: {err}") from err
