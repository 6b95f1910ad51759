"""Translation of PyMongo failures into dualstore errors."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from bson.errors import InvalidDocument
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from dualstore.errors import (
    ConflictError,
    PersistenceError,
    UnavailableError,
    ValidationFailure,
)

LOGGER = logging.getLogger(__name__)

_UNAVAILABLE = (
    ServerSelectionTimeoutError,
    NetworkTimeout,
    ExecutionTimeout,
    WTimeoutError,
    AutoReconnect,
    ConnectionFailure,
)


@contextmanager
def translate_errors(operation: str, collection: str) -> Iterator[None]:
    """Re-raise PyMongo exceptions raised inside the block as dualstore errors.

    Args:
        operation: Short name of the operation, for logging.
        collection: Collection the operation targets, for logging.

    Examples:
        >>> with translate_errors("get", "teams"):
        ...     doc = collection.find_one({"_id": key})
    """
    extra = {"operation": operation, "collection": collection}
    try:
        yield
    except DuplicateKeyError as err:
        LOGGER.info("Conditional write rejected: key exists", extra=extra)
        raise ConflictError(f"{collection}: record already exists") from err
    except _UNAVAILABLE as err:
        LOGGER.warning("Key-value backend unavailable", extra=extra)
        raise UnavailableError(f"{collection}: {operation} failed: {err}") from err
    except InvalidDocument as err:
        raise ValidationFailure(f"{collection}: item cannot be stored: {err}") from err
    except PyMongoError as err:
        LOGGER.error("Key-value operation failed", extra=extra, exc_info=True)
        raise PersistenceError(f"{collection}: {operation} failed: {err}") from err
