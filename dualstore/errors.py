"""Exceptions raised by the persistence layer.

Every backend-native failure is translated into one of these types before it
leaves a store, so callers never see a ``pymongo`` or ``sqlalchemy`` error.
"""


class PersistenceError(Exception):
    """Base class for every error raised by dualstore."""

    retryable: bool = False


class NotFoundError(PersistenceError):
    """Raised when a record the caller asserted must exist is absent."""

    @classmethod
    def for_id(cls, entity_type: type, entity_id: object) -> "NotFoundError":
        return cls(f"{entity_type.__name__} {entity_id} not found")


class ValidationFailure(PersistenceError):
    """Raised for malformed identifiers, missing fields or dangling references."""


class ConflictError(PersistenceError):
    """Raised when an optimistic concurrency check fails.

    This exception indicates that another writer has modified (or created)
    the record between when it was read and when the write was attempted.
    Callers should re-read the record and retry.
    """


class UnavailableError(PersistenceError):
    """Raised when the backing store cannot be reached in time.

    Unlike ``ConflictError``, this should be retried with backoff.
    """

    retryable = True


class ConfigurationError(PersistenceError):
    """Raised at startup when the persistence configuration is unusable.

    Attributes:
        missing: Every setting that was required but absent.
    """

    def __init__(self, message: str, missing: list[str] | None = None):
        self.missing = list(missing or [])
        if self.missing:
            message = f"{message}: {', '.join(self.missing)}"
        super().__init__(message)
