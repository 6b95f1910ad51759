"""Startup selection of the persistence backend.

The backend is chosen once per process from ``DUALSTORE_DATABASE_PROVIDER``
and never changes afterwards. Every setting the chosen backend needs is
checked up front, so a misconfigured deployment fails at startup with the
complete list of what is missing rather than on its first request.

Example:
    >>> repositories = build_repositories()
    >>> repositories.provider
    'relational'
    >>> team = repositories.teams.save(Team(name="platform"))
    >>> repositories.close()
"""

import logging
from enum import Enum

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigurationError, PersistenceError
from .integrations.mongodb import MongoConfiguration
from .integrations.mongodb import create_repositories as create_key_value_repositories
from .integrations.sqlalchemy import SqlConfiguration, create_engine_from_config
from .integrations.sqlalchemy import create_repositories as create_relational_repositories
from .repositories import RepositorySet

LOGGER = logging.getLogger(__name__)

PROVIDER_SETTING = "DUALSTORE_DATABASE_PROVIDER"


class DatabaseProvider(str, Enum):
    RELATIONAL = "relational"
    KEY_VALUE = "key-value"


_ALIASES = {
    "postgresql": DatabaseProvider.RELATIONAL.value,
    "postgres": DatabaseProvider.RELATIONAL.value,
    "sql": DatabaseProvider.RELATIONAL.value,
    "dynamodb": DatabaseProvider.KEY_VALUE.value,
    "mongodb": DatabaseProvider.KEY_VALUE.value,
    "key_value": DatabaseProvider.KEY_VALUE.value,
    "keyvalue": DatabaseProvider.KEY_VALUE.value,
}


class PersistenceSettings(BaseSettings):
    """Top-level persistence settings.

    Read from environment variables with the DUALSTORE_ prefix. The nested
    backend settings read their own prefixes (DUALSTORE_SQL_ and
    DUALSTORE_MONGO_); only the selected backend's settings are required.

    Attributes:
        database_provider: ``relational`` or ``key-value``. Common product
            names (``postgresql``, ``mongodb``, ``dynamodb``) are accepted.
        degraded_after_seconds: Health check latency reported as degraded.
        sql: Relational backend settings.
        mongo: Key-value backend settings.
    """

    database_provider: str | None = None
    degraded_after_seconds: float = Field(default=1.0, gt=0)
    sql: SqlConfiguration = Field(default_factory=SqlConfiguration)
    mongo: MongoConfiguration = Field(default_factory=MongoConfiguration)

    model_config = {"env_prefix": "DUALSTORE_"}

    @field_validator("database_provider", mode="before")
    @classmethod
    def normalise_provider(cls, value: object) -> object:
        if isinstance(value, str):
            key = value.strip().lower()
            return _ALIASES.get(key, key) or None
        return value


def load_settings() -> PersistenceSettings:
    """Read settings from the environment.

    Raises:
        ConfigurationError: If a setting is present but invalid.
    """
    try:
        return PersistenceSettings()
    except ValidationError as err:
        invalid = [".".join(str(part) for part in error["loc"]) for error in err.errors()]
        LOGGER.error("Invalid persistence settings", extra={"invalid": invalid})
        raise ConfigurationError("Invalid persistence settings", missing=invalid) from err


def validate_settings(settings: PersistenceSettings) -> DatabaseProvider:
    """Check that the selected backend has everything it needs.

    Returns:
        The selected provider.

    Raises:
        ConfigurationError: Listing every missing setting at once.
    """
    if settings.database_provider is None:
        missing = [PROVIDER_SETTING]
        LOGGER.error("Persistence settings missing", extra={"missing": missing})
        raise ConfigurationError("No persistence provider selected", missing=missing)

    try:
        provider = DatabaseProvider(settings.database_provider)
    except ValueError:
        LOGGER.error(
            "Unknown persistence provider",
            extra={"provider": settings.database_provider},
        )
        raise ConfigurationError(
            f"Unknown persistence provider {settings.database_provider!r}; "
            f"expected one of {[p.value for p in DatabaseProvider]}"
        ) from None

    if provider is DatabaseProvider.RELATIONAL:
        missing = settings.sql.missing_settings()
    else:
        missing = settings.mongo.missing_settings()

    if missing:
        LOGGER.error(
            "Persistence settings missing",
            extra={"provider": provider.value, "missing": missing},
        )
        raise ConfigurationError(f"Incomplete settings for the {provider.value} backend", missing)
    return provider


def build_repositories(settings: PersistenceSettings | None = None) -> RepositorySet:
    """Select, connect and initialize the configured backend.

    Call once at process startup and pass the result to business code.

    Raises:
        ConfigurationError: If the settings are incomplete or the schema
            history does not match the shipped migrations.
        UnavailableError: If the backend cannot be reached during startup.
    """
    settings = settings if settings is not None else load_settings()
    provider = validate_settings(settings)

    if provider is DatabaseProvider.RELATIONAL:
        LOGGER.info(
            "Selected persistence provider",
            extra={"provider": provider.value, "url": settings.sql.masked_url()},
        )
        engine = create_engine_from_config(settings.sql)
        try:
            return create_relational_repositories(
                engine,
                max_transaction_items=settings.sql.max_transaction_items,
                degraded_after_seconds=settings.degraded_after_seconds,
            )
        except PersistenceError:
            engine.dispose()
            raise

    mongo = settings.mongo
    LOGGER.info(
        "Selected persistence provider",
        extra={
            "provider": provider.value,
            "endpoint": mongo.masked_endpoint(),
            "database": mongo.database,
        },
    )
    try:
        return create_key_value_repositories(
            mongo.db,
            max_transaction_items=mongo.max_transaction_items,
            degraded_after_seconds=settings.degraded_after_seconds,
            close=mongo.close,
        )
    except PersistenceError:
        mongo.close()
        raise


__all__ = [
    "DatabaseProvider",
    "PersistenceSettings",
    "build_repositories",
    "create_key_value_repositories",
    "create_relational_repositories",
    "load_settings",
    "validate_settings",
]
