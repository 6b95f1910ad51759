"""MongoDB configuration using pydantic-settings."""

import re
from functools import cached_property
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings
from pymongo import MongoClient
from pymongo.database import Database

DEFAULT_ENDPOINT = "mongodb://localhost:27017"

_CREDENTIALS = re.compile(r"(://[^:/@]+:)[^@]*@")


class MongoConfiguration(BaseSettings):
    """Configuration and client factory for the key-value backend.

    All settings can be configured via environment variables with the
    DUALSTORE_MONGO_ prefix. For example:
    - DUALSTORE_MONGO_DATABASE=idp
    - DUALSTORE_MONGO_ENDPOINT=mongodb://mongo.internal:27017

    Every network call is bounded by the timeouts below; a call that runs
    out of time surfaces as ``UnavailableError``.

    Attributes:
        database: Namespace holding one collection per entity type. Required.
        endpoint: Connection URI override. Defaults to a local server.
        max_pool_size: Upper bound on pooled connections.
        min_pool_size: Connections kept open while idle.
        server_selection_timeout_ms: How long to wait for a usable server.
        connect_timeout_ms: TCP connect timeout.
        socket_timeout_ms: Per-operation socket read/write timeout.
        max_transaction_items: Largest batch the transaction coordinator accepts.

    Example:
        >>> config = MongoConfiguration(database="idp")
        >>> teams = config.db["teams"]
        >>> config.close()
    """

    database: str | None = None
    endpoint: str | None = None

    max_pool_size: int = Field(default=100, ge=1)
    min_pool_size: int = Field(default=0, ge=0)
    server_selection_timeout_ms: int = Field(default=5000, ge=1)
    connect_timeout_ms: int = Field(default=5000, ge=1)
    socket_timeout_ms: int = Field(default=10000, ge=1)

    max_transaction_items: int = Field(default=25, ge=1, le=100)

    model_config = {"env_prefix": "DUALSTORE_MONGO_"}

    def masked_endpoint(self) -> str:
        """The endpoint with any password hidden, for logging."""
        return _CREDENTIALS.sub(r"\1***@", self.endpoint or DEFAULT_ENDPOINT)

    def missing_settings(self) -> list[str]:
        """Names of the required settings that are absent."""
        missing = []
        if not self.database:
            missing.append("DUALSTORE_MONGO_DATABASE")
        return missing

    @cached_property
    def client(self) -> MongoClient[dict[str, Any]]:
        """Get the MongoDB client.

        The client is lazily created and cached; it owns the connection pool
        shared by every repository in the process.
        """
        return MongoClient(
            self.endpoint or DEFAULT_ENDPOINT,
            maxPoolSize=self.max_pool_size,
            minPoolSize=self.min_pool_size,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            connectTimeoutMS=self.connect_timeout_ms,
            socketTimeoutMS=self.socket_timeout_ms,
            tz_aware=True,
        )

    @cached_property
    def db(self) -> Database[dict[str, Any]]:
        """Get the configured database."""
        if not self.database:
            raise ValueError("MongoConfiguration.database is not set")
        return self.client[self.database]

    def close(self) -> None:
        """Close the client if it was created."""
        if "client" in self.__dict__:
            self.client.close()
