"""Relational backend configuration using pydantic-settings."""

from pydantic import Field
from pydantic_settings import BaseSettings
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dualstore.errors import ConfigurationError


class SqlConfiguration(BaseSettings):
    """Connection settings for the relational backend.

    All settings can be configured via environment variables with the
    DUALSTORE_SQL_ prefix. For example:
    - DUALSTORE_SQL_URL=postgresql+psycopg://db.internal:5432/idp
    - DUALSTORE_SQL_USERNAME=idp
    - DUALSTORE_SQL_PASSWORD=...

    Credentials are kept apart from the URL so that the URL can be logged.

    Attributes:
        url: SQLAlchemy database URL. Required.
        username: Database user. Required unless the URL is SQLite.
        password: Database password. Required unless the URL is SQLite.
        pool_size: Connections kept in the process-wide pool.
        pool_timeout_seconds: How long to wait for a pooled connection.
        connect_timeout_seconds: TCP connect timeout (busy timeout on SQLite).
        statement_timeout_seconds: Longest a single statement may run on a server
            database, lock waits included. A statement cut off by it surfaces
            as ``UnavailableError``.
        max_transaction_items: Largest batch the transaction runner accepts.
        echo: Log every SQL statement.
    """

    url: str | None = None
    username: str | None = None
    password: str | None = None

    pool_size: int = Field(default=5, ge=1)
    pool_timeout_seconds: float = Field(default=10.0, gt=0)
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    statement_timeout_seconds: float = Field(default=30.0, gt=0)
    max_transaction_items: int = Field(default=25, ge=1, le=100)
    echo: bool = False

    model_config = {"env_prefix": "DUALSTORE_SQL_"}

    def parsed_url(self) -> URL:
        if not self.url:
            raise ConfigurationError("No database URL configured", missing=["DUALSTORE_SQL_URL"])
        try:
            return make_url(self.url)
        except ArgumentError as err:
            raise ConfigurationError(f"Malformed database URL: {err}") from err

    @property
    def is_sqlite(self) -> bool:
        return bool(self.url) and self.parsed_url().get_backend_name() == "sqlite"

    def missing_settings(self) -> list[str]:
        """Names of the required settings that are absent."""
        if not self.url:
            return ["DUALSTORE_SQL_URL"]
        if self.is_sqlite:
            return []
        missing = []
        if not self.username:
            missing.append("DUALSTORE_SQL_USERNAME")
        if not self.password:
            missing.append("DUALSTORE_SQL_PASSWORD")
        return missing

    def connection_url(self) -> URL:
        """The URL with credentials applied."""
        url = self.parsed_url()
        if self.username:
            url = url.set(username=self.username)
        if self.password:
            url = url.set(password=self.password)
        return url

    def masked_url(self) -> str:
        """The URL with any password hidden, for logging."""
        return self.connection_url().render_as_string(hide_password=True)
