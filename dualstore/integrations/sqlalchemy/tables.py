"""SQLAlchemy Core tables mirroring the migration scripts.

The migrations own the schema; these definitions only describe it for
query building and must be kept in step with ``migrations/*.sql``.
"""

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

from dualstore.domain import (
    ApiKey,
    ApiKeyType,
    Category,
    CloudProvider,
    Entity,
    Stack,
    StackResource,
    StackType,
    Team,
)
from dualstore.repositories.base import as_utc


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every engine.

    SQLite has no timezone support, so values are stored there as naive UTC
    and made aware again on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        return None if value is None else as_utc(value)


class UuidString(TypeDecorator):
    """UUIDs stored in their canonical 36-character text form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value: UUID | str | None, dialect: Dialect) -> str | None:
        return None if value is None else str(UUID(str(value)))

    def process_result_value(self, value: str | None, dialect: Dialect) -> UUID | None:
        return None if value is None else UUID(value)


class JsonText(TypeDecorator):
    """Configuration maps serialized as JSON text.

    Python's json module keeps integers of any size and round-trips floats
    exactly, so nothing is lost.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> str | None:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def process_result_value(self, value: str | None, dialect: Dialect) -> Any:
        return None if value is None else json.loads(value)


metadata = MetaData()


def _entity_columns() -> list[Column]:
    return [
        Column("id", UuidString, primary_key=True),
        Column("configuration", JsonText, nullable=False),
        Column("created_at", UtcDateTime, nullable=False),
        Column("updated_at", UtcDateTime, nullable=False),
    ]


teams = Table(
    "teams",
    metadata,
    *_entity_columns(),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("is_active", Boolean, nullable=False),
)

cloud_providers = Table(
    "cloud_providers",
    metadata,
    *_entity_columns(),
    Column("name", String(100), nullable=False),
    Column("display_name", String(200), nullable=False),
    Column("description", Text),
    Column("enabled", Boolean, nullable=False),
)

categories = Table(
    "categories",
    metadata,
    *_entity_columns(),
    Column("name", String(100), nullable=False),
    Column("is_active", Boolean, nullable=False),
)

stacks = Table(
    "stacks",
    metadata,
    *_entity_columns(),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("cloud_name", String(60), nullable=False),
    Column(
        "stack_type",
        Enum(
            StackType,
            native_enum=False,
            length=50,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    ),
    Column("created_by", String(100), nullable=False),
    Column("is_public", Boolean, nullable=False),
    Column("ephemeral_prefix", String(100)),
    Column("team_id", UuidString, ForeignKey("teams.id", ondelete="RESTRICT")),
    Column("category_id", UuidString, ForeignKey("categories.id", ondelete="RESTRICT")),
    Column(
        "cloud_provider_id",
        UuidString,
        ForeignKey("cloud_providers.id", ondelete="RESTRICT"),
    ),
)

stack_resources = Table(
    "stack_resources",
    metadata,
    *_entity_columns(),
    Column(
        "stack_id",
        UuidString,
        ForeignKey("stacks.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(100), nullable=False),
    Column("resource_type", String(100), nullable=False),
    Column("description", Text),
)

api_keys = Table(
    "api_keys",
    metadata,
    *_entity_columns(),
    Column("key_name", String(100), nullable=False),
    Column("key_hash", String(255), nullable=False),
    Column("key_prefix", String(20), nullable=False),
    Column(
        "key_type",
        Enum(
            ApiKeyType,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    ),
    Column("user_email", String(255)),
    Column("created_by_email", String(255), nullable=False),
    Column("expires_at", UtcDateTime),
    Column("last_used_at", UtcDateTime),
    Column("revoked_at", UtcDateTime),
    Column("revoked_by_email", String(255)),
    Column("is_active", Boolean, nullable=False),
    UniqueConstraint("key_hash", name="uq_api_keys_key_hash"),
)

schema_version = Table(
    "schema_version",
    MetaData(),
    Column("version", Integer, primary_key=True, autoincrement=False),
    Column("description", String(200), nullable=False),
    Column("checksum", String(64), nullable=False),
    Column("applied_at", UtcDateTime, nullable=False),
)

TABLES: dict[type[Entity], Table] = {
    Team: teams,
    CloudProvider: cloud_providers,
    Category: categories,
    Stack: stacks,
    StackResource: stack_resources,
    ApiKey: api_keys,
}
