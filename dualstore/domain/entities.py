from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from .values import ConfigMap


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class Entity(BaseModel):
    """Fields shared by every persisted domain object.

    Entities are plain data: they carry no persistence behaviour. The
    repositories assign ``id`` on first save and maintain both timestamps;
    ``updated_at`` doubles as the optimistic concurrency marker, so an entity
    read from a repository can be modified and saved back, while a stale copy
    is rejected with ``ConflictError``.

    Attributes:
        id: Globally unique identifier. ``None`` until the first save.
        configuration: Open-ended nested settings. Values are restricted to
            strings, numbers, booleans, null, lists and string-keyed maps.
        created_at: When the record was first saved (UTC).
        updated_at: When the record was last written (UTC).
    """

    id: UUID | None = None
    configuration: ConfigMap = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Team(Entity):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    is_active: bool = True


class CloudProvider(Entity):
    name: str = Field(min_length=1, max_length=100)
    display_name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    enabled: bool = True


class Category(Entity):
    name: str = Field(min_length=1, max_length=100)
    is_active: bool = True


class StackType(str, Enum):
    RESTFUL_SERVERLESS = "RESTFUL_SERVERLESS"
    RESTFUL_API = "RESTFUL_API"
    JAVASCRIPT_WEB_APPLICATION = "JAVASCRIPT_WEB_APPLICATION"
    EVENT_DRIVEN_SERVERLESS = "EVENT_DRIVEN_SERVERLESS"
    EVENT_DRIVEN_API = "EVENT_DRIVEN_API"
    INFRASTRUCTURE = "INFRASTRUCTURE"


class Stack(Entity):
    """A deployable unit owned by a user and optionally grouped under a team.

    Relationships are held as bare identifiers. Resolving them is the
    caller's job, through the matching repository's ``find_by_id``.
    """

    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    cloud_name: str = Field(min_length=1, max_length=60)
    stack_type: StackType
    created_by: str = Field(min_length=1, max_length=100)
    is_public: bool = False
    ephemeral_prefix: str | None = None
    team_id: UUID | None = None
    category_id: UUID | None = None
    cloud_provider_id: UUID | None = None


class StackResource(Entity):
    stack_id: UUID
    name: str = Field(min_length=1, max_length=100)
    resource_type: str = Field(min_length=1, max_length=100)
    description: str | None = None


class ApiKeyType(str, Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


class ApiKey(Entity):
    """A credential for programmatic access.

    Only a hash of the key is persisted; ``key_hash`` is unique across all
    keys and is how a presented key is looked up. ``key_prefix`` identifies
    the key in logs. A USER key belongs to ``user_email``; a SYSTEM key
    belongs to the organisation and has no user.
    """

    key_name: str = Field(min_length=1, max_length=100)
    key_hash: str = Field(min_length=1, max_length=255)
    key_prefix: str = Field(min_length=1, max_length=20)
    key_type: ApiKeyType
    user_email: str | None = Field(default=None, max_length=255)
    created_by_email: str = Field(min_length=1, max_length=255)
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by_email: str | None = Field(default=None, max_length=255)
    is_active: bool = True

    @model_validator(mode="after")
    def check_owner(self) -> "ApiKey":
        if self.key_type is ApiKeyType.USER and not self.user_email:
            raise ValueError("USER keys require user_email")
        if self.key_type is ApiKeyType.SYSTEM and self.user_email:
            raise ValueError("SYSTEM keys must not have a user_email")
        return self
