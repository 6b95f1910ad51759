from .entities import (
    ApiKey,
    ApiKeyType,
    Category,
    CloudProvider,
    Entity,
    Stack,
    StackResource,
    StackType,
    Team,
    utc_now,
)
from .values import ConfigMap, ConfigValue

__all__ = [
    "ApiKey",
    "ApiKeyType",
    "Category",
    "CloudProvider",
    "ConfigMap",
    "ConfigValue",
    "Entity",
    "Stack",
    "StackResource",
    "StackType",
    "Team",
    "utc_now",
]
