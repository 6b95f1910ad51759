"""Conversion between typed entities and key-value items.

An item is the document stored for one entity: top-level scalars are kept
native so that secondary indexes can use them, identifiers and timestamps
are stored in a canonical string form, and the open-ended configuration is
converted recursively into typed attribute values::

    {"S": "text"}            string
    {"N": "42"}              number, kept as decimal text (lossless)
    {"BOOL": True}           boolean
    {"NULL": True}           null
    {"L": [<attr>, ...]}     list
    {"M": {"key": <attr>}}   map

Relationships are never embedded: a ``team_id`` stays a bare identifier and
resolving it is the caller's job.
"""

import re
from datetime import datetime
from enum import Enum
from types import NoneType, UnionType
from typing import Any, Generic, TypeVar, Union, get_args, get_origin
from uuid import UUID

from dualstore.domain import ConfigValue, Entity
from dualstore.errors import PersistenceError, ValidationFailure
from dualstore.repositories.base import as_utc

E = TypeVar("E", bound=Entity)

PARTITION_KEY = "_id"

_INTEGER = re.compile(r"-?\d+")


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with fixed microsecond precision.

    The fixed width makes stored markers byte-comparable and sortable.

    Example:
        >>> format_timestamp(datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc))
        '2026-10-18T09:30:00.000000+00:00'
    """
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def to_attribute_value(value: ConfigValue) -> dict[str, Any]:
    """Convert one configuration value into its typed attribute form.

    Raises:
        ValidationFailure: If the value (or anything nested in it) is outside
            the supported shapes, or a map key cannot be stored.
    """
    # bool must be tested before int: True is an int in Python.
    if value is None:
        return {"NULL": True}
    if isinstance(value, bool):
        return {"BOOL": value}
    if isinstance(value, int):
        return {"N": str(value)}
    if isinstance(value, float):
        return {"N": repr(value)}
    if isinstance(value, str):
        return {"S": value}
    if isinstance(value, (list, tuple)):
        return {"L": [to_attribute_value(v) for v in value]}
    if isinstance(value, dict):
        converted: dict[str, Any] = {}
        for key, nested in value.items():
            if not isinstance(key, str) or key.startswith("$") or "\x00" in key:
                raise ValidationFailure(f"Unsupported configuration key: {key!r}")
            converted[key] = to_attribute_value(nested)
        return {"M": converted}
    raise ValidationFailure(f"Unsupported configuration value type: {type(value).__name__}")


def from_attribute_value(attribute: Any) -> ConfigValue:
    """Convert a typed attribute back into a plain configuration value.

    Raises:
        PersistenceError: If the stored attribute is not one of the known tags.
    """
    if not isinstance(attribute, dict) or len(attribute) != 1:
        raise PersistenceError(f"Malformed attribute value: {attribute!r}")

    ((tag, payload),) = attribute.items()
    if tag == "NULL":
        return None
    if tag == "BOOL":
        return bool(payload)
    if tag == "N":
        return int(payload) if _INTEGER.fullmatch(payload) else float(payload)
    if tag == "S":
        return str(payload)
    if tag == "L":
        return [from_attribute_value(v) for v in payload]
    if tag == "M":
        return {key: from_attribute_value(v) for key, v in payload.items()}
    raise PersistenceError(f"Unknown attribute tag: {tag!r}")


class FieldKind(Enum):
    SCALAR = "scalar"
    IDENTIFIER = "identifier"
    TIMESTAMP = "timestamp"
    ENUM = "enum"
    CONFIGURATION = "configuration"


def _field_kind(name: str, annotation: Any) -> FieldKind:
    if get_origin(annotation) in (Union, UnionType):
        args = [a for a in get_args(annotation) if a is not NoneType]
        if len(args) != 1:
            raise TypeError(f"Field {name!r} has unsupported union type {annotation}")
        annotation = args[0]

    if get_origin(annotation) is dict:
        return FieldKind.CONFIGURATION
    if annotation is UUID:
        return FieldKind.IDENTIFIER
    if annotation is datetime:
        return FieldKind.TIMESTAMP
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return FieldKind.ENUM
    if annotation in (str, bool, int, float):
        return FieldKind.SCALAR
    raise TypeError(f"Field {name!r} has unsupported type {annotation}")


def _encode(kind: FieldKind, value: Any) -> Any:
    if kind is FieldKind.CONFIGURATION:
        return to_attribute_value(value)
    if value is None or kind is FieldKind.SCALAR:
        return value
    if kind is FieldKind.IDENTIFIER:
        return str(value)
    if kind is FieldKind.TIMESTAMP:
        return format_timestamp(value)
    return value.value


def _decode(kind: FieldKind, value: Any) -> Any:
    if kind is FieldKind.CONFIGURATION:
        return from_attribute_value(value)
    if value is None or kind in (FieldKind.SCALAR, FieldKind.ENUM):
        return value
    if kind is FieldKind.IDENTIFIER:
        return UUID(value)
    return parse_timestamp(value)


class EntityItemMapper(Generic[E]):
    """Bidirectional, lossless mapping between an entity type and its items.

    Field kinds are derived once from the pydantic model, so an entity with
    a field the mapper cannot represent fails at construction rather than on
    first write.

    Examples:
        >>> mapper = EntityItemMapper(Team)
        >>> item = mapper.to_item(team)
        >>> item["_id"]
        '0b9d6c1e-7f0a-4c55-9a51-0d3c2f1e8a77'
        >>> mapper.from_item(item) == team
        True
    """

    def __init__(self, entity_type: type[E]):
        self.entity_type = entity_type
        self._kinds = {
            name: _field_kind(name, info.annotation)
            for name, info in entity_type.model_fields.items()
        }

    @staticmethod
    def attribute_name(field: str) -> str:
        return PARTITION_KEY if field == "id" else field

    def field_kind(self, field: str) -> FieldKind:
        return self._kinds[field]

    def encode_field(self, field: str, value: Any) -> Any:
        """Encode one field value the way it is stored (used for index queries)."""
        return _encode(self._kinds[field], value)

    def to_item(self, entity: E) -> dict[str, Any]:
        return {
            self.attribute_name(name): _encode(kind, getattr(entity, name))
            for name, kind in self._kinds.items()
        }

    def from_item(self, item: dict[str, Any]) -> E:
        data = {
            name: _decode(kind, item[self.attribute_name(name)])
            for name, kind in self._kinds.items()
            if self.attribute_name(name) in item
        }
        return self.entity_type.model_validate(data)
