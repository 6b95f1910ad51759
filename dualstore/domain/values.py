"""The closed set of value shapes allowed in entity configuration."""

from typing import TypeAlias

from pydantic import JsonValue

ConfigValue: TypeAlias = JsonValue
"""``str | int | float | bool | None | list[ConfigValue] | dict[str, ConfigValue]``.

Pydantic validates the full recursive shape, so anything outside the closed
set (sets, bytes, arbitrary objects) is rejected when an entity is built.
"""

ConfigMap: TypeAlias = dict[str, ConfigValue]
