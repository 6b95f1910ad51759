"""Shared builders for test entities."""

from .entities import make_api_key, make_stack

__all__ = ["make_api_key", "make_stack"]
