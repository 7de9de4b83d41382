"""Local persistence for learned templates, usage counters and config."""

from .adapters import InMemoryAdapter, JsonFileAdapter, KeyValueAdapter
from .envelope import SCHEMA_VERSION, UnsupportedSchemaError

__all__ = [
    "InMemoryAdapter",
    "JsonFileAdapter",
    "KeyValueAdapter",
    "SCHEMA_VERSION",
    "UnsupportedSchemaError",
]
