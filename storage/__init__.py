"""Storage module for encrypted objects."""

from .db import Database, from_iso, to_iso, utcnow
from .file_manager import ObjectStore
from .models import StoredObject, format_size

__all__ = [
    "Database",
    "ObjectStore",
    "StoredObject",
    "format_size",
    "from_iso",
    "to_iso",
    "utcnow",
]
