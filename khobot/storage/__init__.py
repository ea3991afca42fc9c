"""
Persistence for khobot.

SQLiteStore holds conversations, usage counters and feedback.
SQLiteCatalog is the read-only mirror of inventory, products and movement logs.
"""
from khobot.storage.catalog import Catalog, SQLiteCatalog
from khobot.storage.sqlite_store import SQLiteStore

__all__ = ["Catalog", "SQLiteCatalog", "SQLiteStore"]
