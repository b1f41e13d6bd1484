"""Storage backends."""

from groupchat.config import settings
from groupchat.db.memory import MemoryDatabase
from groupchat.db.postgres import Database

Store = Database | MemoryDatabase


def create_database() -> Store:
    """Build the store selected by STORAGE_BACKEND."""
    if settings.storage_backend == "memory":
        return MemoryDatabase()
    return Database()


# Global database instance
db = create_database()

__all__ = ["Database", "MemoryDatabase", "Store", "create_database", "db"]
