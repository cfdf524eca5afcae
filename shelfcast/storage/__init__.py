"""Storage layer for the recommendation engine"""

from .cache import CacheManager
from .catalog import BaseCatalog, InMemoryCatalog
from .store import BaseStore, EntityType, InMemoryStore

__all__ = ["CacheManager", "BaseCatalog", "InMemoryCatalog", "BaseStore", "EntityType", "InMemoryStore"]
