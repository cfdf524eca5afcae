"""
Catalog Lookup

Read-only view of the item registry. The registry itself lives outside the
recommendation core; ``InMemoryCatalog`` is the in-process implementation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..core.models import Item


class BaseCatalog(ABC):
    """Abstract catalog lookup"""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[Item]:
        pass

    async def get_items(self, item_ids: Iterable[str]) -> Dict[str, Item]:
        """
        Fetch several items at once

        Args:
            item_ids: Item identifiers; unknown ids are skipped

        Returns:
            Mapping of item id to item
        """
        items = {}
        for item_id in item_ids:
            if item_id in items:
                continue
            item = await self.get_item(item_id)
            if item is not None:
                items[item_id] = item
        return items

    @abstractmethod
    async def query_items(
        self,
        category: Optional[str] = None,
        created_after: Optional[float] = None,
        min_rating: Optional[float] = None,
        exclude_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> List[Item]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryCatalog(BaseCatalog):
    """Dictionary-backed catalog"""

    def __init__(self, items: Optional[Iterable[Item]] = None):
        self.items: Dict[str, Item] = {}
        self.logger = logging.getLogger(__name__)

        if items:
            self.add_items(items)

    def add_item(self, item: Item):
        self.items[item.id] = item

    def add_items(self, items: Iterable[Item]):
        count = 0
        for item in items:
            self.add_item(item)
            count += 1
        self.logger.debug(f"Added {count} items to catalog")

    async def get_item(self, item_id: str) -> Optional[Item]:
        return self.items.get(item_id)

    async def query_items(
        self,
        category: Optional[str] = None,
        created_after: Optional[float] = None,
        min_rating: Optional[float] = None,
        exclude_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> List[Item]:
        excluded = set(exclude_ids or ())
        results = []

        for item in self.items.values():
            if item.id in excluded:
                continue
            if category is not None and item.category != category:
                continue
            if created_after is not None and item.created_at < created_after:
                continue
            if min_rating is not None and (item.rating is None or item.rating < min_rating):
                continue

            results.append(item)
            if limit is not None and len(results) >= limit:
                break

        return results

    async def count(self) -> int:
        return len(self.items)
