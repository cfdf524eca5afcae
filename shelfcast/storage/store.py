"""
Persistent Store Interface

Generic record storage used by the ingestion pipeline, the preference
learner and the recommendation engine. Production deployments plug a
relational store in behind ``BaseStore``; ``InMemoryStore`` keeps everything
in process for tests and single-node runs.
"""

import copy
import logging
from abc import ABC, abstractmethod
from collections import Counter, OrderedDict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..core.errors import PersistenceError


class EntityType(Enum):
    """Record collections known to the store"""
    BEHAVIOR = "behaviors"
    PREFERENCE = "preferences"
    RECOMMENDATION = "recommendations"
    FEEDBACK = "feedback"
    ALGORITHM = "algorithms"


FILTER_OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "contains")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _match_operator(op: str, actual: Any, expected: Any) -> bool:
    actual = _plain(actual)

    if op == "eq":
        return actual == _plain(expected)
    if op == "ne":
        return actual != _plain(expected)
    if op == "in":
        return actual in [_plain(v) for v in expected]
    if op == "not_in":
        return actual not in [_plain(v) for v in expected]
    if op == "contains":
        if actual is None:
            return False
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        return _plain(expected) in [_plain(v) for v in actual]

    # Range comparisons never match a missing value
    if actual is None:
        return False
    expected = _plain(expected)
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected

    raise PersistenceError(f"Unknown filter operator: {op}")


def matches(record: Any, filters: Optional[Dict[str, Any]]) -> bool:
    """
    Check a record against a filter mapping

    Args:
        record: Stored record (any object with attributes)
        filters: ``{field: value}`` for equality or
            ``{field: {"gte": v, "lt": w, ...}}`` for operator predicates

    Returns:
        True when every predicate holds
    """
    if not filters:
        return True

    for field_name, condition in filters.items():
        actual = getattr(record, field_name, None)
        if isinstance(condition, dict) and condition and all(k in FILTER_OPERATORS for k in condition):
            for op, expected in condition.items():
                if not _match_operator(op, actual, expected):
                    return False
        elif not _match_operator("eq", actual, condition):
            return False

    return True


class BaseStore(ABC):
    """
    Abstract persistent store

    Every operation raises ``PersistenceError`` on failure.
    """

    @abstractmethod
    async def create(self, entity_type: EntityType, record: Any) -> Any:
        """Insert one record and return it"""
        pass

    @abstractmethod
    async def create_many(self, entity_type: EntityType, records: List[Any]) -> int:
        """Insert records in a single write; returns the number written"""
        pass

    @abstractmethod
    async def get(self, entity_type: EntityType, record_id: str) -> Optional[Any]:
        """Fetch one record by id"""
        pass

    @abstractmethod
    async def update(self, entity_type: EntityType, record_id: str, changes: Dict[str, Any]) -> Optional[Any]:
        """Apply field changes to one record; returns the updated record or None"""
        pass

    @abstractmethod
    async def update_many(
        self,
        entity_type: EntityType,
        filters: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> int:
        """Apply field changes to every matching record"""
        pass

    @abstractmethod
    async def count(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> int:
        pass

    @abstractmethod
    async def find_many(
        self,
        entity_type: EntityType,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Any]:
        pass

    @abstractmethod
    async def delete_many(self, entity_type: EntityType, filters: Dict[str, Any]) -> int:
        pass

    async def ping(self) -> bool:
        """Health check for the store"""
        try:
            await self.count(EntityType.ALGORITHM)
            return True
        except PersistenceError:
            return False


class InMemoryStore(BaseStore):
    """
    Process-local store keeping deep copies of every record

    Callers never share object identity with stored rows, so a record only
    changes through ``update``/``update_many``. ``fail_operations`` makes the
    named operations raise ``PersistenceError`` until ``clear_failures``.
    """

    def __init__(self):
        self.tables: Dict[EntityType, "OrderedDict[str, Any]"] = {
            entity_type: OrderedDict() for entity_type in EntityType
        }
        self.call_counts: Counter = Counter()
        self.failing_operations = set()
        self.logger = logging.getLogger(__name__)

    def fail_operations(self, *operations: str):
        """Make the named operations (e.g. ``"create_many"``) raise"""
        self.failing_operations.update(operations)

    def clear_failures(self):
        self.failing_operations.clear()

    def _enter(self, operation: str, entity_type: EntityType):
        self.call_counts[operation] += 1
        if operation in self.failing_operations:
            raise PersistenceError(f"{operation} failed for {entity_type.value}")

    @staticmethod
    def _record_id(record: Any) -> str:
        record_id = getattr(record, "id", None)
        if not record_id:
            raise PersistenceError(f"Record has no id: {record!r}")
        return record_id

    async def create(self, entity_type: EntityType, record: Any) -> Any:
        self._enter("create", entity_type)
        table = self.tables[entity_type]
        record_id = self._record_id(record)

        if record_id in table:
            raise PersistenceError(f"Duplicate {entity_type.value} id: {record_id}")

        table[record_id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def create_many(self, entity_type: EntityType, records: List[Any]) -> int:
        self._enter("create_many", entity_type)
        table = self.tables[entity_type]

        # Validate first so a failed write leaves nothing behind
        ids = [self._record_id(record) for record in records]
        duplicates = [record_id for record_id in ids if record_id in table]
        if duplicates or len(set(ids)) != len(ids):
            raise PersistenceError(f"Duplicate {entity_type.value} ids in batch")

        for record_id, record in zip(ids, records):
            table[record_id] = copy.deepcopy(record)

        return len(records)

    async def get(self, entity_type: EntityType, record_id: str) -> Optional[Any]:
        self._enter("get", entity_type)
        record = self.tables[entity_type].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def _apply(self, record: Any, changes: Dict[str, Any]):
        for field_name, value in changes.items():
            if not hasattr(record, field_name):
                raise PersistenceError(f"Unknown field {field_name} on {type(record).__name__}")
            setattr(record, field_name, copy.deepcopy(value))

    async def update(self, entity_type: EntityType, record_id: str, changes: Dict[str, Any]) -> Optional[Any]:
        self._enter("update", entity_type)
        record = self.tables[entity_type].get(record_id)
        if record is None:
            return None

        self._apply(record, changes)
        return copy.deepcopy(record)

    async def update_many(
        self,
        entity_type: EntityType,
        filters: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> int:
        self._enter("update_many", entity_type)
        updated = 0
        for record in self.tables[entity_type].values():
            if matches(record, filters):
                self._apply(record, changes)
                updated += 1
        return updated

    async def count(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> int:
        self._enter("count", entity_type)
        return sum(1 for record in self.tables[entity_type].values() if matches(record, filters))

    async def find_many(
        self,
        entity_type: EntityType,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Any]:
        self._enter("find_many", entity_type)
        rows: Iterable[Any] = (
            record for record in self.tables[entity_type].values() if matches(record, filters)
        )

        if order_by:
            def sort_key(record):
                value = _plain(getattr(record, order_by, None))
                return (value is None, value if value is not None else 0)

            rows = sorted(rows, key=sort_key, reverse=descending)
        rows = list(rows)

        if limit is not None:
            rows = rows[:limit]

        return [copy.deepcopy(record) for record in rows]

    async def delete_many(self, entity_type: EntityType, filters: Dict[str, Any]) -> int:
        self._enter("delete_many", entity_type)
        table = self.tables[entity_type]
        doomed = [record_id for record_id, record in table.items() if matches(record, filters)]
        for record_id in doomed:
            del table[record_id]
        return len(doomed)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tables": {entity_type.value: len(table) for entity_type, table in self.tables.items()},
            "calls": dict(self.call_counts)
        }
