"""
Exception taxonomy for the recommendation core

Ingestion and engine errors are mostly absorbed and logged at the component
boundary; the not-found / invalid-state family is raised to callers of the
explicit single-record operations.
"""

from typing import Optional


class ShelfcastError(Exception):
    """Base class for all errors raised by the recommendation core"""


class InvalidEventError(ShelfcastError):
    """A behavior event is missing required fields or has an unknown type"""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class InsufficientDataError(ShelfcastError):
    """An algorithm cannot run for this user (not enough history or inputs)"""

    def __init__(self, algorithm: str, message: str):
        super().__init__(f"{algorithm}: {message}")
        self.algorithm = algorithm


class AlgorithmNotFoundError(ShelfcastError):
    """A requested algorithm is unknown, disabled or has no generator"""

    def __init__(self, name: str):
        super().__init__(f"Algorithm not found or disabled: {name}")
        self.name = name


class PersistenceError(ShelfcastError):
    """A write or read against the persistent store failed"""


class RecommendationNotFoundError(ShelfcastError):
    """No recommendation exists with the given id"""

    def __init__(self, recommendation_id: str):
        super().__init__(f"Recommendation not found: {recommendation_id}")
        self.recommendation_id = recommendation_id


class ItemNotFoundError(ShelfcastError):
    """The catalog has no item with the given id"""

    def __init__(self, item_id: str):
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


class InvalidStateError(ShelfcastError):
    """The record exists but the requested change is not allowed"""
