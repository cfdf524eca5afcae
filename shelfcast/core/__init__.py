"""Core recommendation engine components"""

from .engine import RecommendationEngine
from .algorithms import AlgorithmRegistry
from .models import BehaviorEvent, UserPreference, Item, Recommendation

__all__ = ["RecommendationEngine", "AlgorithmRegistry", "BehaviorEvent", "UserPreference", "Item", "Recommendation"]
