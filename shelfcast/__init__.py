"""
Shelfcast Recommendation Engine

Book recommendations that learn continuously from reader behavior:
behavior ingestion, preference learning and a staged recommendation engine
with layered fallbacks.
"""

__version__ = "1.0.0"
__author__ = "Shelfcast Team"

from .core.engine import RecommendationEngine, EngineConfig
from .core.preferences import PreferenceLearner
from .streaming.behavior_tracker import BehaviorTracker, BehaviorTrackerConfig
from .serving.service import RecommendationService, RecommendationOptions

__all__ = [
    "RecommendationEngine",
    "EngineConfig",
    "PreferenceLearner",
    "BehaviorTracker",
    "BehaviorTrackerConfig",
    "RecommendationService",
    "RecommendationOptions"
]
