"""
Data Models for the Shelfcast Recommendation Core
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union, Mapping
import time
import uuid
from enum import Enum

from .errors import InvalidEventError


def new_id() -> str:
    """Generate a unique record identifier"""
    return uuid.uuid4().hex


class BehaviorType(Enum):
    """Types of user behavior"""
    VIEW = "view"
    CLICK = "click"
    HOVER = "hover"
    SCROLL = "scroll"
    SEARCH = "search"
    BORROW = "borrow"
    RETURN = "return"
    RATE = "rate"
    REVIEW = "review"
    BOOKMARK = "bookmark"
    SHARE = "share"
    DOWNLOAD = "download"
    READ = "read"
    RECOMMENDATION_CLICK = "recommendation_click"
    RECOMMENDATION_DISMISS = "recommendation_dismiss"


IMPLICIT_BEHAVIORS = frozenset({
    BehaviorType.VIEW,
    BehaviorType.CLICK,
    BehaviorType.HOVER,
    BehaviorType.SCROLL,
    BehaviorType.SEARCH,
})

HIGH_PRIORITY_BEHAVIORS = frozenset({
    BehaviorType.BORROW,
    BehaviorType.RATE,
    BehaviorType.REVIEW,
    BehaviorType.SHARE,
})


def is_implicit_behavior(behavior_type: BehaviorType) -> bool:
    return behavior_type in IMPLICIT_BEHAVIORS


def is_high_priority_behavior(behavior_type: BehaviorType) -> bool:
    return behavior_type in HIGH_PRIORITY_BEHAVIORS


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass
class BehaviorEvent:
    """A single recorded user interaction"""
    user_id: str
    behavior_type: Union[str, BehaviorType]
    item_id: Optional[str] = None
    intensity: float = 1.0
    duration_seconds: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    confidence_score: float = 0.0
    is_implicit: bool = False
    is_anomaly: bool = False
    processed: bool = False
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.user_id:
            raise InvalidEventError("user_id is required", field_name="user_id")
        if not self.behavior_type:
            raise InvalidEventError("behavior_type is required", field_name="behavior_type")

        if isinstance(self.behavior_type, str):
            try:
                self.behavior_type = BehaviorType(self.behavior_type)
            except ValueError:
                raise InvalidEventError(
                    f"Unknown behavior type: {self.behavior_type}",
                    field_name="behavior_type"
                )

        try:
            self.intensity = float(self.intensity)
        except (TypeError, ValueError):
            raise InvalidEventError(
                f"intensity must be numeric, got {self.intensity!r}",
                field_name="intensity"
            )

        if self.duration_seconds is not None:
            try:
                self.duration_seconds = int(self.duration_seconds)
            except (TypeError, ValueError):
                raise InvalidEventError(
                    f"duration_seconds must be a whole number, got {self.duration_seconds!r}",
                    field_name="duration_seconds"
                )

        self.is_implicit = is_implicit_behavior(self.behavior_type)
        if self.context is None:
            self.context = {}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BehaviorEvent":
        """
        Build an event from a raw mapping as received at the API boundary

        Accepts both snake_case and camelCase keys; ``book_id`` is treated
        as an alias of ``item_id``.
        """
        kwargs = {
            "user_id": _first_present(data, "user_id", "userId"),
            "behavior_type": _first_present(data, "behavior_type", "behaviorType"),
            "item_id": _first_present(data, "item_id", "itemId", "book_id", "bookId"),
            "intensity": _first_present(data, "intensity"),
            "duration_seconds": _first_present(data, "duration_seconds", "durationSeconds", "duration"),
            "context": dict(data.get("context") or {}),
            "session_id": _first_present(data, "session_id", "sessionId"),
            "recommendation_id": _first_present(data, "recommendation_id", "recommendationId"),
        }
        if kwargs["intensity"] is None:
            kwargs["intensity"] = 1.0
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "behavior_type": self.behavior_type.value,
            "intensity": self.intensity,
            "duration_seconds": self.duration_seconds,
            "context": self.context,
            "session_id": self.session_id,
            "recommendation_id": self.recommendation_id,
            "confidence_score": self.confidence_score,
            "is_implicit": self.is_implicit,
            "is_anomaly": self.is_anomaly,
            "processed": self.processed,
            "created_at": self.created_at
        }


@dataclass
class NegativePreferences:
    """Things a user explicitly does not want to see"""
    disliked_categories: List[str] = field(default_factory=list)
    disliked_authors: List[str] = field(default_factory=list)
    blacklisted_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "disliked_categories": list(self.disliked_categories),
            "disliked_authors": list(self.disliked_authors),
            "blacklisted_keywords": list(self.blacklisted_keywords)
        }


@dataclass
class UserPreference:
    """Per-user evolving preference state"""
    user_id: str
    category_weights: Dict[str, float] = field(default_factory=dict)
    author_weights: Dict[str, float] = field(default_factory=dict)
    tag_weights: Dict[str, float] = field(default_factory=dict)
    negative_preferences: NegativePreferences = field(default_factory=NegativePreferences)
    confidence_score: float = 0.1
    personalization_strength: float = 0.7
    last_updated: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)

    @property
    def id(self) -> str:
        # One row per user, keyed by the user id
        return self.user_id

    def affinity(self, item: "Item") -> float:
        """Sum of the user's weights that apply to an item"""
        score = self.category_weights.get(item.category, 0.0)
        score += self.author_weights.get(item.author, 0.0)
        score += sum(self.tag_weights.get(tag, 0.0) for tag in item.tags)
        return score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "category_weights": self.category_weights,
            "author_weights": self.author_weights,
            "tag_weights": self.tag_weights,
            "negative_preferences": self.negative_preferences.to_dict(),
            "confidence_score": self.confidence_score,
            "personalization_strength": self.personalization_strength,
            "last_updated": self.last_updated,
            "created_at": self.created_at
        }


class RecommendationStatus(Enum):
    """Lifecycle of a surfaced recommendation"""
    GENERATED = "generated"
    DISPLAYED = "displayed"
    CLICKED = "clicked"
    DISMISSED = "dismissed"
    BORROWED = "borrowed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecommendationStatus.BORROWED, RecommendationStatus.DISMISSED)


_STATUS_ORDER = {
    RecommendationStatus.GENERATED: 0,
    RecommendationStatus.DISPLAYED: 1,
    RecommendationStatus.CLICKED: 2,
    RecommendationStatus.DISMISSED: 2,
    RecommendationStatus.BORROWED: 3,
}


def can_transition(current: RecommendationStatus, target: RecommendationStatus) -> bool:
    """
    Whether a recommendation may move from ``current`` to ``target``

    Staying in the same status is allowed (no-op). Terminal statuses accept
    nothing else, and no transition may move backwards.
    """
    if current == target:
        return True
    if current.is_terminal:
        return False
    return _STATUS_ORDER[target] > _STATUS_ORDER[current]


@dataclass
class Recommendation:
    """A recommendation row produced by one engine invocation"""
    user_id: str
    item_id: str
    algorithm: str
    score: float
    rank: int
    scenario: str
    batch_id: str
    explanation: str = ""
    model_id: Optional[str] = None
    status: RecommendationStatus = RecommendationStatus.GENERATED
    display_count: int = 0
    click_count: int = 0
    feedback_summary: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_displayed_at: Optional[float] = None
    last_clicked_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "algorithm": self.algorithm,
            "model_id": self.model_id,
            "score": self.score,
            "rank": self.rank,
            "scenario": self.scenario,
            "status": self.status.value,
            "explanation": self.explanation,
            "batch_id": self.batch_id,
            "display_count": self.display_count,
            "click_count": self.click_count,
            "feedback_summary": self.feedback_summary,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_displayed_at": self.last_displayed_at,
            "last_clicked_at": self.last_clicked_at
        }


class FeedbackType(Enum):
    """Types of recommendation feedback"""
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"


@dataclass
class RecommendationFeedback:
    """Feedback on a single recommendation, consumed once by learning"""
    user_id: str
    recommendation_id: str
    item_id: str
    feedback_type: FeedbackType
    feedback_value: float
    dimensions: Dict[str, Optional[float]] = field(default_factory=dict)
    comment: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.feedback_value = max(-1.0, min(1.0, float(self.feedback_value)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "recommendation_id": self.recommendation_id,
            "item_id": self.item_id,
            "feedback_type": self.feedback_type.value,
            "feedback_value": self.feedback_value,
            "dimensions": self.dimensions,
            "comment": self.comment,
            "context": self.context,
            "processed": self.processed,
            "created_at": self.created_at
        }


class AlgorithmType(Enum):
    """Algorithm families known to the engine"""
    COLLABORATIVE_FILTERING = "collaborative_filtering"
    CONTENT_BASED = "content_based"
    POPULARITY = "popularity"
    TRENDING = "trending"
    HYBRID = "hybrid"
    CONTEXTUAL = "contextual"
    SEQUENTIAL = "sequential"
    DEEP_LEARNING = "deep_learning"


class TrainingStatus(Enum):
    """Training state of an algorithm model"""
    UNTRAINED = "untrained"
    TRAINING = "training"
    TRAINED = "trained"
    FAILED = "failed"


@dataclass
class AlgorithmConfig:
    """Configuration row for a recommendation algorithm"""
    name: str
    type: AlgorithmType
    hyperparameters: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    priority: int = 0
    applicable_scenarios: List[str] = field(default_factory=list)
    training_status: TrainingStatus = TrainingStatus.UNTRAINED
    is_default: bool = False
    last_trained_at: Optional[float] = None
    id: str = field(default_factory=new_id)

    def applies_to(self, scenario: str) -> bool:
        # An empty scenario list means "every scenario"
        return not self.applicable_scenarios or scenario in self.applicable_scenarios

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "hyperparameters": self.hyperparameters,
            "enabled": self.enabled,
            "priority": self.priority,
            "applicable_scenarios": self.applicable_scenarios,
            "training_status": self.training_status.value,
            "is_default": self.is_default,
            "last_trained_at": self.last_trained_at
        }


@dataclass
class Item:
    """Catalog item as returned by the catalog lookup"""
    id: str
    title: str = ""
    category: str = ""
    author: str = ""
    tags: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    description: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "author": self.author,
            "tags": self.tags,
            "rating": self.rating,
            "description": self.description,
            "created_at": self.created_at
        }


@dataclass
class Candidate:
    """A scored item flowing through the engine's stages"""
    item: Item
    score: float
    algorithm: str
    explanation: Optional[str] = None

    @property
    def item_id(self) -> str:
        return self.item.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item.id,
            "item": self.item.to_dict(),
            "score": self.score,
            "algorithm": self.algorithm,
            "explanation": self.explanation
        }


@dataclass
class RecommendationResult:
    """Response containing recommendations"""
    user_id: str
    recommendations: List[Recommendation]
    algorithm: str
    total_candidates: int = 0
    processing_time_ms: float = 0.0
    diversity: float = 0.0
    degraded: bool = False
    error: Optional[str] = None
    cache_hit: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "recommendations": [rec.to_dict() for rec in self.recommendations],
            "algorithm": self.algorithm,
            "total_candidates": self.total_candidates,
            "processing_time_ms": self.processing_time_ms,
            "diversity": self.diversity,
            "degraded": self.degraded,
            "error": self.error,
            "cache_hit": self.cache_hit,
            "metadata": self.metadata
        }


class AnomalyType(Enum):
    """Kinds of suspicious behavior patterns"""
    HIGH_FREQUENCY = "high_frequency"
    EXCESSIVE_BEHAVIOR = "excessive_behavior"


@dataclass
class Anomaly:
    """A flagged behavior pattern for one actor within a time window"""
    anomaly_type: AnomalyType
    user_id: str
    count: int
    threshold: int
    window_start: float
    window_end: float
    behavior_type: Optional[BehaviorType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.anomaly_type.value,
            "user_id": self.user_id,
            "count": self.count,
            "threshold": self.threshold,
            "behavior_type": self.behavior_type.value if self.behavior_type else None,
            "window_start": self.window_start,
            "window_end": self.window_end
        }


@dataclass
class TrackResult:
    """Outcome of tracking a single event"""
    accepted: bool
    event_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "event_id": self.event_id, "error": self.error}


@dataclass
class BatchTrackResult:
    """Outcome of tracking a batch of events"""
    processed: int
    results: List[TrackResult] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return sum(1 for result in self.results if result.accepted)

    @property
    def rejected(self) -> int:
        return self.processed - self.accepted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "results": [result.to_dict() for result in self.results]
        }


@dataclass
class ReadingSession:
    """A reading session reported by a reader client"""
    start_time: float
    end_time: Optional[float] = None
    pages_read: int = 0
    progress_percentage: float = 0.0
    interruptions: int = 0
    reading_speed: Optional[float] = None
    device: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return max(0.0, self.end_time - self.start_time)
