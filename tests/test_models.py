"""
Tests for the core data models
"""

import pytest

from shelfcast.core.errors import InvalidEventError
from shelfcast.core.models import (
    AlgorithmConfig, AlgorithmType, BatchTrackResult, BehaviorEvent, BehaviorType, FeedbackType,
    Item, ReadingSession, RecommendationFeedback, RecommendationStatus, TrackResult, UserPreference,
    can_transition
)


class TestBehaviorEvent:
    def test_string_type_is_parsed(self):
        event = BehaviorEvent(user_id="u1", behavior_type="borrow", item_id="s1", intensity="4")

        assert event.behavior_type == BehaviorType.BORROW
        assert event.intensity == 4.0
        assert event.is_implicit is False

    def test_implicit_behaviors_are_flagged(self):
        assert BehaviorEvent(user_id="u1", behavior_type="view").is_implicit
        assert BehaviorEvent(user_id="u1", behavior_type="search").is_implicit

    @pytest.mark.parametrize("kwargs,field_name", [
        ({"user_id": "", "behavior_type": "view"}, "user_id"),
        ({"user_id": "u1", "behavior_type": None}, "behavior_type"),
        ({"user_id": "u1", "behavior_type": "teleport"}, "behavior_type"),
        ({"user_id": "u1", "behavior_type": "view", "intensity": "lots"}, "intensity"),
        ({"user_id": "u1", "behavior_type": "read", "duration_seconds": "long"}, "duration_seconds"),
        ({"user_id": "u1", "behavior_type": "read", "duration_seconds": [90]}, "duration_seconds"),
    ])
    def test_invalid_events_are_rejected(self, kwargs, field_name):
        with pytest.raises(InvalidEventError) as exc_info:
            BehaviorEvent(**kwargs)
        assert exc_info.value.field_name == field_name

    def test_from_dict_accepts_camel_case_and_book_id(self):
        event = BehaviorEvent.from_dict({
            "userId": "u1",
            "behaviorType": "read",
            "bookId": "s3",
            "durationSeconds": "120",
            "sessionId": "sess-1",
        })

        assert event.user_id == "u1"
        assert event.behavior_type == BehaviorType.READ
        assert event.item_id == "s3"
        assert event.duration_seconds == 120
        assert event.session_id == "sess-1"
        assert event.intensity == 1.0

    def test_to_dict_uses_plain_values(self):
        data = BehaviorEvent(user_id="u1", behavior_type="click", item_id="s1").to_dict()
        assert data["behavior_type"] == "click"
        assert data["item_id"] == "s1"


class TestRecommendationStatus:
    @pytest.mark.parametrize("current,target,allowed", [
        (RecommendationStatus.GENERATED, RecommendationStatus.DISPLAYED, True),
        (RecommendationStatus.DISPLAYED, RecommendationStatus.CLICKED, True),
        (RecommendationStatus.DISPLAYED, RecommendationStatus.DISMISSED, True),
        (RecommendationStatus.CLICKED, RecommendationStatus.BORROWED, True),
        (RecommendationStatus.CLICKED, RecommendationStatus.CLICKED, True),
        (RecommendationStatus.CLICKED, RecommendationStatus.DISPLAYED, False),
        (RecommendationStatus.CLICKED, RecommendationStatus.DISMISSED, False),
        (RecommendationStatus.DISMISSED, RecommendationStatus.CLICKED, False),
        (RecommendationStatus.BORROWED, RecommendationStatus.DISMISSED, False),
    ])
    def test_transitions(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    def test_terminal_statuses(self):
        assert RecommendationStatus.BORROWED.is_terminal
        assert RecommendationStatus.DISMISSED.is_terminal
        assert not RecommendationStatus.CLICKED.is_terminal


def test_feedback_value_is_clamped():
    feedback = RecommendationFeedback(
        user_id="u1",
        recommendation_id="rec",
        item_id="s1",
        feedback_type=FeedbackType.EXPLICIT,
        feedback_value=3.0
    )
    assert feedback.feedback_value == 1.0


def test_preference_affinity_sums_matching_weights():
    preference = UserPreference(
        user_id="u1",
        category_weights={"SciFi": 0.5},
        author_weights={"Asimov": 0.25},
        tag_weights={"robots": 0.1, "space": 0.4}
    )
    item = Item(id="s2", category="SciFi", author="Asimov", tags=["robots"])

    assert preference.id == "u1"
    assert preference.affinity(item) == pytest.approx(0.85)


def test_algorithm_config_scenarios():
    everywhere = AlgorithmConfig(name="popular", type=AlgorithmType.POPULARITY)
    trending = AlgorithmConfig(name="trending", type=AlgorithmType.TRENDING, applicable_scenarios=["trending"])

    assert everywhere.applies_to("homepage")
    assert trending.applies_to("trending")
    assert not trending.applies_to("homepage")


def test_batch_result_counts():
    result = BatchTrackResult(processed=3, results=[
        TrackResult(accepted=True, event_id="a"),
        TrackResult(accepted=False, error="bad"),
        TrackResult(accepted=True, event_id="b"),
    ])
    assert result.accepted == 2
    assert result.rejected == 1


def test_reading_session_duration():
    assert ReadingSession(start_time=100.0, end_time=400.0).duration_seconds == 300.0
    assert ReadingSession(start_time=100.0).duration_seconds is None
