"""
Behavior Ingestion Pipeline

Validates and scores raw interaction events, persists high-priority ones
immediately, batches the rest, drives real-time preference learning and
flags anomalous activity.
"""

import asyncio
import logging
import random
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..core.errors import InvalidEventError, PersistenceError
from ..core.models import (
    Anomaly, AnomalyType, BatchTrackResult, BehaviorEvent, BehaviorType, ReadingSession,
    TrackResult, is_high_priority_behavior
)
from ..core.preferences import PreferenceLearner
from ..storage.catalog import BaseCatalog
from ..storage.store import BaseStore, EntityType
from .events import AnomaliesDetected, BehaviorTracked, HighPriorityBehavior, SignalBus


CONFIDENCE_BASE: Dict[BehaviorType, float] = {
    BehaviorType.BORROW: 0.9,
    BehaviorType.RATE: 0.8,
    BehaviorType.REVIEW: 0.8,
    BehaviorType.BOOKMARK: 0.7,
    BehaviorType.SHARE: 0.7,
    BehaviorType.READ: 0.6,
    BehaviorType.CLICK: 0.4,
    BehaviorType.VIEW: 0.3,
    BehaviorType.SEARCH: 0.2,
}
DEFAULT_CONFIDENCE = 0.5

LEARNING_BEHAVIORS = frozenset({
    BehaviorType.BORROW,
    BehaviorType.RATE,
    BehaviorType.REVIEW,
    BehaviorType.BOOKMARK,
})

EventInput = Union[BehaviorEvent, Mapping[str, Any]]


@dataclass
class BehaviorTrackerConfig:
    """Configuration for the behavior tracker"""
    batch_size: int = 100
    flush_interval_s: float = 5.0
    anomaly_interval_s: float = 60.0
    anomaly_window_minutes: int = 60
    frequency_threshold: int = 10
    behavior_thresholds: Dict[str, int] = None
    enable_real_time_learning: bool = True
    learning_sample_rate: float = 0.1
    learning_intensity_threshold: float = 3.0
    high_priority_multiplier: float = 2.0

    def __post_init__(self):
        if self.behavior_thresholds is None:
            self.behavior_thresholds = {"click": 5}


def compute_confidence(event: BehaviorEvent) -> float:
    """
    Confidence that an event reflects real interest

    ``base[type] * min(1, intensity/5) * session_quality``, clamped to [0, 1].
    """
    base = CONFIDENCE_BASE.get(event.behavior_type, DEFAULT_CONFIDENCE)
    try:
        quality = float(event.context.get("session_quality", 1.0))
    except (TypeError, ValueError):
        quality = 1.0

    score = base * min(1.0, event.intensity / 5.0) * quality
    return max(0.0, min(1.0, score))


def reading_intensity(session: ReadingSession) -> float:
    """Intensity of a reading session, from 1.0 up to 5.0"""
    intensity = 1.0
    duration = session.duration_seconds or 0.0

    if duration > 30 * 60:
        intensity += 1.0
    if duration > 60 * 60:
        intensity += 1.0
    if session.pages_read > 10:
        intensity += 0.5
    if session.pages_read > 50:
        intensity += 1.0
    if session.progress_percentage > 50:
        intensity += 1.0
    if session.progress_percentage >= 100:
        intensity += 2.0

    return min(5.0, intensity)


def session_quality(session: ReadingSession) -> float:
    """Quality of a reading session in [0.1, 1.0]"""
    quality = 1.0
    duration = session.duration_seconds or 0.0

    if duration > 30 * 60:
        quality += 0.2
    quality -= 0.1 * session.interruptions
    if session.progress_percentage > 10:
        quality += 0.1

    return max(0.1, min(1.0, quality))


class BehaviorTracker:
    """
    Behavior ingestion pipeline

    High-priority behaviors (borrow, rate, review, share) are written and
    learned from synchronously. Everything else is queued and written in
    batches, on a timer or when the queue reaches ``batch_size``.
    """

    def __init__(
        self,
        store: BaseStore,
        catalog: BaseCatalog,
        learner: PreferenceLearner,
        bus: Optional[SignalBus] = None,
        config: Optional[BehaviorTrackerConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the behavior tracker

        Args:
            store: Persistent store for behavior events
            catalog: Catalog lookup
            learner: Preference learner fed by accepted events
            bus: Signal bus for downstream consumers
            config: Tracker configuration
            clock: Time source (epoch seconds)
            rng: Random source for learning sampling
        """
        self.store = store
        self.catalog = catalog
        self.learner = learner
        self.bus = bus or SignalBus()
        self.config = config or BehaviorTrackerConfig()
        self.clock = clock
        self.rng = rng or random.Random()

        self.queue: List[BehaviorEvent] = []
        self._flush_lock = asyncio.Lock()
        self._flush_pending = False
        self._tasks: List[asyncio.Task] = []

        # Performance tracking
        self.tracked_events = 0
        self.rejected_events = 0
        self.persisted_events = 0
        self.dropped_events = 0
        self.processing_errors = 0
        self.learning_updates = 0
        self.flush_count = 0
        self.anomalies_detected = 0
        self.start_time = time.time()
        self.is_running = False

        self.logger = logging.getLogger(__name__)
        self.logger.info(f"BehaviorTracker initialized with config: {self.config}")

    async def start(self):
        """Start the periodic flush and anomaly detection tasks"""
        if self.is_running:
            return

        self.logger.info("Starting behavior tracker...")
        self.is_running = True
        self.start_time = time.time()
        self._tasks = [
            asyncio.create_task(self._flush_periodically()),
            asyncio.create_task(self._detect_anomalies_periodically()),
        ]

    async def stop(self):
        """Stop the periodic tasks and flush whatever is still queued"""
        self.logger.info("Stopping behavior tracker...")
        self.is_running = False

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.flush()
        self.logger.info("Behavior tracker stopped")

    def _coerce(self, event: EventInput) -> BehaviorEvent:
        if isinstance(event, BehaviorEvent):
            return event
        if isinstance(event, Mapping):
            return BehaviorEvent.from_dict(event)
        raise InvalidEventError(f"Unsupported event payload: {type(event).__name__}")

    async def track(self, event: EventInput) -> TrackResult:
        """
        Accept one behavior event

        Args:
            event: ``BehaviorEvent`` or raw mapping

        Returns:
            Track result; ``accepted=False`` when a high-priority write failed

        Raises:
            InvalidEventError: required fields are missing or the type is unknown
        """
        try:
            event = self._coerce(event)
        except InvalidEventError:
            self.rejected_events += 1
            raise

        event.created_at = self.clock()
        event.confidence_score = compute_confidence(event)

        if is_high_priority_behavior(event.behavior_type):
            event.processed = True
            try:
                await self.store.create(EntityType.BEHAVIOR, event)
            except PersistenceError as e:
                self.processing_errors += 1
                self.logger.error(f"Failed to persist high-priority event {event.id}: {e}")
                return TrackResult(accepted=False, event_id=event.id, error=str(e))

            self.persisted_events += 1
            await self._learn(event, self.config.high_priority_multiplier)
            self.bus.publish(HighPriorityBehavior(
                event_id=event.id,
                user_id=event.user_id,
                behavior_type=event.behavior_type,
                item_id=event.item_id
            ))
        else:
            self.queue.append(event)
            if event.item_id and self._should_learn(event):
                await self._learn(event)
            if len(self.queue) >= self.config.batch_size:
                await self.flush()

        self.tracked_events += 1
        self.bus.publish(BehaviorTracked(
            event_id=event.id,
            user_id=event.user_id,
            behavior_type=event.behavior_type,
            item_id=event.item_id
        ))
        self.logger.debug(f"Tracked {event.behavior_type.value} for user {event.user_id}")
        return TrackResult(accepted=True, event_id=event.id)

    def _should_learn(self, event: BehaviorEvent) -> bool:
        if not self.config.enable_real_time_learning:
            return False
        if event.behavior_type in LEARNING_BEHAVIORS:
            return True
        if event.intensity >= self.config.learning_intensity_threshold:
            return True
        return self.rng.random() < self.config.learning_sample_rate

    async def _learn(self, event: BehaviorEvent, multiplier: float = 1.0):
        try:
            updated = await self.learner.learn_from_behavior(
                event.user_id,
                event.item_id,
                event.behavior_type,
                event.intensity,
                multiplier=multiplier
            )
            if updated is not None:
                self.learning_updates += 1
        except Exception as e:
            self.processing_errors += 1
            self.logger.error(f"Real-time learning failed for event {event.id}: {e}")

    async def track_batch(self, events: Iterable[EventInput]) -> BatchTrackResult:
        """
        Accept several events; one bad event never fails the batch
        """
        events = list(events)
        results = []

        for event in events:
            try:
                results.append(await self.track(event))
            except InvalidEventError as e:
                results.append(TrackResult(accepted=False, error=str(e)))
            except Exception as e:
                self.processing_errors += 1
                self.logger.error(f"Unexpected error tracking event: {e}")
                results.append(TrackResult(accepted=False, error=str(e)))

        return BatchTrackResult(processed=len(events), results=results)

    async def track_search(
        self,
        user_id: str,
        query: str,
        results: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        search_type: str = "keyword"
    ) -> TrackResult:
        """Record a catalog search"""
        results = results or []
        event_context = dict(context or {})
        event_context.update({
            "search_query": query,
            "result_count": len(results),
            "has_results": bool(results),
            "search_type": search_type,
        })

        return await self.track(BehaviorEvent(
            user_id=user_id,
            behavior_type=BehaviorType.SEARCH,
            intensity=1.5,
            context=event_context,
            session_id=event_context.get("session_id")
        ))

    async def track_reading_session(
        self,
        user_id: str,
        item_id: str,
        session: Union[ReadingSession, Mapping[str, Any]],
        context: Optional[Dict[str, Any]] = None
    ) -> TrackResult:
        """
        Record a reading session as a ``read`` event

        Intensity grows with duration, pages and progress; the session quality
        lands in ``context["session_quality"]`` and scales confidence.
        """
        if not isinstance(session, ReadingSession):
            session = ReadingSession(**dict(session))

        duration = session.duration_seconds
        event_context = dict(context or {})
        event_context.update({
            "session_quality": session_quality(session),
            "pages_read": session.pages_read,
            "progress_percentage": session.progress_percentage,
            "interruptions": session.interruptions,
            "reading_speed": session.reading_speed,
            "device": session.device,
        })

        return await self.track(BehaviorEvent(
            user_id=user_id,
            item_id=item_id,
            behavior_type=BehaviorType.READ,
            intensity=reading_intensity(session),
            duration_seconds=int(duration) if duration is not None else None,
            context=event_context
        ))

    async def flush(self) -> int:
        """
        Write queued events in ``batch_size`` chunks

        A flush requested while another is running is folded into the running
        one, which drains the queue again before it releases the lock.

        Returns:
            Number of events written by this call
        """
        if self._flush_lock.locked():
            self._flush_pending = True
            return 0

        written = 0
        async with self._flush_lock:
            while True:
                self._flush_pending = False
                written += await self._drain()
                if not (self._flush_pending and self.queue):
                    break
        return written

    async def _drain(self) -> int:
        if not self.queue:
            return 0

        events, self.queue = self.queue, []
        start_time = time.time()
        stored: List[BehaviorEvent] = []

        for offset in range(0, len(events), self.config.batch_size):
            chunk = events[offset:offset + self.config.batch_size]
            try:
                await self.store.create_many(EntityType.BEHAVIOR, chunk)
                stored.extend(chunk)
            except PersistenceError as e:
                self.dropped_events += len(chunk)
                self.processing_errors += 1
                self.logger.error(f"Dropped batch of {len(chunk)} events: {e}")

        if stored:
            await self._annotate_batch(stored)
            try:
                await self.store.update_many(
                    EntityType.BEHAVIOR,
                    {"id": {"in": [event.id for event in stored]}},
                    {"processed": True}
                )
            except PersistenceError as e:
                self.processing_errors += 1
                self.logger.error(f"Failed to mark {len(stored)} events processed: {e}")

        self.persisted_events += len(stored)
        self.flush_count += 1

        processing_time = (time.time() - start_time) * 1000
        self.logger.debug(f"Flushed batch of {len(events)} events in {processing_time:.2f}ms")
        return len(stored)

    async def _annotate_batch(self, events: List[BehaviorEvent]):
        """Per-user analytics over a freshly written batch"""
        by_user: Dict[str, List[BehaviorEvent]] = defaultdict(list)
        for event in events:
            by_user[event.user_id].append(event)

        window_start = min(event.created_at for event in events)
        window_end = max(event.created_at for event in events)

        for user_id, user_events in by_user.items():
            try:
                found = self._find_anomalies(user_events, window_start, window_end)
                ids = {event_id for _, event_ids in found for event_id in event_ids}
                if ids:
                    await self.store.update_many(
                        EntityType.BEHAVIOR, {"id": {"in": sorted(ids)}}, {"is_anomaly": True}
                    )
                    self.logger.warning(
                        f"User {user_id} flagged in batch: {[a.anomaly_type.value for a, _ in found]}"
                    )
            except Exception as e:
                self.processing_errors += 1
                self.logger.error(f"Batch analytics failed for user {user_id}: {e}")

    def _find_anomalies(
        self,
        events: List[BehaviorEvent],
        window_start: float,
        window_end: float
    ) -> List[Tuple[Anomaly, List[str]]]:
        """
        Group events by user and apply the frequency and per-type thresholds

        Returns:
            (anomaly, ids of the offending events) pairs
        """
        by_user: Dict[str, List[BehaviorEvent]] = defaultdict(list)
        for event in events:
            by_user[event.user_id].append(event)

        found = []
        for user_id, user_events in by_user.items():
            if len(user_events) > self.config.frequency_threshold:
                found.append((
                    Anomaly(
                        anomaly_type=AnomalyType.HIGH_FREQUENCY,
                        user_id=user_id,
                        count=len(user_events),
                        threshold=self.config.frequency_threshold,
                        window_start=window_start,
                        window_end=window_end
                    ),
                    [event.id for event in user_events]
                ))

            by_type: Dict[BehaviorType, List[BehaviorEvent]] = defaultdict(list)
            for event in user_events:
                by_type[event.behavior_type].append(event)

            for type_name, threshold in self.config.behavior_thresholds.items():
                behavior_type = BehaviorType(type_name)
                typed = by_type.get(behavior_type, [])
                if len(typed) > threshold:
                    found.append((
                        Anomaly(
                            anomaly_type=AnomalyType.EXCESSIVE_BEHAVIOR,
                            user_id=user_id,
                            count=len(typed),
                            threshold=threshold,
                            behavior_type=behavior_type,
                            window_start=window_start,
                            window_end=window_end
                        ),
                        [event.id for event in typed]
                    ))

        return found

    async def detect_anomalies(
        self,
        user_id: Optional[str] = None,
        window_minutes: Optional[int] = None,
        annotate: bool = False
    ) -> List[Anomaly]:
        """
        Scan stored events of the recent window for suspicious activity

        Args:
            user_id: Restrict the scan to one user
            window_minutes: Window length; defaults to the configured window
            annotate: Mark offending events ``is_anomaly`` and publish a signal

        Returns:
            Detected anomalies
        """
        if window_minutes is None:
            window_minutes = self.config.anomaly_window_minutes
        now = self.clock()
        window_start = now - window_minutes * 60

        filters: Dict[str, Any] = {"created_at": {"gte": window_start}}
        if user_id is not None:
            filters["user_id"] = user_id

        events = await self.store.find_many(EntityType.BEHAVIOR, filters)
        found = self._find_anomalies(events, window_start, now)
        anomalies = [anomaly for anomaly, _ in found]

        if annotate and found:
            ids = sorted({event_id for _, event_ids in found for event_id in event_ids})
            await self.store.update_many(EntityType.BEHAVIOR, {"id": {"in": ids}}, {"is_anomaly": True})
            self.anomalies_detected += len(anomalies)
            self.bus.publish(AnomaliesDetected(anomalies=anomalies))
            self.logger.warning(f"Detected {len(anomalies)} anomalies in the last {window_minutes} minutes")

        return anomalies

    async def _flush_periodically(self):
        """Flush the queue on a timer even if it is not full"""
        while self.is_running:
            try:
                await asyncio.sleep(self.config.flush_interval_s)
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.processing_errors += 1
                self.logger.error(f"Error in periodic flush: {e}")

    async def _detect_anomalies_periodically(self):
        while self.is_running:
            try:
                await asyncio.sleep(self.config.anomaly_interval_s)
                await self.detect_anomalies(annotate=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.processing_errors += 1
                self.logger.error(f"Error in anomaly detection: {e}")

    async def get_user_behavior_stats(self, user_id: str, time_range_days: int = 30) -> Dict[str, Any]:
        """
        Summarise a user's stored behaviors over a time range

        Returns:
            Totals, per-type count / average intensity / total duration and
            the overall average intensity
        """
        since = self.clock() - time_range_days * 24 * 3600
        events = await self.store.find_many(
            EntityType.BEHAVIOR, {"user_id": user_id, "created_at": {"gte": since}}
        )

        per_type: Dict[str, Dict[str, float]] = {}
        for event in events:
            stats = per_type.setdefault(
                event.behavior_type.value,
                {"count": 0, "total_intensity": 0.0, "total_duration": 0}
            )
            stats["count"] += 1
            stats["total_intensity"] += event.intensity
            stats["total_duration"] += event.duration_seconds or 0

        for stats in per_type.values():
            stats["avg_intensity"] = stats.pop("total_intensity") / stats["count"]

        total_intensity = sum(event.intensity for event in events)
        return {
            "user_id": user_id,
            "time_range_days": time_range_days,
            "total_behaviors": len(events),
            "unique_items": len({event.item_id for event in events if event.item_id}),
            "anomalous_behaviors": sum(1 for event in events if event.is_anomaly),
            "behavior_types": per_type,
            "average_intensity": total_intensity / len(events) if events else 0.0
        }

    async def get_recommendation_effectiveness(self, time_range_days: int = 30) -> Dict[str, Any]:
        """
        Per-algorithm clicks, dismissals and rates over a time range

        Rates are relative to how often the algorithm's recommendations were
        displayed in the same range.
        """
        since = self.clock() - time_range_days * 24 * 3600
        events = await self.store.find_many(EntityType.BEHAVIOR, {
            "behavior_type": {"in": [
                BehaviorType.RECOMMENDATION_CLICK, BehaviorType.RECOMMENDATION_DISMISS
            ]},
            "created_at": {"gte": since},
        })
        recommendations = await self.store.find_many(
            EntityType.RECOMMENDATION, {"created_at": {"gte": since}}
        )
        by_id = {rec.id: rec for rec in recommendations}

        summary: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"displays": 0, "clicks": 0, "dismissals": 0}
        )
        for rec in recommendations:
            summary[rec.algorithm]["displays"] += rec.display_count

        for event in events:
            algorithm = event.context.get("algorithm")
            if algorithm is None and event.recommendation_id in by_id:
                algorithm = by_id[event.recommendation_id].algorithm
            if algorithm is None:
                continue
            if event.behavior_type == BehaviorType.RECOMMENDATION_CLICK:
                summary[algorithm]["clicks"] += 1
            else:
                summary[algorithm]["dismissals"] += 1

        for stats in summary.values():
            stats["click_through_rate"] = stats["clicks"] / max(1, stats["displays"])
            stats["dismissal_rate"] = stats["dismissals"] / max(1, stats["displays"])

        return {"time_range_days": time_range_days, "algorithms": dict(summary)}

    def get_statistics(self) -> Dict[str, Any]:
        """Get current processing statistics"""
        uptime = time.time() - self.start_time
        error_rate = self.processing_errors / max(1, self.tracked_events)

        return {
            "uptime_seconds": uptime,
            "tracked_events": self.tracked_events,
            "rejected_events": self.rejected_events,
            "persisted_events": self.persisted_events,
            "dropped_events": self.dropped_events,
            "processing_errors": self.processing_errors,
            "learning_updates": self.learning_updates,
            "flush_count": self.flush_count,
            "anomalies_detected": self.anomalies_detected,
            "error_rate": error_rate,
            "queue_size": len(self.queue),
            "is_running": self.is_running
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check"""
        stats = self.get_statistics()

        health = {
            "status": "healthy",
            "timestamp": time.time(),
            "stats": stats
        }

        if not self.is_running:
            health["status"] = "stopped"
        elif stats["error_rate"] > 0.1:  # More than 10% errors
            health["status"] = "degraded"
        elif stats["queue_size"] > self.config.batch_size * 10:
            health["status"] = "degraded"

        return health
