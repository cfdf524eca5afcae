"""
Typed Signal Bus

Decouples the ingestion pipeline from the components that react to it.
Each subscriber owns a bounded queue; delivery is best-effort and a full
queue drops the signal rather than blocking the publisher.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.models import Anomaly, BehaviorType


@dataclass
class Signal:
    """Base class for bus signals"""
    timestamp: float = field(default_factory=time.time, init=False)


@dataclass
class BehaviorTracked(Signal):
    """An event was accepted by the ingestion pipeline"""
    event_id: str
    user_id: str
    behavior_type: BehaviorType
    item_id: Optional[str] = None


@dataclass
class HighPriorityBehavior(Signal):
    """A high-priority behavior was persisted and learned from immediately"""
    event_id: str
    user_id: str
    behavior_type: BehaviorType
    item_id: Optional[str] = None


@dataclass
class AnomaliesDetected(Signal):
    """The periodic anomaly job flagged suspicious activity"""
    anomalies: List[Anomaly] = field(default_factory=list)


class SignalBus:
    """Fan-out of signals to bounded per-subscriber queues"""

    def __init__(self, default_maxsize: int = 1000):
        self.default_maxsize = default_maxsize
        self.subscribers: List[asyncio.Queue] = []
        self.published = 0
        self.dropped = 0
        self.logger = logging.getLogger(__name__)

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=maxsize or self.default_maxsize)
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    def publish(self, signal: Signal):
        """
        Deliver a signal to every subscriber without blocking

        Args:
            signal: Signal instance
        """
        self.published += 1
        for queue in self.subscribers:
            try:
                queue.put_nowait(signal)
            except asyncio.QueueFull:
                self.dropped += 1
                self.logger.warning(f"Subscriber queue full, dropped {type(signal).__name__}")

    def get_statistics(self):
        return {
            "subscribers": len(self.subscribers),
            "published": self.published,
            "dropped": self.dropped
        }
