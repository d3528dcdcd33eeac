"""
Core data types for peerwatch.

Events arrive as typed records (friendship changes and purchases); the
statistics layer works on Samples; detections leave the system as
Anomaly descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class EventType(str, Enum):
    BEFRIEND = "befriend"
    UNFRIEND = "unfriend"
    PURCHASE = "purchase"


@dataclass(frozen=True)
class Sample:
    """One recorded purchase amount. `uid` is set for group-window samples."""
    timestamp: datetime
    amount: float
    uid: str | None = None


@dataclass(frozen=True)
class FriendshipEvent:
    event_type: EventType
    timestamp: datetime
    id1: str
    id2: str


@dataclass(frozen=True)
class PurchaseEvent:
    timestamp: datetime
    uid: str
    amount: float

    @property
    def event_type(self) -> EventType:
        return EventType.PURCHASE


Event = Union[FriendshipEvent, PurchaseEvent]


@dataclass(frozen=True)
class Anomaly:
    """
    A purchase flagged as outside its group's spending interval.

    `mean` and `stdev` describe the group window the purchase was judged
    against, before the purchase itself was recorded.
    """
    uid: str
    timestamp: datetime
    amount: float
    mean: float
    stdev: float
    group_id: int | None = None

    @property
    def message(self) -> str:
        return (
            f"user={self.uid} amount={self.amount:.2f} "
            f"at {self.timestamp.strftime(TIMESTAMP_FORMAT)} "
            f"(group={self.group_id}, mean={self.mean:.2f}, sd={self.stdev:.2f})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": EventType.PURCHASE.value,
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "id": self.uid,
            "amount": f"{self.amount:.2f}",
            "mean": f"{self.mean:.2f}",
            "sd": f"{self.stdev:.2f}",
        }
