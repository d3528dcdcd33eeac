"""
UserLedger — each user's own recent purchase history.

The ledger is never used to judge a purchase. It exists so a group's
window can be rebuilt from its members whenever membership changes.
"""

from __future__ import annotations

from datetime import datetime

from .stats import RingBuffer
from .types import Sample


class UserLedger:
    def __init__(self, window_size: int):
        self.window_size = window_size
        self._buffers: dict[str, RingBuffer] = {}

    def __contains__(self, uid: str) -> bool:
        return uid in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def add_purchase(self, uid: str, amount: float, timestamp: datetime) -> Sample | None:
        """Record a purchase; returns the sample pushed out of the user's window."""
        buffer = self._buffers.get(uid)
        if buffer is None:
            buffer = self._buffers[uid] = RingBuffer(self.window_size)
        return buffer.insert(Sample(timestamp, amount))

    def history(self, uid: str) -> list[Sample]:
        """The user's recent purchases oldest first (empty if none)."""
        buffer = self._buffers.get(uid)
        if buffer is None:
            return []
        return buffer.ordered_snapshot()

    def users(self) -> list[str]:
        return list(self._buffers)

    # ── Persistence ────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, list[Sample]]:
        return {uid: buffer.ordered_snapshot() for uid, buffer in self._buffers.items()}

    @classmethod
    def from_dict(cls, window_size: int, data: dict[str, list[Sample]]) -> "UserLedger":
        ledger = cls(window_size)
        for uid, samples in data.items():
            buffer = ledger._buffers[uid] = RingBuffer(window_size)
            buffer.extend(samples)
        return ledger
