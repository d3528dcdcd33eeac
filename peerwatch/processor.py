"""
EventProcessor — the resume/replay gate and event dispatch.

Events carry no unique id, only a one-second timestamp. To read a source
that may overlap with what a checkpoint already reflects, the processor
keeps the timestamp and raw text of the last applied line:

  - older lines are discarded and close the gate,
  - newer lines are applied and open it,
  - lines in the same second are applied only while the gate is open;
    with the gate closed, meeting the exact last applied line re-opens
    it for the line after.

Admitted events are dispatched to the directory, ledger and groups.
Anomalies are queued in detection order for the caller to drain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from .decoder import decode_line, parse_event
from .errors import InvalidArgument
from .state import SystemState
from .types import Anomaly, Event, EventType, PurchaseEvent

logger = logging.getLogger("peerwatch.processor")

# Type alias for listeners that react to applied events
EventListener = Callable[[Event], None]


@dataclass
class IngestResult:
    """Per-source tally from EventProcessor.ingest()."""
    applied: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {"applied": self.applied, "skipped": self.skipped, "errors": self.errors}


class EventProcessor:
    """
    Single-threaded apply path over one SystemState.

    Usage::

        processor = EventProcessor(SystemState(window_size=50, network_depth=2))
        with open("stream_log.json") as f:
            processor.ingest(f, source="stream_log.json")
        for anomaly in processor.drain_anomalies():
            print(anomaly.to_dict())
    """

    def __init__(self, state: SystemState):
        self.state = state
        self._anomalies: list[Anomaly] = []
        self._listeners: list[EventListener] = []

    @property
    def processed_count(self) -> int:
        return self.state.processed_count

    @property
    def pending_anomalies(self) -> int:
        return len(self._anomalies)

    # ── Gate ───────────────────────────────────────────────────────────

    def admit(self, raw_line: str, timestamp: datetime, force: bool = False) -> bool:
        """Decide whether the event on `raw_line` should be applied."""
        cursor = self.state.cursor
        line = raw_line.rstrip("\r\n")

        if cursor.last_timestamp is None or force:
            cursor.last_timestamp = timestamp
            cursor.last_line = line
            cursor.gate_open = True

        if timestamp < cursor.last_timestamp:
            cursor.gate_open = False
            return False

        if timestamp > cursor.last_timestamp:
            cursor.last_timestamp = timestamp
            cursor.last_line = line
            cursor.gate_open = True
            return True

        if cursor.gate_open:
            cursor.last_line = line
            return True

        if line == cursor.last_line:
            # marker line: already applied, resume from the next one
            cursor.gate_open = True
        return False

    def close_gate(self):
        """Start discarding until the cursor is caught up again."""
        self.state.cursor.gate_open = False

    # ── Processing ─────────────────────────────────────────────────────

    def process_line(self, raw_line: str, force: bool = False) -> bool:
        """
        Decode one raw line, run it through the gate and apply it.
        Returns whether it was applied. Raises MalformedEvent for lines
        that can't be decoded; those never move the cursor.
        """
        event = parse_event(decode_line(raw_line))
        if not self.admit(raw_line, event.timestamp, force):
            return False
        self.apply(event)
        return True

    def ingest(
        self,
        lines: Iterable[str],
        source: str = "<stream>",
        force: bool = False,
        after_apply: Callable[["EventProcessor"], None] | None = None,
        first_line_no: int = 0,
    ) -> IngestResult:
        """
        Process every line of a source. Bad lines are logged and skipped.
        `after_apply` runs after each applied line (autosave, draining).
        """
        result = IngestResult()
        for line_no, line in enumerate(lines, start=first_line_no):
            if not line.strip():
                result.skipped += 1
                continue
            try:
                applied = self.process_line(line, force)
            except InvalidArgument as e:
                result.errors += 1
                logger.error(f"problem parsing line_no {line_no} in {source}: {e}")
                continue

            if applied:
                result.applied += 1
                if after_apply is not None:
                    after_apply(self)
            else:
                result.skipped += 1
        return result

    def apply(self, event: Event) -> Anomaly | None:
        """Dispatch one admitted event. Returns the anomaly it raised, if any."""
        state = self.state
        state.processed_count += 1
        anomaly = None

        if event.event_type is EventType.BEFRIEND:
            state.directory.add_friendship(event.id1, event.id2)
            state.groups.add_friendship(event.id1, event.id2, state.ledger)
        elif event.event_type is EventType.UNFRIEND:
            # directory edge goes first: the split check walks the new graph
            state.directory.remove_friendship(event.id1, event.id2)
            state.groups.remove_friendship(event.id1, event.id2, state.ledger, state.directory)
        else:
            anomaly = self._apply_purchase(event)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Listener error: {e}")
        return anomaly

    def drain_anomalies(self) -> list[Anomaly]:
        """Hand over queued anomalies in detection order."""
        drained, self._anomalies = self._anomalies, []
        return drained

    # ── Listeners ──────────────────────────────────────────────────────

    def add_listener(self, fn: EventListener):
        self._listeners.append(fn)

    # ── Internal ───────────────────────────────────────────────────────

    def _apply_purchase(self, event: PurchaseEvent) -> Anomaly | None:
        state = self.state
        uid = event.uid

        if uid not in state.directory:
            state.directory.create_user(uid)

        group_id = state.groups.group_of(uid)
        if group_id is None:
            group_id = state.groups.create_solo_group(uid)

        # judged against history that excludes the purchase itself
        anomaly = None
        if state.groups.is_anomalous(group_id, event.amount):
            stats = state.groups.stats_of(group_id)
            anomaly = Anomaly(
                uid=uid,
                timestamp=event.timestamp,
                amount=event.amount,
                mean=stats.mean,
                stdev=stats.stdev,
                group_id=group_id,
            )
            self._anomalies.append(anomaly)
            logger.warning(f"[ANOMALY] {anomaly.message}")

        state.groups.record_purchase(group_id, uid, event.amount, event.timestamp)
        state.ledger.add_purchase(uid, event.amount, event.timestamp)

        logger.debug(f"[PURCHASE] {uid} amount={event.amount:.2f} group={group_id}")
        return anomaly
