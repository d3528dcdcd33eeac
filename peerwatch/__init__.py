"""
peerwatch — peer-group purchase anomaly detection

Follows a chronologically ordered stream of befriend / unfriend /
purchase events, keeps users in cohorts that track the friendship graph,
and flags purchases far outside their cohort's recent spending.

Quick start::

    from peerwatch import DetectionStack

    stack = DetectionStack.create(window_size=50, network_depth=2)

    stack.feed('{"event_type":"befriend", "timestamp":"2017-06-13 11:33:01", "id1":"1", "id2":"2"}')
    stack.feed('{"event_type":"purchase", "timestamp":"2017-06-13 11:33:02", "id":"1", "amount":"16.83"}')

    for anomaly in stack.anomalies():
        print(anomaly.to_dict())

    stack.save("log_output/snapshot.json")
"""

from __future__ import annotations

from pathlib import Path

from .types import (
    Anomaly,
    EventType,
    FriendshipEvent,
    PurchaseEvent,
    Sample,
)
from .errors import (
    CheckpointError,
    InvalidArgument,
    InvalidConfig,
    MalformedEvent,
    NumericError,
    PeerWatchError,
    UnsupportedOperation,
    VersionMismatch,
)
from .stats import RingBuffer, StatsWindow
from .directory import UserDirectory
from .ledger import UserLedger
from .groups import GroupRegistry
from .state import ReplayCursor, SystemState
from .checkpoint import FORMAT_VERSION, load_checkpoint, save_checkpoint
from .processor import EventProcessor, IngestResult
from .exporters import (
    BaseExporter,
    ConsoleExporter,
    JsonlExporter,
    MultiExporter,
    WebhookExporter,
)
from .config import Settings, load_settings, verify_network_depth, verify_window_size
from .pipeline import RunReport, run_pipeline


class DetectionStack:
    """
    All-in-one convenience class: SystemState + EventProcessor, with
    exporters fed from the anomaly queue.
    """

    def __init__(
        self,
        processor: EventProcessor,
        exporter: MultiExporter | None = None,
    ):
        self.processor = processor
        self.exporter = exporter or MultiExporter()
        self._flagged: list[Anomaly] = []

    @classmethod
    def create(
        cls,
        window_size: int = 10,
        network_depth: int = 2,
        sigma_level: int = 3,
        snapshot: str | Path | None = None,
        exporters: list[BaseExporter] | None = None,
    ) -> "DetectionStack":
        """
        Factory that validates parameters and wires the stack in one call.
        When `snapshot` names an existing checkpoint, it is restored; its
        window size, network depth and sigma level must match the arguments.
        """
        verify_window_size(window_size)
        verify_network_depth(network_depth)

        if snapshot is not None and Path(snapshot).is_file():
            state = load_checkpoint(snapshot)
            state.change_window_size(window_size)
            state.change_network_depth(network_depth)
            state.change_sigma_level(sigma_level)
        else:
            state = SystemState(window_size, network_depth, sigma_level)

        return cls(EventProcessor(state), MultiExporter(exporters))

    @property
    def state(self) -> SystemState:
        return self.processor.state

    # ── Convenience methods ────────────────────────────────────────────

    def feed(self, line: str, force: bool = False) -> bool:
        """Process one raw event line; exports any anomaly it raised."""
        applied = self.processor.process_line(line, force)
        if applied:
            self._export_pending()
        return applied

    def ingest(self, lines, source: str = "<stream>", force: bool = False) -> IngestResult:
        return self.processor.ingest(
            lines,
            source=source,
            force=force,
            after_apply=lambda _: self._export_pending(),
        )

    def anomalies(self) -> list[Anomaly]:
        """Everything flagged since the stack was created, in detection order."""
        return list(self._flagged)

    def save(self, path: str | Path):
        save_checkpoint(self.state, path)

    # ── Internal ───────────────────────────────────────────────────────

    def _export_pending(self):
        for anomaly in self.processor.drain_anomalies():
            self._flagged.append(anomaly)
            self.exporter.export_anomaly(anomaly)


__all__ = [
    "DetectionStack",
    "EventProcessor",
    "IngestResult",
    "SystemState",
    "ReplayCursor",
    "UserDirectory",
    "UserLedger",
    "GroupRegistry",
    "RingBuffer",
    "StatsWindow",
    "Sample",
    "Anomaly",
    "EventType",
    "FriendshipEvent",
    "PurchaseEvent",
    "FORMAT_VERSION",
    "save_checkpoint",
    "load_checkpoint",
    "BaseExporter",
    "ConsoleExporter",
    "JsonlExporter",
    "MultiExporter",
    "WebhookExporter",
    "Settings",
    "load_settings",
    "verify_window_size",
    "verify_network_depth",
    "RunReport",
    "run_pipeline",
    "PeerWatchError",
    "InvalidArgument",
    "MalformedEvent",
    "InvalidConfig",
    "UnsupportedOperation",
    "NumericError",
    "CheckpointError",
    "VersionMismatch",
]

__version__ = "0.1.0"
