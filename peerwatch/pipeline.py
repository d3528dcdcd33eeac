"""
Batch-then-stream driver.

A run restores the last checkpoint (when there is a usable one), replays
the batch log to build up history, checkpoints, then reads the stream
log and exports every purchase flagged there. Because both passes go
through the replay gate, re-running over the same files never applies
an event twice.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .checkpoint import load_checkpoint, save_checkpoint
from .config import Settings, verify_network_depth, verify_window_size
from .decoder import decode_line, parse_header
from .errors import CheckpointError, MalformedEvent, UnsupportedOperation
from .exporters import BaseExporter, JsonlExporter, MultiExporter
from .processor import EventListener, EventProcessor, IngestResult
from .state import SystemState

logger = logging.getLogger("peerwatch.pipeline")


@dataclass
class RunReport:
    """Outcome of one pipeline run."""
    resumed: bool = False
    batch_applied: int = 0
    stream_applied: int = 0
    anomalies: int = 0
    skipped: int = 0
    errors: int = 0
    groups: int = 0
    elapsed_seconds: float = 0.0
    timings: dict[str, float] = field(default_factory=dict)

    def add(self, result: IngestResult):
        self.skipped += result.skipped
        self.errors += result.errors

    def to_dict(self) -> dict:
        return {
            "resumed": self.resumed,
            "batch_applied": self.batch_applied,
            "stream_applied": self.stream_applied,
            "anomalies": self.anomalies,
            "skipped": self.skipped,
            "errors": self.errors,
            "groups": self.groups,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "timings": {k: round(v, 3) for k, v in self.timings.items()},
        }


def restore_state(settings: Settings) -> tuple[SystemState, bool]:
    """
    Load the configured checkpoint if possible. Returns the state and
    whether it came from the checkpoint. Any problem with the checkpoint
    falls back to a fresh state.
    """
    fresh = SystemState(settings.window_size, settings.network_depth)
    if not settings.use_snapshot:
        logger.warning("Snapshot loading is disabled; the batch file will be reread in full")
        return fresh, False
    if not Path(settings.snapshot_file).is_file():
        logger.info(f"No snapshot at {settings.snapshot_file}; starting fresh")
        return fresh, False

    try:
        state = load_checkpoint(settings.snapshot_file)
        state.change_network_depth(settings.network_depth)
        state.change_window_size(settings.window_size)
    except (CheckpointError, UnsupportedOperation) as e:
        logger.error(f"snapshot unavailable, starting fresh: {e}")
        return fresh, False
    return state, True


def _apply_header(
    processor: EventProcessor,
    header: tuple[int, int],
    settings: Settings,
):
    network_depth, window_size = header
    verify_window_size(window_size)
    verify_network_depth(network_depth)

    if settings.override_batch_params:
        logger.debug(
            f"Ignoring batch header D={network_depth} T={window_size}; "
            f"using window_size={settings.window_size} network_depth={settings.network_depth}"
        )
        return

    state = processor.state
    pristine = state.processed_count == 0 and state.cursor.last_timestamp is None
    if pristine and (window_size, network_depth) != (state.window_size, state.network_depth):
        logger.info(f"Using batch header parameters D={network_depth} T={window_size}")
        processor.state = SystemState(window_size, network_depth, state.sigma_level)
        return
    state.change_window_size(window_size)
    state.change_network_depth(network_depth)


class _Autosave:
    def __init__(self, every: int, path: str):
        self.every = every
        self.path = path

    def __call__(self, processor: EventProcessor) -> bool:
        if self.every > 0 and processor.processed_count % self.every == 0:
            logger.info(f"auto-saving snapshot (+{processor.processed_count})")
            save_checkpoint(processor.state, self.path)
            return True
        return False


def run_batch(processor: EventProcessor, settings: Settings) -> IngestResult:
    """Replay the batch log. Anomalies found here only feed history."""
    path = Path(settings.batch_file)
    if not path.is_file():
        logger.error(f"{path} does not exist! Nothing to initialize with!")
        return IngestResult()

    autosave = _Autosave(settings.autosave_every, settings.snapshot_file)

    def after_apply(proc: EventProcessor):
        proc.drain_anomalies()
        autosave(proc)

    logger.info(f"Beginning read of batch file {path}")
    with open(path) as f:
        lines: Iterable[str] = f
        first_line_no = 0
        first = next(f, None)
        header = None
        if first is not None:
            try:
                header = parse_header(decode_line(first))
            except MalformedEvent:
                header = None
            if header is not None:
                _apply_header(processor, header, settings)
                first_line_no = 1
            else:
                lines = itertools.chain([first], f)

        return processor.ingest(
            lines,
            source=str(path),
            after_apply=after_apply,
            first_line_no=first_line_no,
        )


def run_stream(
    processor: EventProcessor,
    settings: Settings,
    exporter: BaseExporter,
) -> tuple[IngestResult, int]:
    """
    Read the stream log, exporting every flagged purchase. Returns
    (result, flagged).

    With `copy_stream_lines` set, every applied line is also written to
    `settings.stream_copy_file`, which is emptied at each autosave: it
    holds the stream lines applied since the last periodic checkpoint.
    """
    path = Path(settings.stream_file)
    if not path.is_file():
        logger.error(f"{path} does not exist! Nothing to process!")
        return IngestResult(), 0

    autosave = _Autosave(settings.autosave_every, settings.snapshot_file)
    flagged = 0
    copy = open(settings.stream_copy_file, "w") if settings.copy_stream_lines else None

    def after_apply(proc: EventProcessor):
        nonlocal flagged
        for anomaly in proc.drain_anomalies():
            exporter.export_anomaly(anomaly)
            flagged += 1
        if copy is not None:
            copy.write(proc.state.cursor.last_line + "\n")
        if autosave(proc) and copy is not None:
            copy.seek(0)
            copy.truncate()

    logger.info(f"Beginning read of stream file {path}")
    try:
        with open(path) as f:
            result = processor.ingest(f, source=str(path), after_apply=after_apply)
    finally:
        if copy is not None:
            copy.close()
    return result, flagged


def run_pipeline(
    settings: Settings,
    exporters: list[BaseExporter] | None = None,
    listeners: list[EventListener] | None = None,
) -> RunReport:
    """
    Full run: restore, batch, checkpoint, stream, checkpoint.

    Flagged purchases always go to `settings.flagged_file` (truncated at
    the start of the stream pass) and to any extra `exporters`.
    """
    settings.validate()
    report = RunReport()
    start = last = time.time()

    def lap(name: str):
        nonlocal last
        now = time.time()
        report.timings[name] = now - last
        logger.info(f"{name} time: {now - last:.3f}s")
        last = now

    logger.info(
        f"Beginning anomaly detection with base config: "
        f"window_size={settings.window_size} network_depth={settings.network_depth}"
    )

    state, report.resumed = restore_state(settings)
    processor = EventProcessor(state)
    for listener in listeners or []:
        processor.add_listener(listener)
    lap("restore")

    batch = run_batch(processor, settings)
    report.batch_applied = batch.applied
    report.add(batch)
    save_checkpoint(processor.state, settings.snapshot_file)
    lap("batch")

    exporter = MultiExporter([JsonlExporter(settings.flagged_file, truncate=True)])
    for extra in exporters or []:
        exporter.add(extra)

    stream, report.anomalies = run_stream(processor, settings, exporter)
    report.stream_applied = stream.applied
    report.add(stream)
    lap("stream")

    save_checkpoint(processor.state, settings.snapshot_file)
    lap("final snapshot")

    report.groups = len(processor.state.groups.group_ids())
    report.elapsed_seconds = time.time() - start
    exporter.export_report(report)
    exporter.flush()

    logger.info(
        f"Run finished: batch={report.batch_applied} stream={report.stream_applied} "
        f"flagged={report.anomalies} errors={report.errors} "
        f"elapsed={report.elapsed_seconds:.2f}s"
    )
    return report
