"""
Exporters — pluggable sinks for flagged purchases.

The exporter interface is simple: implement `export_anomaly(anomaly)` and
optionally `export_report(report)`. The pipeline hands every anomaly
found in the stream pass to its exporters, in detection order, and the
final run report once the run is over.

Built-in exporters:
  - JsonlExporter    — append flagged purchases to a JSON-lines file (default)
  - WebhookExporter  — POST batches of flagged purchases to an HTTP endpoint
  - ConsoleExporter  — pretty-print to stdout (debugging)
  - MultiExporter    — fan-out to multiple exporters

Roll your own:
  class MyExporter(BaseExporter):
      def export_anomaly(self, anomaly): ...
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .pipeline import RunReport
    from .types import Anomaly

logger = logging.getLogger("peerwatch.exporters")


class BaseExporter:
    """
    Abstract base for all exporters.
    Subclass and implement `export_anomaly` at minimum.
    """

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        """Called once per flagged purchase."""
        raise NotImplementedError

    def export_report(self, report: "RunReport") -> None:
        """Called with the run summary at the end of a pipeline run. Optional."""
        pass

    def flush(self) -> None:
        """Flush any buffered data. Called on shutdown."""
        pass

    def close(self) -> None:
        """Clean up resources."""
        pass


class JsonlExporter(BaseExporter):
    """
    Append flagged purchases as JSON lines to a local file, in the same
    record layout as the input logs plus `mean` and `sd`.
    """

    def __init__(self, path: str | Path, truncate: bool = False):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        if truncate:
            if self._path.exists():
                logger.warning(f"{self._path} exists; overwriting file")
            self._path.write_text("")

    @property
    def path(self) -> Path:
        return self._path

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        with self._lock:
            try:
                with open(self._path, "a") as f:
                    f.write(json.dumps(anomaly.to_dict()) + "\n")
            except OSError as e:
                logger.warning(f"JsonlExporter write failed: {e}")


class WebhookExporter(BaseExporter):
    """
    POST flagged purchases to an HTTP endpoint as JSON.
    Batches and retries on the next flush. Requires `httpx`.

    Usage::

        exporter = WebhookExporter(
            url="https://alerts.example.com/api/v1/flagged",
            headers={"Authorization": "Bearer xxx"},
        )
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        batch_size: int = 10,
        timeout: float = 10.0,
        client=None,
    ):
        self._url = url
        self._headers = headers or {}
        self._batch_size = batch_size
        self._timeout = timeout
        self._buffer: list[dict] = []
        self._lock = threading.Lock()
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                import httpx
            except ImportError:
                raise ImportError(
                    "WebhookExporter requires httpx. "
                    "Install with: pip install peerwatch[webhook]"
                )
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        with self._lock:
            self._buffer.append(anomaly.to_dict())
            if len(self._buffer) >= self._batch_size:
                self._send_batch()

    def flush(self) -> None:
        with self._lock:
            self._send_batch()

    def close(self) -> None:
        self.flush()
        if self._client is not None:
            self._client.close()

    def _send_batch(self):
        """Send buffered anomalies. Must be called with lock held."""
        if not self._buffer:
            return
        batch = self._buffer[:]
        self._buffer.clear()

        try:
            client = self._get_client()
            resp = client.post(
                self._url,
                json={"flagged_purchases": batch},
                headers=self._headers,
            )
            if resp.status_code >= 400:
                logger.warning(
                    f"Webhook POST failed: {resp.status_code} {resp.text[:200]}"
                )
        except ImportError:
            self._buffer = batch + self._buffer
            raise
        except Exception as e:
            logger.warning(f"Webhook POST error: {e}")
            # keep unsent items for the next flush
            self._buffer = batch + self._buffer


class ConsoleExporter(BaseExporter):
    """
    Pretty-print flagged purchases to stdout. Useful for development.
    """

    def __init__(self, color: bool = True):
        self._color = color and hasattr(sys.stdout, "isatty") and sys.stdout.isatty()

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        if self._color:
            color, reset = "\033[31m", "\033[0m"
        else:
            color = reset = ""

        record = anomaly.to_dict()
        print(
            f"[peerwatch] {color}"
            f"FLAGGED {record['timestamp']} user={record['id']} "
            f"${record['amount']} | mean=${record['mean']} sd=${record['sd']}"
            f"{reset}"
        )

    def export_report(self, report: "RunReport") -> None:
        print(
            f"[peerwatch] RUN: "
            f"batch={report.batch_applied} "
            f"stream={report.stream_applied} "
            f"flagged={report.anomalies} "
            f"errors={report.errors} "
            f"elapsed={report.elapsed_seconds:.2f}s"
        )


class MultiExporter(BaseExporter):
    """
    Fan-out to multiple exporters. Errors in one don't block others.

    Usage::

        multi = MultiExporter([
            JsonlExporter("log_output/flagged_purchases.json"),
            WebhookExporter("https://..."),
            ConsoleExporter(),
        ])
    """

    def __init__(self, exporters: list[BaseExporter] | None = None):
        self._exporters = list(exporters or [])

    def add(self, exporter: BaseExporter):
        self._exporters.append(exporter)

    def __len__(self) -> int:
        return len(self._exporters)

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        for exp in self._exporters:
            try:
                exp.export_anomaly(anomaly)
            except Exception as e:
                logger.warning(f"{exp.__class__.__name__}.export_anomaly error: {e}")

    def export_report(self, report: "RunReport") -> None:
        for exp in self._exporters:
            try:
                exp.export_report(report)
            except Exception as e:
                logger.warning(f"{exp.__class__.__name__}.export_report error: {e}")

    def flush(self) -> None:
        for exp in self._exporters:
            try:
                exp.flush()
            except Exception as e:
                logger.warning(f"{exp.__class__.__name__}.flush error: {e}")

    def close(self) -> None:
        for exp in self._exporters:
            try:
                exp.close()
            except Exception as e:
                logger.warning(f"{exp.__class__.__name__}.close error: {e}")
