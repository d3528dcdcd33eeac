"""
Tests for checkpoints, the batch/stream pipeline, exporters, settings and CLI.
"""

import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from peerwatch import (
    FORMAT_VERSION,
    Anomaly,
    BaseExporter,
    CheckpointError,
    ConsoleExporter,
    EventProcessor,
    InvalidConfig,
    JsonlExporter,
    MultiExporter,
    Settings,
    SystemState,
    VersionMismatch,
    WebhookExporter,
    load_checkpoint,
    load_settings,
    run_pipeline,
    save_checkpoint,
)
from peerwatch.__main__ import main as cli_main

from test_peerwatch import at, befriend, purchase, unfriend

BATCH = [
    json.dumps({"D": "2", "T": "3"}),
    befriend(1, "1", "2"),
    purchase(2, "1", 10.0),
    purchase(3, "2", 12.0),
    purchase(4, "1", 11.0),
]

STREAM = [
    purchase(60, "2", 1000.0),
    purchase(61, "1", 11.5),
]


def _write(path: Path, lines):
    path.write_text("".join(line + "\n" for line in lines))


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)
        self.batch = self.tmpdir / "batch_log.json"
        self.stream = self.tmpdir / "stream_log.json"
        self.flagged = self.tmpdir / "out" / "flagged_purchases.json"
        self.snapshot = self.tmpdir / "out" / "snapshot.json"
        _write(self.batch, BATCH)
        _write(self.stream, STREAM)

    def tearDown(self):
        self._tmp.cleanup()

    def settings(self, **kwargs):
        values = dict(
            batch_file=str(self.batch),
            stream_file=str(self.stream),
            flagged_file=str(self.flagged),
            snapshot_file=str(self.snapshot),
            window_size=3,
            network_depth=2,
            autosave_every=0,
        )
        values.update(kwargs)
        return Settings(**values)

    def flagged_records(self):
        with open(self.flagged) as f:
            return [json.loads(line) for line in f if line.strip()]


class TestCheckpoint(PipelineTestCase):
    def _state(self):
        processor = EventProcessor(SystemState(window_size=3, network_depth=2))
        processor.ingest(BATCH[1:] + [befriend(5, "3", "4"), unfriend(6, "3", "4")])
        return processor.state

    def test_round_trip(self):
        state = self._state()
        save_checkpoint(state, self.snapshot)
        restored = load_checkpoint(self.snapshot)

        self.assertEqual(restored.window_size, 3)
        self.assertEqual(restored.network_depth, 2)
        self.assertEqual(restored.processed_count, state.processed_count)
        self.assertEqual(restored.cursor.last_timestamp, state.cursor.last_timestamp)
        self.assertEqual(restored.cursor.last_line, state.cursor.last_line)
        self.assertFalse(restored.cursor.gate_open)

        self.assertEqual(restored.directory.to_dict(), state.directory.to_dict())
        self.assertEqual(restored.ledger.history("1"), state.ledger.history("1"))
        self.assertEqual(restored.groups.group_ids(), state.groups.group_ids())
        self.assertEqual(restored.groups.last_group_id, state.groups.last_group_id)

        group_id = state.groups.group_of("1")
        self.assertEqual(restored.groups.members_of(group_id), {"1", "2"})
        self.assertEqual(
            restored.groups.window(group_id).ordered_snapshot(),
            state.groups.window(group_id).ordered_snapshot(),
        )
        self.assertAlmostEqual(
            restored.groups.stats_of(group_id).stdev,
            state.groups.stats_of(group_id).stdev,
        )
        self.assertFalse(Path(str(self.snapshot) + ".tmp").exists())

    def test_version_mismatch(self):
        save_checkpoint(self._state(), self.snapshot)
        doc = json.loads(self.snapshot.read_text())
        doc["version"] = "000_00_00"
        self.snapshot.write_text(json.dumps(doc))

        with self.assertRaises(VersionMismatch):
            load_checkpoint(self.snapshot)
        self.assertNotEqual(doc["version"], FORMAT_VERSION)

    def test_missing_or_corrupt(self):
        with self.assertRaises(CheckpointError):
            load_checkpoint(self.tmpdir / "nope.json")

        self.snapshot.parent.mkdir(parents=True, exist_ok=True)
        self.snapshot.write_text("{not json")
        with self.assertRaises(CheckpointError):
            load_checkpoint(self.snapshot)

        self.snapshot.write_text(json.dumps({"version": FORMAT_VERSION}))
        with self.assertRaises(CheckpointError):
            load_checkpoint(self.snapshot)

    def test_resume_after_restore(self):
        processor = EventProcessor(SystemState(window_size=3, network_depth=2))
        processor.ingest(BATCH[1:])
        save_checkpoint(processor.state, self.snapshot)

        restored = EventProcessor(load_checkpoint(self.snapshot))
        result = restored.ingest(BATCH[1:] + [purchase(4, "2", 9.0), purchase(5, "2", 9.5)])
        self.assertEqual(result.applied, 2)
        self.assertEqual(restored.processed_count, 6)


class TestPipeline(PipelineTestCase):
    def test_first_run(self):
        report = run_pipeline(self.settings())

        self.assertFalse(report.resumed)
        self.assertEqual(report.batch_applied, 4)
        self.assertEqual(report.stream_applied, 2)
        self.assertEqual(report.anomalies, 1)
        self.assertEqual(report.errors, 0)
        self.assertEqual(report.groups, 1)

        self.assertEqual(self.flagged_records(), [{
            "event_type": "purchase",
            "timestamp": "2017-06-13 11:34:00",
            "id": "2",
            "amount": "1000.00",
            "mean": "11.00",
            "sd": "0.82",
        }])
        self.assertTrue(self.snapshot.exists())

    def test_rerun_applies_nothing_twice(self):
        run_pipeline(self.settings())
        report = run_pipeline(self.settings())

        self.assertTrue(report.resumed)
        self.assertEqual(report.batch_applied, 0)
        self.assertEqual(report.stream_applied, 0)
        self.assertEqual(report.anomalies, 0)
        self.assertEqual(self.flagged_records(), [])
        self.assertEqual(load_checkpoint(self.snapshot).processed_count, 6)

    def test_appended_stream_resumes_mid_second(self):
        run_pipeline(self.settings())
        _write(self.stream, STREAM + [purchase(61, "2", 12.0), purchase(90, "1", 5000.0)])

        report = run_pipeline(self.settings())
        self.assertEqual(report.stream_applied, 2)
        self.assertEqual(report.anomalies, 1)
        self.assertEqual(self.flagged_records()[0]["amount"], "5000.00")

    def test_version_mismatch_falls_back_to_fresh_state(self):
        run_pipeline(self.settings())
        doc = json.loads(self.snapshot.read_text())
        doc["version"] = "999_00_00"
        self.snapshot.write_text(json.dumps(doc))

        report = run_pipeline(self.settings())
        self.assertFalse(report.resumed)
        self.assertEqual(report.batch_applied, 4)

    def test_parameter_mismatch_falls_back_to_fresh_state(self):
        run_pipeline(self.settings())
        report = run_pipeline(self.settings(window_size=4))
        self.assertFalse(report.resumed)
        self.assertEqual(load_checkpoint(self.snapshot).window_size, 4)

    def test_snapshot_disabled(self):
        run_pipeline(self.settings())
        report = run_pipeline(self.settings(use_snapshot=False))
        self.assertFalse(report.resumed)
        self.assertEqual(report.batch_applied, 4)
        self.assertEqual(report.anomalies, 1)

    def test_missing_inputs_are_not_fatal(self):
        report = run_pipeline(self.settings(
            batch_file=str(self.tmpdir / "missing_batch.json"),
            stream_file=str(self.tmpdir / "missing_stream.json"),
        ))
        self.assertEqual(report.batch_applied, 0)
        self.assertEqual(report.stream_applied, 0)
        self.assertTrue(self.snapshot.exists())

    def test_bad_lines_are_skipped(self):
        _write(self.stream, [STREAM[0], "{broken", STREAM[1]])
        report = run_pipeline(self.settings())
        self.assertEqual(report.stream_applied, 2)
        self.assertEqual(report.errors, 1)

    def test_batch_without_header(self):
        _write(self.batch, BATCH[1:])
        report = run_pipeline(self.settings())
        self.assertEqual(report.batch_applied, 4)
        self.assertEqual(report.anomalies, 1)

    def test_batch_header_parameters(self):
        run_pipeline(self.settings(window_size=10, override_batch_params=False))
        state = load_checkpoint(self.snapshot)
        self.assertEqual(state.window_size, 3)
        self.assertEqual(state.network_depth, 2)

    def test_autosave(self):
        run_pipeline(self.settings(autosave_every=1))
        self.assertEqual(load_checkpoint(self.snapshot).processed_count, 6)

    def test_stream_copy(self):
        settings = self.settings(copy_stream_lines=True)
        run_pipeline(settings)
        copy = Path(settings.stream_copy_file)
        self.assertEqual(copy.name, "stream_log.json.applied")
        self.assertEqual(copy.read_text(), "".join(line + "\n" for line in STREAM))

    def test_stream_copy_is_emptied_at_autosave(self):
        # the batch pass applies 4 events, so the first stream line triggers the save
        settings = self.settings(copy_stream_lines=True, autosave_every=5)
        run_pipeline(settings)
        self.assertEqual(Path(settings.stream_copy_file).read_text(), STREAM[1] + "\n")

    def test_stream_copy_disabled(self):
        settings = self.settings()
        run_pipeline(settings)
        self.assertFalse(Path(settings.stream_copy_file).exists())

    def test_invalid_settings(self):
        with self.assertRaises(InvalidConfig):
            run_pipeline(self.settings(window_size=1))
        with self.assertRaises(InvalidConfig):
            run_pipeline(self.settings(network_depth=0))

    def test_extra_exporters_and_listeners(self):
        exported = []
        events = []

        class CapturingExporter(BaseExporter):
            def export_anomaly(self, anomaly):
                exported.append(anomaly)

        report = run_pipeline(
            self.settings(),
            exporters=[CapturingExporter()],
            listeners=[events.append],
        )
        self.assertEqual(len(exported), report.anomalies)
        self.assertEqual(len(events), 6)


def _anomaly(amount=42.0):
    return Anomaly(uid="7", timestamp=at(0), amount=amount, mean=10.0, stdev=2.5, group_id=1)


class TestExporters(unittest.TestCase):
    def test_jsonl_exporter(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "flagged.json")
            exporter = JsonlExporter(path)
            exporter.export_anomaly(_anomaly())
            exporter.export_anomaly(_anomaly(7.0))

            with open(path) as f:
                lines = f.readlines()
            self.assertEqual(len(lines), 2)
            first = json.loads(lines[0])
            self.assertEqual(first["amount"], "42.00")
            self.assertEqual(first["sd"], "2.50")

            JsonlExporter(path, truncate=True)
            with open(path) as f:
                self.assertEqual(f.read(), "")

    def test_console_exporter(self):
        exporter = ConsoleExporter(color=False)
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            exporter.export_anomaly(_anomaly())

        output = buf.getvalue()
        self.assertIn("$42.00", output)
        self.assertIn("user=7", output)

    def test_multi_exporter_isolates_errors(self):
        received = []

        class BadExporter(BaseExporter):
            def export_anomaly(self, anomaly):
                raise RuntimeError("boom")

        class GoodExporter(BaseExporter):
            def export_anomaly(self, anomaly):
                received.append(anomaly)

        multi = MultiExporter([BadExporter(), GoodExporter()])
        multi.export_anomaly(_anomaly())  # should not raise

        self.assertEqual(len(received), 1)
        self.assertEqual(len(multi), 2)

    def test_webhook_exporter_batches(self):
        client = mock.Mock()
        client.post.return_value = mock.Mock(status_code=200, text="ok")

        exporter = WebhookExporter("https://example.invalid/hook", batch_size=2, client=client)
        exporter.export_anomaly(_anomaly())
        client.post.assert_not_called()
        exporter.export_anomaly(_anomaly(8.0))

        client.post.assert_called_once()
        payload = client.post.call_args.kwargs["json"]
        self.assertEqual(len(payload["flagged_purchases"]), 2)
        self.assertEqual(exporter.pending, 0)

    def test_webhook_exporter_keeps_unsent(self):
        client = mock.Mock()
        client.post.side_effect = RuntimeError("connection refused")

        exporter = WebhookExporter("https://example.invalid/hook", batch_size=10, client=client)
        exporter.export_anomaly(_anomaly())
        exporter.flush()
        self.assertEqual(exporter.pending, 1)

    def test_webhook_exporter_keeps_batch_without_httpx(self):
        exporter = WebhookExporter("https://example.invalid/hook", batch_size=2)
        with mock.patch.object(exporter, "_get_client", side_effect=ImportError("no httpx")):
            exporter.export_anomaly(_anomaly())
            with self.assertRaises(ImportError):
                exporter.export_anomaly(_anomaly(8.0))
            self.assertEqual(exporter.pending, 2)

            MultiExporter([exporter]).flush()
            self.assertEqual(exporter.pending, 2)


try:
    import prometheus_client  # noqa: F401
    HAVE_PROMETHEUS = True
except ImportError:
    HAVE_PROMETHEUS = False


@unittest.skipUnless(HAVE_PROMETHEUS, "prometheus_client not installed")
class TestPrometheusExporter(unittest.TestCase):
    def test_counters(self):
        from peerwatch.prometheus import PrometheusExporter
        from peerwatch.types import PurchaseEvent

        prom = PrometheusExporter()
        prom.on_event(PurchaseEvent(at(0), "1", 5.0))
        prom.on_event(PurchaseEvent(at(1), "1", 6.0))
        prom.export_anomaly(_anomaly())

        self.assertEqual(prom.sample("peerwatch_events_total", {"event_type": "purchase"}), 2.0)
        self.assertEqual(prom.sample("peerwatch_anomalies_total"), 1.0)


class TestSettings(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.env_file = Path(self._tmp.name) / ".env"

    def tearDown(self):
        self._tmp.cleanup()

    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings(env_file=self.env_file)
        self.assertEqual(settings.window_size, 10)
        self.assertEqual(settings.network_depth, 2)
        self.assertTrue(settings.use_snapshot)
        self.assertIsNone(settings.prometheus_port)

    def test_env_file_and_overrides(self):
        self.env_file.write_text(
            "PEERWATCH_WINDOW_SIZE=50\n"
            "PEERWATCH_NETWORK_DEPTH=3\n"
            "PEERWATCH_USE_SNAPSHOT=false\n"
            "PEERWATCH_COPY_STREAM_LINES=yes\n"
            "PEERWATCH_LOG_LEVEL=debug\n"
        )
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings(env_file=self.env_file, network_depth=4, batch_file=None)

        self.assertEqual(settings.window_size, 50)
        self.assertEqual(settings.network_depth, 4)
        self.assertFalse(settings.use_snapshot)
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertTrue(settings.copy_stream_lines)
        self.assertEqual(settings.batch_file, "log_input/batch_log.json")

    def test_validation(self):
        with mock.patch.dict(os.environ, {"PEERWATCH_WINDOW_SIZE": "many"}, clear=True):
            with self.assertRaises(InvalidConfig):
                load_settings(env_file=self.env_file)

        with self.assertRaises(InvalidConfig):
            Settings(window_size=1).validate()
        with self.assertRaises(InvalidConfig):
            Settings(network_depth=0).validate()
        self.assertEqual(Settings(window_size=2, network_depth=1).validate().window_size, 2)


class TestCLI(PipelineTestCase):
    def _run(self, *argv):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf), \
                mock.patch.dict(os.environ, {}, clear=True), \
                mock.patch("peerwatch.__main__.setup_logging") as setup:
            code = cli_main(list(argv))
        self.setup_calls = setup.call_args_list
        return code, buf.getvalue()

    def test_run_and_inspect(self):
        code, _ = self._run(
            "run", str(self.batch), str(self.stream), str(self.flagged),
            "--snapshot", str(self.snapshot),
            "-T", "3", "-D", "2",
            "--env-file", str(self.tmpdir / "missing.env"),
            "--log-level", "WARNING",
        )
        self.assertEqual(code, 0)
        self.assertEqual(len(self.flagged_records()), 1)
        self.assertEqual(self.setup_calls[0].args, ("WARNING", None))

        code, output = self._run("inspect", str(self.snapshot), "--json")
        self.assertEqual(code, 0)
        summary = json.loads(output)
        self.assertEqual(summary["window_size"], 3)
        self.assertEqual(summary["processed_count"], 6)
        self.assertEqual(summary["version"], FORMAT_VERSION)

    def test_run_rejects_bad_window(self):
        code, _ = self._run(
            "run", str(self.batch), str(self.stream), str(self.flagged),
            "-T", "1", "--env-file", str(self.tmpdir / "missing.env"),
        )
        self.assertEqual(code, 2)

    def test_inspect_missing(self):
        code, _ = self._run("inspect", str(self.tmpdir / "nope.json"))
        self.assertEqual(code, 1)

    def test_version(self):
        code, output = self._run("version")
        self.assertEqual(code, 0)
        self.assertIn("peerwatch", output)


if __name__ == "__main__":
    unittest.main()
