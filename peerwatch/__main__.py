"""
CLI entry point — run with `python -m peerwatch`.

Runs the batch-then-stream detection pipeline and inspects checkpoints
from the terminal.
"""

from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: str | None = None):
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        # 10 oldest logfiles, none bigger than 1MB
        handlers.append(
            logging.handlers.RotatingFileHandler(log_file, maxBytes=1_024_000, backupCount=10)
        )
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def cmd_run(args):
    """Run batch + stream detection and write flagged purchases."""
    from .config import load_settings
    from .errors import InvalidConfig
    from .exporters import ConsoleExporter, WebhookExporter
    from .pipeline import run_pipeline

    try:
        settings = load_settings(
            env_file=args.env_file,
            batch_file=args.batch,
            stream_file=args.stream,
            flagged_file=args.flagged,
            snapshot_file=args.snapshot,
            use_snapshot=args.use_snapshot,
            autosave_every=args.autosave_every,
            copy_stream_lines=args.copy_stream_lines,
            window_size=args.window_size,
            network_depth=args.network_depth,
            log_level=args.log_level,
            log_file=args.log_file,
            webhook_url=args.webhook_url,
            prometheus_port=args.prometheus_port,
        ).validate()
    except InvalidConfig as e:
        print(f"problem with current parameters: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level, settings.log_file)

    exporters = []
    listeners = []
    if args.console:
        exporters.append(ConsoleExporter(color=True))
    if settings.webhook_url:
        exporters.append(WebhookExporter(settings.webhook_url))
    if settings.prometheus_port:
        from .prometheus import PrometheusExporter

        prom = PrometheusExporter(port=settings.prometheus_port)
        exporters.append(prom)
        listeners.append(prom.on_event)

    try:
        report = run_pipeline(settings, exporters=exporters, listeners=listeners)
    finally:
        for exporter in exporters:
            exporter.close()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_inspect(args):
    """Show a summary of a checkpoint file."""
    from .checkpoint import FORMAT_VERSION, load_checkpoint
    from .errors import CheckpointError

    try:
        state = load_checkpoint(args.snapshot)
    except CheckpointError as e:
        print(f"Can't read checkpoint: {e}", file=sys.stderr)
        return 1

    summary = state.summary()
    if args.json:
        print(json.dumps({"version": FORMAT_VERSION, **summary}, indent=2))
        return 0

    print(f"=== peerwatch checkpoint ===")
    print(f"File:            {args.snapshot}")
    print(f"Version:         {FORMAT_VERSION}")
    print(f"Window size:     {summary['window_size']}")
    print(f"Network depth:   {summary['network_depth']}")
    print(f"Users:           {summary['users']}")
    print(f"With purchases:  {summary['users_with_purchases']}")
    print(f"Groups:          {summary['groups']} (last id {summary['last_group_id']})")
    print(f"Processed:       {summary['processed_count']}")
    print(f"Last timestamp:  {summary['last_timestamp'] or '-'}")

    if args.groups:
        print(f"\n--- Groups ---")
        for group_id in state.groups.group_ids():
            stats = state.groups.stats_of(group_id)
            members = sorted(state.groups.members_of(group_id))
            print(
                f"  #{group_id:<6d} n={stats.count:<4d} mean=${stats.mean:.2f} "
                f"sd=${stats.stdev:.2f}  members={','.join(members)}"
            )
    return 0


def cmd_version(args):
    from . import __version__
    from .checkpoint import FORMAT_VERSION
    print(f"peerwatch {__version__} (checkpoint format {FORMAT_VERSION})")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="peerwatch",
        description="Peer-group purchase anomaly detection",
    )
    sub = parser.add_subparsers(dest="command")

    # run
    p_run = sub.add_parser("run", help="Process batch and stream logs")
    p_run.add_argument("batch", nargs="?", default=None, help="Batch log (history)")
    p_run.add_argument("stream", nargs="?", default=None, help="Stream log (to be checked)")
    p_run.add_argument("flagged", nargs="?", default=None, help="Output file for flagged purchases")
    p_run.add_argument("--window-size", "-T", type=int, default=None)
    p_run.add_argument("--network-depth", "-D", type=int, default=None)
    p_run.add_argument("--snapshot", default=None, help="Checkpoint file")
    p_run.add_argument(
        "--no-snapshot", dest="use_snapshot", action="store_const", const=False, default=None,
        help="Don't restore from the checkpoint (it is still written)",
    )
    p_run.add_argument("--autosave-every", type=int, default=None, help="Checkpoint every N applied events")
    p_run.add_argument(
        "--copy-stream", dest="copy_stream_lines", action="store_const", const=True, default=None,
        help="Copy applied stream lines to <stream>.applied, emptied at each autosave",
    )
    p_run.add_argument("--log-level", default=None)
    p_run.add_argument("--log-file", default=None)
    p_run.add_argument("--env-file", default=None, help="dotenv file with PEERWATCH_* settings")
    p_run.add_argument("--webhook-url", default=None)
    p_run.add_argument("--prometheus-port", type=int, default=None)
    p_run.add_argument("--console", action="store_true", help="Also print flagged purchases")
    p_run.add_argument("--json", action="store_true", help="Print the run report as JSON")
    p_run.set_defaults(func=cmd_run)

    # inspect
    p_inspect = sub.add_parser("inspect", help="Summarise a checkpoint")
    p_inspect.add_argument("snapshot", help="Path to checkpoint file")
    p_inspect.add_argument("--groups", action="store_true", help="List every group")
    p_inspect.add_argument("--json", action="store_true")
    p_inspect.set_defaults(func=cmd_inspect)

    # version
    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
