"""
Configuration for a peerwatch run.
Loads settings from environment variables and an optional .env file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import InvalidConfig

ENV_PREFIX = "PEERWATCH_"

WINDOW_SIZE_DEFAULT = 10
NETWORK_DEPTH_DEFAULT = 2


def _bool(val: str) -> bool:
    return val.strip().lower() in ("true", "1", "yes")


def _int(val: str, name: str) -> int:
    try:
        return int(val)
    except (ValueError, TypeError):
        raise InvalidConfig(f"{name} must be an integer, got {val!r}")


def _optional(val: str) -> str | None:
    val = val.strip()
    return val or None


def verify_window_size(window_size: int):
    if not isinstance(window_size, int) or window_size < 2:
        raise InvalidConfig(f"window_size {window_size!r} not valid; must be >= 2")


def verify_network_depth(network_depth: int):
    if not isinstance(network_depth, int) or network_depth < 1:
        raise InvalidConfig(f"network_depth {network_depth!r} not valid; must be >= 1")


@dataclass
class Settings:
    # --- Inputs ---
    batch_file: str = "log_input/batch_log.json"
    stream_file: str = "log_input/stream_log.json"

    # --- Outputs ---
    flagged_file: str = "log_output/flagged_purchases.json"

    # --- Checkpoint ---
    snapshot_file: str = "log_output/snapshot.json"
    use_snapshot: bool = True
    autosave_every: int = 100_000          # applied events; <= 0 disables
    copy_stream_lines: bool = False        # keep applied stream lines since the last autosave

    # --- Detection ---
    window_size: int = WINDOW_SIZE_DEFAULT
    network_depth: int = NETWORK_DEPTH_DEFAULT
    override_batch_params: bool = True     # ignore the batch header's D/T

    # --- Logging ---
    log_level: str = "INFO"
    log_file: str | None = None

    # --- Export ---
    webhook_url: str | None = None
    prometheus_port: int | None = None

    @property
    def stream_copy_file(self) -> str:
        return f"{self.stream_file}.applied"

    def validate(self) -> "Settings":
        verify_window_size(self.window_size)
        verify_network_depth(self.network_depth)
        return self


_PARSERS = {
    "use_snapshot": lambda v, n: _bool(v),
    "override_batch_params": lambda v, n: _bool(v),
    "copy_stream_lines": lambda v, n: _bool(v),
    "autosave_every": _int,
    "window_size": _int,
    "network_depth": _int,
    "prometheus_port": lambda v, n: _int(v, n) if v.strip() else None,
    "log_file": lambda v, n: _optional(v),
    "webhook_url": lambda v, n: _optional(v),
    "log_level": lambda v, n: v.strip().upper(),
}


def load_settings(env_file: str | Path | None = None, **overrides) -> Settings:
    """
    Build Settings from (in increasing priority) defaults, the .env file,
    PEERWATCH_* environment variables and keyword overrides. Overrides
    whose value is None are ignored.
    """
    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(Path.cwd() / ".env", override=False)

    values = {}
    for f in fields(Settings):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        parse = _PARSERS.get(f.name, lambda v, n: v)
        values[f.name] = parse(raw, f.name)

    settings = Settings(**values)
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})
