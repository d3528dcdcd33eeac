"""
Checkpoint save/load for SystemState.

A checkpoint is one JSON document holding the directory, every user's
ledger, every group's ordered window and the replay cursor. Saves go to
a temporary sibling first and are renamed into place, so an interrupted
save leaves the previous checkpoint intact.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import CheckpointError, VersionMismatch
from .groups import GroupRegistry
from .directory import UserDirectory
from .ledger import UserLedger
from .state import ReplayCursor, SystemState
from .types import TIMESTAMP_FORMAT, Sample

logger = logging.getLogger("peerwatch.checkpoint")

FORMAT_VERSION = "001_00_00"


def _encode_sample(sample: Sample) -> list:
    encoded = [sample.timestamp.strftime(TIMESTAMP_FORMAT), sample.amount]
    if sample.uid is not None:
        encoded.append(sample.uid)
    return encoded


def _decode_sample(raw: list) -> Sample:
    uid = raw[2] if len(raw) > 2 else None
    return Sample(datetime.strptime(raw[0], TIMESTAMP_FORMAT), float(raw[1]), uid)


def to_document(state: SystemState) -> dict[str, Any]:
    cursor = state.cursor
    groups = state.groups.to_dict()
    for group in groups["groups"].values():
        group["window"] = [_encode_sample(s) for s in group["window"]]

    return {
        "version": FORMAT_VERSION,
        "window_size": state.window_size,
        "network_depth": state.network_depth,
        "sigma_level": state.sigma_level,
        "processed_count": state.processed_count,
        "cursor": {
            "last_timestamp": (
                cursor.last_timestamp.strftime(TIMESTAMP_FORMAT)
                if cursor.last_timestamp is not None
                else None
            ),
            "last_line": cursor.last_line,
        },
        "directory": state.directory.to_dict(),
        "ledger": {
            uid: [_encode_sample(s) for s in samples]
            for uid, samples in state.ledger.to_dict().items()
        },
        "groups": groups,
    }


def from_document(doc: dict[str, Any]) -> SystemState:
    version = doc.get("version")
    if version != FORMAT_VERSION:
        raise VersionMismatch(
            f"checkpoint version {version} differs from current version {FORMAT_VERSION}"
        )

    try:
        window_size = int(doc["window_size"])
        network_depth = int(doc["network_depth"])
        sigma_level = int(doc.get("sigma_level", 3))

        state = SystemState(window_size, network_depth, sigma_level)
        state.processed_count = int(doc.get("processed_count", 0))

        raw_cursor = doc.get("cursor") or {}
        last_timestamp = raw_cursor.get("last_timestamp")
        # a restored state always starts with the gate closed
        state.cursor = ReplayCursor(
            last_timestamp=(
                datetime.strptime(last_timestamp, TIMESTAMP_FORMAT)
                if last_timestamp
                else None
            ),
            last_line=raw_cursor.get("last_line"),
            gate_open=False,
        )

        state.directory = UserDirectory.from_dict(doc.get("directory", {}))
        state.ledger = UserLedger.from_dict(
            window_size,
            {
                uid: [_decode_sample(s) for s in samples]
                for uid, samples in doc.get("ledger", {}).items()
            },
        )

        groups = doc.get("groups", {})
        for group in groups.get("groups", {}).values():
            group["window"] = [_decode_sample(s) for s in group.get("window", [])]
        state.groups = GroupRegistry.from_dict(window_size, network_depth, groups, sigma_level)
    except (KeyError, TypeError, ValueError, IndexError) as e:
        raise CheckpointError(f"corrupt checkpoint: {e!r}")
    return state


def save_checkpoint(state: SystemState, path: str | Path):
    """Write `state` to `path` atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    with open(tmp_path, "w") as f:
        json.dump(to_document(state), f)
    os.replace(tmp_path, path)

    logger.info(
        f"[CHECKPOINT] saved {path} "
        f"(processed={state.processed_count}, last={state.cursor.last_timestamp})"
    )


def load_checkpoint(path: str | Path) -> SystemState:
    """
    Read a checkpoint. Raises CheckpointError if the file is missing or
    corrupt, VersionMismatch if it was written by another format version.
    """
    path = Path(path)
    if not path.is_file():
        raise CheckpointError(f"checkpoint {path} does not exist")

    try:
        with open(path) as f:
            doc = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CheckpointError(f"can't read checkpoint {path}: {e}")
    if not isinstance(doc, dict):
        raise CheckpointError(f"checkpoint {path} is not a JSON object")

    state = from_document(doc)
    logger.info(
        f"[CHECKPOINT] loaded {path} (version {FORMAT_VERSION}, "
        f"last timestamp {state.cursor.last_timestamp})"
    )
    return state
