"""
SystemState — the whole detection state of one run as a single value.

Directory, ledger, groups and the replay cursor live together so they can
be checkpointed and restored as one unit. The state has no behaviour of
its own beyond parameter checks; EventProcessor drives it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .directory import UserDirectory
from .errors import UnsupportedOperation
from .groups import GroupRegistry
from .ledger import UserLedger
from .stats import DEFAULT_SIGMA_LEVEL


@dataclass
class ReplayCursor:
    """Position of the resume/replay gate: the last applied event."""
    last_timestamp: datetime | None = None
    last_line: str | None = None
    gate_open: bool = False


class SystemState:
    def __init__(
        self,
        window_size: int,
        network_depth: int,
        sigma_level: int = DEFAULT_SIGMA_LEVEL,
    ):
        self.window_size = window_size
        self.network_depth = network_depth
        self.sigma_level = sigma_level

        self.directory = UserDirectory()
        self.ledger = UserLedger(window_size)
        self.groups = GroupRegistry(window_size, network_depth, sigma_level)
        self.cursor = ReplayCursor()
        self.processed_count: int = 0

    def change_window_size(self, window_size: int):
        if window_size != self.window_size:
            raise UnsupportedOperation(
                f"window_size {self.window_size} can't be changed to {window_size}"
            )
        self.groups.change_window_size(window_size)

    def change_network_depth(self, network_depth: int):
        if network_depth != self.network_depth:
            raise UnsupportedOperation(
                f"network_depth {self.network_depth} can't be changed to {network_depth}"
            )
        self.groups.change_network_depth(network_depth)

    def change_sigma_level(self, sigma_level: int):
        if sigma_level != self.sigma_level:
            raise UnsupportedOperation(
                f"sigma_level {self.sigma_level} can't be changed to {sigma_level}"
            )

    def summary(self) -> dict:
        last = self.cursor.last_timestamp
        return {
            "window_size": self.window_size,
            "network_depth": self.network_depth,
            "sigma_level": self.sigma_level,
            "users": len(self.directory),
            "users_with_purchases": len(self.ledger),
            "groups": len(self.groups.group_ids()),
            "last_group_id": self.groups.last_group_id,
            "processed_count": self.processed_count,
            "last_timestamp": last.isoformat(sep=" ") if last else None,
        }
