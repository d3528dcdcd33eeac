"""
GroupRegistry — dynamic cohorts over the friendship graph.

Users are partitioned into groups that follow the connectivity of the
friendship graph, bounded by the network depth. Befriending merges
groups; unfriending splits a group when the two users can no longer
reach each other within the depth. Each group owns one RingBuffer of the
group's most recent purchases, and every topology change rebuilds the
affected windows by replaying the members' ledgers in timestamp order.

Group ids come from a monotonically increasing counter and are never
reused. Groups left without members are dropped.
"""

from __future__ import annotations

import logging
from datetime import datetime

from .directory import UserDirectory
from .errors import InvalidArgument, UnsupportedOperation
from .ledger import UserLedger
from .stats import DEFAULT_SIGMA_LEVEL, RingBuffer, StatsWindow
from .types import Sample

logger = logging.getLogger("peerwatch.groups")


def _neighbours(directory: UserDirectory, uid: str) -> set[str]:
    return directory.friends_of(uid) or set()


def path_exists(source: str, target: str, directory: UserDirectory, depth: int) -> bool:
    """
    True if `target` is reachable from `source` within `depth - 1` hops.

    Depth 2 means direct friends only. Breadth-first with a visited set,
    so cycles in the graph cost nothing extra.
    """
    if source == target:
        return True

    visited = {source}
    frontier = [source]
    for _ in range(depth - 1):
        next_frontier = []
        for uid in frontier:
            for friend in _neighbours(directory, uid):
                if friend == target:
                    return True
                if friend not in visited:
                    visited.add(friend)
                    next_frontier.append(friend)
        if not next_frontier:
            break
        frontier = next_frontier
    return False


def cover(source: str, directory: UserDirectory, depth: int) -> set[str]:
    """Every user within `depth - 1` hops of `source`, `source` included."""
    visited = {source}
    frontier = [source]
    for _ in range(depth - 1):
        next_frontier = []
        for uid in frontier:
            for friend in _neighbours(directory, uid):
                if friend not in visited:
                    visited.add(friend)
                    next_frontier.append(friend)
        if not next_frontier:
            break
        frontier = next_frontier
    return visited


class GroupRegistry:
    """
    Partition of users into groups, one shared purchase window per group.

    Usage::

        groups = GroupRegistry(window_size=50, network_depth=2)
        groups.add_friendship("1", "2", ledger)
        gid = groups.group_of("1")
        if groups.is_anomalous(gid, 1580.0):
            ...
        groups.record_purchase(gid, "1", 1580.0, timestamp)
    """

    def __init__(
        self,
        window_size: int,
        network_depth: int,
        sigma_level: int = DEFAULT_SIGMA_LEVEL,
    ):
        self.window_size = window_size
        self.network_depth = network_depth
        self.sigma_level = sigma_level

        self._counter: int = 0
        self._group_of: dict[str, int] = {}
        self._members: dict[int, set[str]] = {}
        self._windows: dict[int, RingBuffer] = {}

    # ── Queries ────────────────────────────────────────────────────────

    def group_of(self, uid: str) -> int | None:
        return self._group_of.get(uid)

    def members_of(self, group_id: int) -> set[str]:
        return set(self._require(group_id))

    def group_ids(self) -> list[int]:
        return sorted(self._members)

    @property
    def last_group_id(self) -> int:
        return self._counter

    def window(self, group_id: int) -> RingBuffer:
        self._require(group_id)
        return self._windows[group_id]

    def stats_of(self, group_id: int) -> StatsWindow:
        return self.window(group_id).stats

    def is_anomalous(self, group_id: int, amount: float, sigma_level: int | None = None) -> bool:
        """Judge `amount` against the group's window (call before recording it)."""
        return self.stats_of(group_id).is_outlier(amount, sigma_level)

    # ── Purchases ──────────────────────────────────────────────────────

    def create_solo_group(self, uid: str) -> int:
        """Give a user with no relationships a group of their own."""
        if uid in self._group_of:
            raise InvalidArgument(f"user {uid} already belongs to group {self._group_of[uid]}")
        group_id = self._new_group()
        self._subscribe(uid, group_id)
        return group_id

    def record_purchase(
        self,
        group_id: int,
        uid: str,
        amount: float,
        timestamp: datetime,
    ) -> Sample | None:
        return self.window(group_id).insert(Sample(timestamp, amount, uid))

    # ── Topology changes ───────────────────────────────────────────────

    def add_friendship(self, id1: str, id2: str, ledger: UserLedger) -> int | None:
        """
        Merge the cohorts of two new friends. Returns the group both users
        end up in, or None when the ids are equal.
        """
        if id1 == id2:
            return None

        group1 = self._group_of.get(id1)
        group2 = self._group_of.get(id2)

        if group1 is None and group2 is None:
            group_id = self._new_group()
            self._subscribe(id1, group_id)
            self._subscribe(id2, group_id)
        elif group2 is None:
            group_id = group1
            self._subscribe(id2, group_id)
        elif group1 is None:
            group_id = group2
            self._subscribe(id1, group_id)
        elif group1 == group2:
            return group1
        else:
            group_id = self._new_group()
            for old_group in (group1, group2):
                for uid in list(self._members[old_group]):
                    self._move(uid, group_id)
                self._drop(old_group)
            logger.debug(f"[MERGE] groups {group1} + {group2} -> {group_id}")

        self.resync(group_id, ledger)
        return group_id

    def remove_friendship(
        self,
        id1: str,
        id2: str,
        ledger: UserLedger,
        directory: UserDirectory,
    ) -> int | None:
        """
        Split a cohort after an unfriend, if the two users are no longer
        within reach of each other. Must run after the directory edge is
        removed. Returns the id of the newly carved group, if any.
        """
        if id1 == id2:
            return None
        group_id = self._group_of.get(id1)
        if group_id is None or group_id != self._group_of.get(id2):
            return None
        if path_exists(id1, id2, directory, self.network_depth):
            return None

        new_group_id = self._new_group()
        carved = cover(id2, directory, self.network_depth)
        affected: set[int] = set()
        for uid in carved:
            old_group = self._group_of.get(uid)
            if old_group is None:
                self._subscribe(uid, new_group_id)
                continue
            affected.add(old_group)
            self._move(uid, new_group_id)

        for old_group in affected:
            if self._members[old_group]:
                self.resync(old_group, ledger)
            else:
                self._drop(old_group)
        self.resync(new_group_id, ledger)

        logger.debug(
            f"[SPLIT] {id1} / {id2}: {len(carved)} users moved "
            f"from group {group_id} to {new_group_id}"
        )
        return new_group_id

    def resync(self, group_id: int, ledger: UserLedger):
        """
        Rebuild a group's window by replaying every member's ledger in
        timestamp order (ties by user id) into a fresh buffer.
        """
        members = self._require(group_id)
        replay: list[Sample] = []
        for uid in members:
            replay.extend(
                Sample(sample.timestamp, sample.amount, uid)
                for sample in ledger.history(uid)
            )
        replay.sort(key=lambda s: (s.timestamp, s.uid))

        window = RingBuffer(self.window_size, self.sigma_level)
        window.extend(replay)
        self._windows[group_id] = window

    # ── Base parameters ────────────────────────────────────────────────

    def change_window_size(self, window_size: int):
        if window_size != self.window_size:
            raise UnsupportedOperation(
                f"can't resize group windows from {self.window_size} to {window_size}"
            )

    def change_network_depth(self, network_depth: int):
        if network_depth != self.network_depth:
            raise UnsupportedOperation(
                f"can't change network depth from {self.network_depth} to {network_depth}"
            )

    # ── Persistence ────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "counter": self._counter,
            "groups": {
                str(group_id): {
                    "members": sorted(members),
                    "window": self._windows[group_id].ordered_snapshot(),
                }
                for group_id, members in self._members.items()
            },
        }

    @classmethod
    def from_dict(
        cls,
        window_size: int,
        network_depth: int,
        data: dict,
        sigma_level: int = DEFAULT_SIGMA_LEVEL,
    ) -> "GroupRegistry":
        registry = cls(window_size, network_depth, sigma_level)
        registry._counter = int(data.get("counter", 0))
        for key, group in data.get("groups", {}).items():
            group_id = int(key)
            registry._members[group_id] = set()
            for uid in group["members"]:
                registry._subscribe(uid, group_id)
            window = RingBuffer(window_size, sigma_level)
            window.extend(group.get("window", []))
            registry._windows[group_id] = window
            registry._counter = max(registry._counter, group_id)
        return registry

    # ── Internal ───────────────────────────────────────────────────────

    def _require(self, group_id: int) -> set[str]:
        members = self._members.get(group_id)
        if members is None:
            raise InvalidArgument(f"group {group_id} doesn't exist")
        return members

    def _new_group(self) -> int:
        self._counter += 1
        group_id = self._counter
        self._members[group_id] = set()
        self._windows[group_id] = RingBuffer(self.window_size, self.sigma_level)
        return group_id

    def _drop(self, group_id: int):
        self._members.pop(group_id, None)
        self._windows.pop(group_id, None)

    def _subscribe(self, uid: str, group_id: int):
        self._members[group_id].add(uid)
        self._group_of[uid] = group_id

    def _move(self, uid: str, group_id: int):
        old_group = self._group_of.get(uid)
        if old_group is not None and old_group in self._members:
            self._members[old_group].discard(uid)
        self._subscribe(uid, group_id)
