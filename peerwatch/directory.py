"""
UserDirectory — the mutable, undirected friendship graph.

Adjacency sets keyed by user id. Every edge is written in both
directions, so `b in friends_of(a)` always implies `a in friends_of(b)`.
"""

from __future__ import annotations

import logging

from .errors import InvalidArgument

logger = logging.getLogger("peerwatch.directory")


class UserDirectory:
    def __init__(self):
        self._friends: dict[str, set[str]] = {}

    def __contains__(self, uid: str) -> bool:
        return uid in self._friends

    def __len__(self) -> int:
        return len(self._friends)

    def users(self) -> list[str]:
        return list(self._friends)

    def create_user(self, uid: str):
        """Register a user with no friends (first seen through a purchase)."""
        if not uid:
            raise InvalidArgument("create_user called without a user id")
        if uid in self._friends:
            raise InvalidArgument(f"user {uid} already exists in the directory")
        self._friends[uid] = set()

    def friends_of(self, uid: str) -> set[str] | None:
        return self._friends.get(uid)

    def add_friendship(self, id1: str, id2: str) -> set[str]:
        """
        Record a symmetric friendship. Returns the ids that were created
        as a side effect so per-user state can be initialised downstream.
        """
        if not id1 or not id2:
            raise InvalidArgument(f"add_friendship({id1!r}, {id2!r}) called with bad ids")

        created: set[str] = set()
        if id1 == id2:
            return created

        for uid in (id1, id2):
            if uid not in self._friends:
                self._friends[uid] = set()
                created.add(uid)

        self._friends[id1].add(id2)
        self._friends[id2].add(id1)
        return created

    def remove_friendship(self, id1: str, id2: str) -> bool:
        """Remove the symmetric edge. Returns whether the edge existed."""
        if not id1 or not id2 or id1 == id2:
            raise InvalidArgument(f"remove_friendship({id1!r}, {id2!r}) called with bad ids")
        if id1 not in self._friends or id2 not in self._friends:
            raise InvalidArgument(f"can't unfriend {id1}, {id2}: unknown user")

        existed = id2 in self._friends[id1]
        self._friends[id1].discard(id2)
        self._friends[id2].discard(id1)
        if not existed:
            logger.debug(f"unfriend {id1}, {id2}: no such friendship")
        return existed

    # ── Persistence ────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, list[str]]:
        return {uid: sorted(friends) for uid, friends in self._friends.items()}

    @classmethod
    def from_dict(cls, data: dict[str, list[str]]) -> "UserDirectory":
        directory = cls()
        for uid, friends in data.items():
            directory._friends[uid] = set(friends)
        return directory
