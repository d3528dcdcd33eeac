"""
Raw line decoding.

Turns one JSON line of a batch or stream log into a typed event. Any
problem with a line surfaces as MalformedEvent so the caller can log the
line number and move on.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from .errors import MalformedEvent
from .types import TIMESTAMP_FORMAT, Event, EventType, FriendshipEvent, PurchaseEvent


def parse_timestamp(text: Any) -> datetime:
    try:
        return datetime.strptime(str(text), TIMESTAMP_FORMAT)
    except (TypeError, ValueError):
        raise MalformedEvent(f"bad timestamp {text!r}")


def decode_line(line: str) -> dict[str, Any]:
    """JSON-decode one line into a record dict."""
    text = line.strip()
    if not text:
        raise MalformedEvent("blank line")
    try:
        record = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedEvent(f"undecodable line: {e}")
    if not isinstance(record, dict):
        raise MalformedEvent(f"expected a JSON object, got {type(record).__name__}")
    return record


def _user_id(record: dict[str, Any], key: str) -> str:
    value = record.get(key)
    if value is None or str(value).strip() == "":
        raise MalformedEvent(f"missing {key}")
    return str(value).strip()


def parse_event(record: dict[str, Any]) -> Event:
    raw_type = record.get("event_type")
    try:
        event_type = EventType(raw_type)
    except ValueError:
        raise MalformedEvent(f"unknown event_type {raw_type!r}")

    timestamp = parse_timestamp(record.get("timestamp"))

    if event_type is EventType.PURCHASE:
        try:
            amount = float(record.get("amount"))
        except (TypeError, ValueError):
            raise MalformedEvent(f"bad amount {record.get('amount')!r}")
        return PurchaseEvent(timestamp, _user_id(record, "id"), amount)

    return FriendshipEvent(
        event_type,
        timestamp,
        _user_id(record, "id1"),
        _user_id(record, "id2"),
    )


def parse_header(record: dict[str, Any]) -> tuple[int, int] | None:
    """
    Batch logs may open with a `{"D": "2", "T": "50"}` header.
    Returns (network_depth, window_size), or None if this isn't one.
    """
    if "D" not in record or "T" not in record:
        return None
    try:
        return int(record["D"]), int(record["T"])
    except (TypeError, ValueError):
        raise MalformedEvent(f"bad batch header D={record['D']!r} T={record['T']!r}")
