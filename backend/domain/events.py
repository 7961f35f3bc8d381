"""
domain/events.py — Event envelopes.

A ``NewEvent`` is what the state machine decides; it has no sequence number
yet. The event store assigns one at append time and hands back a
``StoredEvent``. Sequence numbers are the only ordering authority;
``occurred_at`` is informational.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from domain.enums import ActorType


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 payload value into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass(frozen=True)
class Actor:
    type: ActorType = ActorType.USER
    id: Optional[str] = None


@dataclass(frozen=True)
class NewEvent:
    event_type: str
    payload: dict[str, Any]
    actor: Actor
    occurred_at: datetime


@dataclass(frozen=True)
class StoredEvent:
    id: int
    aggregate_id: str
    sequence_no: int
    event_type: str
    payload: dict[str, Any]
    actor: Actor
    occurred_at: datetime
    recorded_at: Optional[datetime] = None
