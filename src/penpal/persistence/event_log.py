"""Append-only audit log of pen-pal workflow events.

Every committed transition (match approved, letter auto-verified,
penalty applied...) is appended here as an immutable, hash-stamped
record. The record store holds current state; this log holds how it
got there, so admins can answer "who cancelled this match and why"
after the fact.

Events are never modified or deleted. When a storage path is given the
log is mirrored to a JSONL file, and reloading verifies every record's
hash and rejects duplicate ids.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of workflow events."""
    # Recruitment
    PROFILE_REGISTERED = "profile_registered"
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_ACCEPTED = "application_accepted"
    APPLICATION_REJECTED = "application_rejected"
    # Match lifecycle
    MATCH_CREATED = "match_created"
    ADDRESS_SUBMITTED = "address_submitted"
    MATCH_ADMIN_REVIEW = "match_admin_review"
    MATCH_APPROVED = "match_approved"
    MATCH_REJECTED = "match_rejected"
    MATCH_CANCELLED = "match_cancelled"
    ADDRESS_REMINDER_SENT = "address_reminder_sent"
    # Letters
    MISSION_CREATED = "mission_created"
    MISSION_EXTENDED = "mission_extended"
    MISSION_COMPLETED = "mission_completed"
    MISSION_REWARD_CLAIMED = "mission_reward_claimed"
    MISSION_STEP_REPAIRED = "mission_step_repaired"
    LETTER_SENT = "letter_sent"
    LETTER_RECEIVED = "letter_received"
    LETTER_DISPUTED = "letter_disputed"
    LETTER_DISPUTE_RESOLVED = "letter_dispute_resolved"
    # Escalation
    LETTER_REMINDER = "letter_reminder"
    LETTER_ADMIN_ALERT = "letter_admin_alert"
    LETTER_AUTO_VERIFIED = "letter_auto_verified"
    CANCEL_REQUEST_ADMIN_ALERT = "cancel_request_admin_alert"
    # Arbitration and reputation
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_APPROVED = "cancel_approved"
    CANCEL_REJECTED = "cancel_rejected"
    REPUTATION_UPDATED = "reputation_updated"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable workflow event."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = (timestamp_utc or datetime.now(timezone.utc)).astimezone(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL persistence."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event. Raises ValueError on a duplicate event_id."""
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._storage_path:
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")
        self._events.append(event)
        self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for(self, subject_id: str) -> list[EventRecord]:
        """Return events whose payload references ``subject_id``.

        Matches on match_id, proof_id, request_id or user_id.
        """
        keys = ("match_id", "proof_id", "request_id", "user_id")
        return [
            e for e in self._events
            if any(e.payload.get(k) == subject_id for k in keys)
        ]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        """Load events from JSONL, verifying hashes and rejecting replays."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected}"
                    )

                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
