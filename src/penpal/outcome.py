"""What a committed workflow operation hands back to the service layer.

Engines never notify anyone and never write the audit log. They commit
state through the record store and return an Outcome carrying the
updated aggregate, the effects to deliver and the audit events to
record. The service performs both after the commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from penpal.notifications.effects import Effect
from penpal.persistence.event_log import EventKind

T = TypeVar("T")


@dataclass(frozen=True)
class PendingEvent:
    """An audit event to be appended once the operation has committed."""
    kind: EventKind
    actor_id: str
    payload: dict[str, Any]


@dataclass
class Outcome(Generic[T]):
    record: T
    effects: list[Effect] = field(default_factory=list)
    events: list[PendingEvent] = field(default_factory=list)

    def absorb(self, other: Outcome[Any]) -> None:
        """Append another outcome's effects and events to this one."""
        self.effects.extend(other.effects)
        self.events.extend(other.events)
