"""Letter mission and letter proof data models.

A LetterMission is created when a match is approved and tracks how many
physical letters have been verified. Each letter is a LetterProof:

    SENT → RECEIVED                      (receiver verifies)
    SENT → AUTO_VERIFIED                 (escalation timeout)
    SENT → DISPUTED → CANCELLED          (admin: letter never arrived)
    SENT → DISPUTED → AUTO_VERIFIED      (admin: letter was delivered)

Escalation progress on an outstanding proof is tracked by a single
monotone EscalationStage rather than by inspecting which timestamps
happen to be set. The timestamps are kept for the audit trail.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


TOTAL_STEPS = 10


class LetterProofStatus(str, enum.Enum):
    """Lifecycle state of one letter."""
    SENT = "sent"
    RECEIVED = "received"
    DISPUTED = "disputed"
    AUTO_VERIFIED = "auto_verified"
    CANCELLED = "cancelled"


class EscalationStage(str, enum.Enum):
    """How far the escalation sweep has advanced an outstanding proof.

    Stages only move forward. RESOLVED means the proof has left SENT
    (by any route) and the sweep must never touch it again.
    """
    NONE = "none"
    REMINDED = "reminded"
    ADMIN_NOTIFIED = "admin_notified"
    RESOLVED = "resolved"


ESCALATION_ORDER: tuple[EscalationStage, ...] = (
    EscalationStage.NONE,
    EscalationStage.REMINDED,
    EscalationStage.ADMIN_NOTIFIED,
    EscalationStage.RESOLVED,
)


@dataclass
class LetterMission:
    """Per-match progression tracker.

    completed_steps[i] is true once step i+1 has been verified. The
    list starts with total_steps slots and only grows when the mission
    is extended.
    """
    mission_id: str
    match_id: str
    user1_id: str
    user1_child_name: str
    user2_id: str
    user2_child_name: str
    total_steps: int = TOTAL_STEPS
    current_step: int = 0
    completed_steps: list[bool] = field(default_factory=list)
    is_completed: bool = False
    extended: bool = False
    reward_claimed_by: list[str] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    extended_utc: Optional[datetime] = None
    version: int = 0

    def __post_init__(self) -> None:
        if not self.completed_steps:
            self.completed_steps = [False] * self.total_steps

    @property
    def next_step(self) -> int:
        return self.current_step + 1

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)


@dataclass
class LetterProof:
    """Physical-letter evidence for one mission step."""
    proof_id: str
    match_id: str
    step_number: int
    sender_id: str
    sender_child_name: str
    receiver_id: str
    receiver_child_name: str
    sender_image_url: str
    sender_uploaded_utc: datetime
    status: LetterProofStatus = LetterProofStatus.SENT
    receiver_image_url: Optional[str] = None
    receiver_uploaded_utc: Optional[datetime] = None
    escalation_stage: EscalationStage = EscalationStage.NONE
    reminder_sent_utc: Optional[datetime] = None
    admin_notified_utc: Optional[datetime] = None
    auto_verified_utc: Optional[datetime] = None
    verified_utc: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    disputed_utc: Optional[datetime] = None
    resolved_utc: Optional[datetime] = None
    resolved_by: Optional[str] = None
    version: int = 0

    def days_outstanding(self, now: datetime) -> int:
        """Whole days elapsed since the sender uploaded their photo."""
        return (now - self.sender_uploaded_utc).days
