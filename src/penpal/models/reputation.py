"""Reputation record and penalty data models.

Reputation in the pen-pal programme is:
- One record per user, created lazily at score 100.
- An integer score clamped to [0, 100].
- Adjusted only by scoring actions (see penpal.reputation.ledger).
- Backed by an append-only list of penalty records.
- Never deleted.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


SCORE_MIN = 0
SCORE_MAX = 100
INITIAL_SCORE = 100


class ReputationAction(str, enum.Enum):
    """Scoring events the ledger understands."""
    MATCH_CREATED = "match_created"
    MATCH_COMPLETED = "match_completed"
    CANCEL_BY_USER = "cancel_by_user"
    CANCEL_BY_PARTNER = "cancel_by_partner"
    LATE_RESPONSE = "late_response"
    NO_ADDRESS = "no_address"


class PenaltyType(str, enum.Enum):
    CANCEL_REQUEST = "cancel_request"
    LATE_RESPONSE = "late_response"
    NO_ADDRESS = "no_address"


class PenaltySeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class PenaltyRecord:
    """A single recorded penalty. points is the nominal deduction."""
    penalty_id: str
    penalty_type: PenaltyType
    severity: PenaltySeverity
    points: int
    reason: str
    created_utc: datetime
    match_id: Optional[str] = None


@dataclass
class UserPenpalReputation:
    """Current reputation state for a single user."""
    user_id: str
    total_matches: int = 0
    completed_matches: int = 0
    cancelled_by_user: int = 0
    cancelled_by_partner: int = 0
    reputation_score: int = INITIAL_SCORE
    penalties: list[PenaltyRecord] = field(default_factory=list)
    last_updated_utc: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class ReputationDelta:
    """The effect of one scoring action on one user."""
    user_id: str
    action: ReputationAction
    previous_score: int
    new_score: int
    match_id: Optional[str] = None
    penalty: Optional[PenaltyRecord] = None

    @property
    def delta(self) -> int:
        return self.new_score - self.previous_score
