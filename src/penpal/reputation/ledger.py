"""Reputation ledger: applies scoring actions to a user's record.

Scoring rules (score clamped to [0, 100]):
  match_created      total_matches += 1                    score unchanged
  match_completed    completed_matches += 1                score += 5
  cancel_by_user     cancelled_by_user += 1                score -= points (default 10), penalty recorded
  cancel_by_partner  cancelled_by_partner += 1             score unchanged
  late_response                                            score -= 3, penalty recorded
  no_address                                               score -= 5, penalty recorded

Invariants:
- The non-initiating side of a cancellation is never penalised.
- Penalty records are append-only.
- The ledger does not deduplicate: callers fire each event at most once
  per logical occurrence.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from penpal.models.reputation import (
    INITIAL_SCORE,
    SCORE_MAX,
    SCORE_MIN,
    PenaltyRecord,
    PenaltySeverity,
    PenaltyType,
    ReputationAction,
    ReputationDelta,
    UserPenpalReputation,
)
from penpal.outcome import Outcome, PendingEvent
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection, RecordStore


COMPLETION_BONUS = 5
DEFAULT_CANCEL_PENALTY = 10
LATE_RESPONSE_PENALTY = 3
NO_ADDRESS_PENALTY = 5

_PENALTY_SHAPE: dict[ReputationAction, tuple[PenaltyType, PenaltySeverity, str]] = {
    ReputationAction.CANCEL_BY_USER: (
        PenaltyType.CANCEL_REQUEST, PenaltySeverity.MEDIUM, "Pen-pal cancellation",
    ),
    ReputationAction.LATE_RESPONSE: (
        PenaltyType.LATE_RESPONSE, PenaltySeverity.LOW, "Late response",
    ),
    ReputationAction.NO_ADDRESS: (
        PenaltyType.NO_ADDRESS, PenaltySeverity.MEDIUM, "Address not submitted",
    ),
}


def clamp_score(score: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, score))


def new_reputation(user_id: str, now: Optional[datetime] = None) -> UserPenpalReputation:
    """A fresh record at the initial score."""
    return UserPenpalReputation(
        user_id=user_id,
        reputation_score=INITIAL_SCORE,
        last_updated_utc=now or datetime.now(timezone.utc),
    )


class ReputationLedger:
    """Computes reputation changes. Pure: never mutates its inputs."""

    def apply(
        self,
        record: UserPenpalReputation,
        action: ReputationAction,
        now: Optional[datetime] = None,
        points: Optional[int] = None,
        reason: Optional[str] = None,
        match_id: Optional[str] = None,
    ) -> tuple[UserPenpalReputation, ReputationDelta]:
        """Apply one scoring action and return (new record, delta).

        ``points`` only applies to cancel_by_user (admin-adjustable
        deduction); other actions use their fixed amounts.

        Raises ValueError for negative points.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if points is not None and points < 0:
            raise ValueError(f"Penalty points must be non-negative, got {points}")

        score = record.reputation_score
        total = record.total_matches
        completed = record.completed_matches
        by_user = record.cancelled_by_user
        by_partner = record.cancelled_by_partner
        deduction = 0

        if action == ReputationAction.MATCH_CREATED:
            total += 1
        elif action == ReputationAction.MATCH_COMPLETED:
            completed += 1
            score += COMPLETION_BONUS
        elif action == ReputationAction.CANCEL_BY_USER:
            by_user += 1
            deduction = DEFAULT_CANCEL_PENALTY if points is None else points
        elif action == ReputationAction.CANCEL_BY_PARTNER:
            by_partner += 1
        elif action == ReputationAction.LATE_RESPONSE:
            deduction = LATE_RESPONSE_PENALTY
        elif action == ReputationAction.NO_ADDRESS:
            deduction = NO_ADDRESS_PENALTY
        else:
            raise ValueError(f"Unknown reputation action: {action!r}")

        new_score = clamp_score(score - deduction)

        penalty: Optional[PenaltyRecord] = None
        penalties = list(record.penalties)
        if action in _PENALTY_SHAPE:
            penalty_type, severity, default_reason = _PENALTY_SHAPE[action]
            penalty = PenaltyRecord(
                penalty_id=f"penalty-{uuid.uuid4().hex[:12]}",
                penalty_type=penalty_type,
                severity=severity,
                points=deduction,
                reason=reason or default_reason,
                created_utc=now,
                match_id=match_id,
            )
            penalties.append(penalty)

        new_record = replace(
            record,
            total_matches=total,
            completed_matches=completed,
            cancelled_by_user=by_user,
            cancelled_by_partner=by_partner,
            reputation_score=new_score,
            penalties=penalties,
            last_updated_utc=now,
        )
        delta = ReputationDelta(
            user_id=record.user_id,
            action=action,
            previous_score=record.reputation_score,
            new_score=new_score,
            match_id=match_id,
            penalty=penalty,
        )
        return new_record, delta


class ReputationBook:
    """Store-backed reputation records, one per user, created lazily."""

    def __init__(self, store: RecordStore, ledger: Optional[ReputationLedger] = None) -> None:
        self._store = store
        self._ledger = ledger or ReputationLedger()

    def get(self, user_id: str, now: Optional[datetime] = None) -> UserPenpalReputation:
        """Return the user's record, creating it at the initial score."""
        record, _ = self._store.insert_if_absent(
            Collection.REPUTATIONS, user_id, new_reputation(user_id, now),
        )
        return record

    def record(
        self,
        user_id: str,
        action: ReputationAction,
        now: Optional[datetime] = None,
        points: Optional[int] = None,
        reason: Optional[str] = None,
        match_id: Optional[str] = None,
    ) -> Outcome[ReputationDelta]:
        """Apply one scoring action atomically against the stored record."""
        if now is None:
            now = datetime.now(timezone.utc)
        self.get(user_id, now)
        deltas: list[ReputationDelta] = []

        def mutate(current: UserPenpalReputation) -> UserPenpalReputation:
            deltas.clear()
            updated, delta = self._ledger.apply(
                current, action, now, points=points, reason=reason, match_id=match_id,
            )
            deltas.append(delta)
            return updated

        self._store.update(Collection.REPUTATIONS, user_id, mutate)
        delta = deltas[0]
        payload = {
            "user_id": user_id,
            "action": action.value,
            "previous_score": delta.previous_score,
            "new_score": delta.new_score,
        }
        if match_id is not None:
            payload["match_id"] = match_id
        return Outcome(
            record=delta,
            events=[PendingEvent(EventKind.REPUTATION_UPDATED, user_id, payload)],
        )
