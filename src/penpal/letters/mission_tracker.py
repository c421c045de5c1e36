"""Letter mission tracker: per-match step progression.

A mission starts at step 0 with ``total_steps`` empty slots. Each
delivered letter (received or auto-verified) marks its step's slot and
moves ``current_step`` forward; it never moves back. The first time the
final step is marked, the mission is complete and both participants get
a completion bonus.

Once the final step has been reached either participant may extend the
mission, after which steps beyond ``total_steps`` are accepted and the
slot list grows to fit them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from penpal.errors import ForbiddenError, InvalidStateError, InvariantViolationError
from penpal.models.letter import LetterMission
from penpal.models.penpal import PenpalMatch
from penpal.models.reputation import ReputationAction
from penpal.notifications.effects import Notify, NotificationType
from penpal.outcome import Outcome, PendingEvent
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection, RecordStore
from penpal.reputation.ledger import ReputationBook

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepAdvance:
    """Result of marking one step delivered."""
    mission: LetterMission
    newly_completed: bool


def new_mission(match: PenpalMatch, now: datetime) -> LetterMission:
    """A fresh mission for an approved match. Mission id is the match id."""
    return LetterMission(
        mission_id=match.match_id,
        match_id=match.match_id,
        user1_id=match.user1_id,
        user1_child_name=match.user1_child_name,
        user2_id=match.user2_id,
        user2_child_name=match.user2_child_name,
        created_utc=now,
        updated_utc=now,
    )


def step_marked(mission: LetterMission, step: int) -> bool:
    return 1 <= step <= len(mission.completed_steps) and mission.completed_steps[step - 1]


def mark_step(mission: LetterMission, step: int, now: datetime) -> bool:
    """Mark ``step`` delivered on ``mission`` in place.

    Returns True if this call completed the mission.

    Raises InvariantViolationError for a step below 1, or past the
    final step of a mission that has not been extended.
    """
    if step < 1:
        raise InvariantViolationError(f"Step numbers start at 1, got {step}")
    if step > mission.total_steps and not mission.extended:
        raise InvariantViolationError(
            f"Step {step} is beyond the mission's {mission.total_steps} steps"
        )
    if len(mission.completed_steps) < step:
        mission.completed_steps.extend([False] * (step - len(mission.completed_steps)))
    mission.completed_steps[step - 1] = True
    mission.current_step = max(mission.current_step, step)
    mission.updated_utc = now

    if not mission.is_completed and mission.current_step >= mission.total_steps:
        mission.is_completed = True
        mission.completed_utc = now
        return True
    return False


class MissionTracker:
    """Store-backed mission operations."""

    def __init__(self, store: RecordStore, reputation: ReputationBook) -> None:
        self._store = store
        self._reputation = reputation

    def create_for_match(
        self, match: PenpalMatch, now: Optional[datetime] = None,
    ) -> Outcome[LetterMission]:
        """Create the match's mission. Idempotent: an existing one is returned."""
        if now is None:
            now = datetime.now(timezone.utc)
        mission, inserted = self._store.insert_if_absent(
            Collection.MISSIONS, match.match_id, new_mission(match, now),
        )
        outcome: Outcome[LetterMission] = Outcome(record=mission)
        if inserted:
            outcome.events.append(PendingEvent(
                EventKind.MISSION_CREATED,
                match.approved_by or "system",
                {"match_id": match.match_id, "total_steps": mission.total_steps},
            ))
        return outcome

    def advance(
        self,
        match_id: str,
        step: int,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[StepAdvance]:
        """Mark a step delivered and handle first-time completion."""
        if now is None:
            now = datetime.now(timezone.utc)
        completed_flags: list[bool] = []

        def mutate(mission: LetterMission) -> None:
            completed_flags.clear()
            completed_flags.append(mark_step(mission, step, now))

        mission = self._store.update(Collection.MISSIONS, match_id, mutate)
        newly_completed = completed_flags[0]
        outcome: Outcome[StepAdvance] = Outcome(
            record=StepAdvance(mission=mission, newly_completed=newly_completed),
        )
        if not newly_completed:
            return outcome

        logger.info("Mission %s completed at step %d", match_id, mission.current_step)
        outcome.events.append(PendingEvent(
            EventKind.MISSION_COMPLETED,
            actor_id,
            {"match_id": match_id, "current_step": mission.current_step},
        ))
        for user_id in (mission.user1_id, mission.user2_id):
            outcome.absorb(self._reputation.record(
                user_id, ReputationAction.MATCH_COMPLETED, now, match_id=match_id,
            ))
            outcome.effects.append(Notify(
                user_id=user_id,
                notification_type=NotificationType.MISSION_COMPLETED,
                title="Letter mission complete!",
                message=(
                    f"{mission.user1_child_name} and {mission.user2_child_name} "
                    f"finished all {mission.total_steps} letters."
                ),
                link=f"/penpal/{match_id}",
            ))
        return outcome

    def extend(
        self,
        match_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterMission]:
        """Let the pair keep writing past the final step."""
        if now is None:
            now = datetime.now(timezone.utc)

        def mutate(mission: LetterMission) -> None:
            if not mission.is_participant(user_id):
                raise ForbiddenError("You are not a participant in this mission")
            if mission.extended:
                raise InvalidStateError("This mission has already been extended")
            if mission.current_step < mission.total_steps:
                raise InvalidStateError(
                    f"The mission can only be extended after step {mission.total_steps}"
                )
            mission.extended = True
            mission.extended_utc = now
            mission.updated_utc = now

        mission = self._store.update(Collection.MISSIONS, match_id, mutate)
        return Outcome(
            record=mission,
            events=[PendingEvent(EventKind.MISSION_EXTENDED, user_id, {"match_id": match_id})],
        )

    def claim_reward(
        self,
        match_id: str,
        user_id: str,
        reward_points: int,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterMission]:
        """Record a participant's one-time reward claim for a finished mission."""
        if now is None:
            now = datetime.now(timezone.utc)

        def mutate(mission: LetterMission) -> None:
            if not mission.is_participant(user_id):
                raise ForbiddenError("You are not a participant in this mission")
            if not mission.is_completed:
                raise InvalidStateError("The mission is not complete yet")
            if user_id in mission.reward_claimed_by:
                raise InvalidStateError("You have already claimed this reward")
            mission.reward_claimed_by.append(user_id)
            mission.updated_utc = now

        mission = self._store.update(Collection.MISSIONS, match_id, mutate)
        return Outcome(
            record=mission,
            events=[PendingEvent(
                EventKind.MISSION_REWARD_CLAIMED,
                user_id,
                {"match_id": match_id, "user_id": user_id, "points": reward_points},
            )],
        )
