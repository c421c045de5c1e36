"""Match lifecycle: address exchange, admin review, cancellation.

    ADDRESS_PENDING ──both addresses──▶ ADMIN_REVIEW ──approve──▶ COMPLETED
          │                                 │ reject                  │
          └──────────── cancel ─────────────┴──────────▶ CANCELLED ◀──┘

The match record is shared by both guardians and the admin, so every
write here goes through ``RecordStore.update``: the flag check and the
status change are recomputed against the freshest copy and committed
with a version check. Two guardians submitting at the same instant both
land their flag, and exactly one of them moves the match to
ADMIN_REVIEW.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from penpal.errors import (
    ForbiddenError,
    InvalidStateError,
    InvariantViolationError,
)
from penpal.letters.mission_tracker import MissionTracker
from penpal.letters.proofs import LetterProofEngine
from penpal.matching.applications import ApplicationDesk
from penpal.matching.match_state_machine import MatchStateMachine
from penpal.models.penpal import MatchSide, MatchStatus, ParentAddress, PenpalMatch
from penpal.notifications.effects import (
    AdminAlert,
    AdminAlertType,
    AlertPriority,
    Notify,
    NotificationType,
)
from penpal.outcome import Outcome, PendingEvent
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection, RecordStore

logger = logging.getLogger(__name__)


def address_id_for(match_id: str, user_id: str) -> str:
    """Addresses are keyed by (user, match)."""
    return f"{match_id}:{user_id}"


def _transition(match: PenpalMatch, target: MatchStatus) -> None:
    errors = MatchStateMachine.apply_transition(match, target)
    if errors:
        raise InvalidStateError(errors[0])


class MatchLifecycle:
    """Store-backed match transitions."""

    def __init__(
        self,
        store: RecordStore,
        desk: ApplicationDesk,
        missions: MissionTracker,
        letters: LetterProofEngine,
    ) -> None:
        self._store = store
        self._desk = desk
        self._missions = missions
        self._letters = letters

    # ------------------------------------------------------------------
    # Guardians
    # ------------------------------------------------------------------

    def submit_address(
        self,
        match_id: str,
        user_id: str,
        parent_name: str,
        address: str,
        postal_code: str,
        email: str,
        phone: str = "",
        consent_to_share: bool = False,
        side: Optional[MatchSide] = None,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalMatch]:
        """Store one guardian's address and set their side's flag.

        The side is derived from the caller; an explicit ``side`` must
        agree with it.

        Re-submission by a side that already submitted is a successful
        no-op; the first stored address stands.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        match = self._store.require(Collection.MATCHES, match_id)
        caller_side = match.side_of(user_id)
        if caller_side is None:
            raise ForbiddenError("You are not a participant in this match")
        if side is not None and MatchSide(side) != caller_side:
            raise ForbiddenError("You can only submit the address for your own side")
        side = caller_side
        if match.status == MatchStatus.CANCELLED:
            raise InvalidStateError("This match has been cancelled")
        if not consent_to_share:
            raise InvariantViolationError("Consent to share the address is required")
        missing = [
            name for name, value in (
                ("parent name", parent_name),
                ("address", address),
                ("postal code", postal_code),
                ("email", email),
            )
            if not value or not value.strip()
        ]
        if missing:
            raise InvariantViolationError(f"Missing address fields: {', '.join(missing)}")
        if match.address_submitted(side):
            return Outcome(record=match)

        self._store.insert_if_absent(
            Collection.ADDRESSES,
            address_id_for(match_id, user_id),
            ParentAddress(
                address_id=address_id_for(match_id, user_id),
                user_id=user_id,
                match_id=match_id,
                parent_name=parent_name.strip(),
                address=address.strip(),
                postal_code=postal_code.strip(),
                email=email.strip(),
                phone=phone.strip(),
                consent_to_share=True,
                created_utc=now,
            ),
        )

        changed: list[bool] = []

        def mutate(current: PenpalMatch) -> None:
            changed.clear()
            if current.status == MatchStatus.CANCELLED:
                raise InvalidStateError("This match has been cancelled")
            if current.address_submitted(side):
                return
            if side == MatchSide.USER1:
                current.user1_address_submitted = True
            else:
                current.user2_address_submitted = True
            current.updated_utc = now
            changed.append(True)
            if (
                current.status == MatchStatus.ADDRESS_PENDING
                and current.user1_address_submitted
                and current.user2_address_submitted
            ):
                _transition(current, MatchStatus.ADMIN_REVIEW)

        match = self._store.update(Collection.MATCHES, match_id, mutate)
        outcome: Outcome[PenpalMatch] = Outcome(record=match)
        if not changed:
            return outcome

        outcome.events.append(PendingEvent(
            EventKind.ADDRESS_SUBMITTED,
            user_id,
            {"match_id": match_id, "user_id": user_id, "side": side.value},
        ))
        if match.status == MatchStatus.ADMIN_REVIEW:
            outcome.events.append(PendingEvent(
                EventKind.MATCH_ADMIN_REVIEW, user_id, {"match_id": match_id},
            ))
            outcome.effects.append(AdminAlert(
                alert_type=AdminAlertType.MATCH_REVIEW,
                priority=AlertPriority.MEDIUM,
                title="Pen-pal match ready for review",
                message=(
                    f"{match.user1_child_name} and {match.user2_child_name} have both "
                    f"submitted addresses."
                ),
                link=f"/admin/penpal/matches/{match_id}",
                subject={"match_id": match_id},
            ))
        return outcome

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def approve(
        self,
        match_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalMatch]:
        """Approve a reviewed match: addresses open up and the mission starts."""
        if now is None:
            now = datetime.now(timezone.utc)

        def mutate(current: PenpalMatch) -> None:
            if current.status != MatchStatus.ADMIN_REVIEW:
                raise InvalidStateError(
                    f"Only matches in admin review can be approved (status: {current.status.value})"
                )
            _transition(current, MatchStatus.COMPLETED)
            current.approved_utc = now
            current.approved_by = admin_id
            current.updated_utc = now

        match = self._store.update(Collection.MATCHES, match_id, mutate)
        logger.info("Match %s approved by %s", match_id, admin_id)

        outcome: Outcome[PenpalMatch] = Outcome(
            record=match,
            events=[PendingEvent(EventKind.MATCH_APPROVED, admin_id, {"match_id": match_id})],
        )
        outcome.absorb(self._missions.create_for_match(match, now))
        for user_id in match.participants():
            partner_name = match.child_name_of(match.partner_of(user_id))
            outcome.effects.append(Notify(
                user_id=user_id,
                notification_type=NotificationType.MATCH_APPROVED,
                title="Pen-pal match approved!",
                message=(
                    f"You can now see {partner_name}'s mailing address "
                    f"and send your first letter."
                ),
                link=f"/penpal/{match_id}",
            ))
        return outcome

    def reject(
        self,
        match_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalMatch]:
        """Reject a reviewed match. No reputation penalty for either side."""
        if now is None:
            now = datetime.now(timezone.utc)
        reason = (reason or "").strip()
        if not reason:
            raise InvariantViolationError("A reason is required to reject a match")

        def mutate(current: PenpalMatch) -> None:
            if current.status != MatchStatus.ADMIN_REVIEW:
                raise InvalidStateError(
                    f"Only matches in admin review can be rejected (status: {current.status.value})"
                )
            _transition(current, MatchStatus.CANCELLED)
            current.rejected_utc = now
            current.rejection_reason = reason
            current.cancelled_utc = now
            current.cancelled_by = admin_id
            current.cancel_reason = reason
            current.updated_utc = now

        match = self._store.update(Collection.MATCHES, match_id, mutate)
        self._desk.restore_profiles(match, now)
        return Outcome(
            record=match,
            effects=[
                Notify(
                    user_id=user_id,
                    notification_type=NotificationType.MATCH_REJECTED,
                    title="Pen-pal match not approved",
                    message=reason,
                    link="/penpal/profiles",
                )
                for user_id in match.participants()
            ],
            events=[PendingEvent(
                EventKind.MATCH_REJECTED, admin_id, {"match_id": match_id, "reason": reason},
            )],
        )

    def cancel(
        self,
        match_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalMatch]:
        """Terminate a non-terminal match and reopen both profiles.

        Outstanding letters are withdrawn so the escalation sweep never
        verifies a letter on a dead match.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        def mutate(current: PenpalMatch) -> None:
            _transition(current, MatchStatus.CANCELLED)
            current.cancelled_utc = now
            current.cancelled_by = actor_id
            current.cancel_reason = reason
            current.updated_utc = now

        match = self._store.update(Collection.MATCHES, match_id, mutate)
        self._desk.restore_profiles(match, now)
        withdrawn = self._letters.withdraw_outstanding(match_id, actor_id, now)
        logger.info(
            "Match %s cancelled by %s (%d outstanding letters withdrawn)",
            match_id, actor_id, len(withdrawn),
        )
        return Outcome(
            record=match,
            events=[PendingEvent(
                EventKind.MATCH_CANCELLED,
                actor_id,
                {"match_id": match_id, "reason": reason, "withdrawn_letters": len(withdrawn)},
            )],
        )

    def send_address_reminders(
        self,
        match_id: str,
        admin_id: str,
        ttl_hours: int,
        now: Optional[datetime] = None,
    ) -> Outcome[list[str]]:
        """Remind each side that has not yet submitted an address."""
        if now is None:
            now = datetime.now(timezone.utc)
        match = self._store.require(Collection.MATCHES, match_id)
        if match.status != MatchStatus.ADDRESS_PENDING:
            raise InvalidStateError(
                f"Address reminders only apply while addresses are pending "
                f"(status: {match.status.value})"
            )
        expires = now + timedelta(hours=ttl_hours)
        reminded = [
            user_id for user_id in match.participants()
            if not match.address_submitted(match.side_of(user_id))
        ]
        outcome: Outcome[list[str]] = Outcome(record=reminded)
        for user_id in reminded:
            partner_name = match.child_name_of(match.partner_of(user_id))
            outcome.effects.append(Notify(
                user_id=user_id,
                notification_type=NotificationType.ADDRESS_REMINDER,
                title="Please submit your mailing address",
                message=f"{partner_name} is waiting to start exchanging letters.",
                link=f"/penpal/{match_id}/address",
                expires_utc=expires,
            ))
        outcome.events.append(PendingEvent(
            EventKind.ADDRESS_REMINDER_SENT,
            admin_id,
            {"match_id": match_id, "reminded": list(reminded)},
        ))
        return outcome
