"""Letter proof operations: send, verify, dispute, resolve.

Each mission step is one physical letter. The sender photographs it and
submits; the receiver photographs it on arrival and verifies. Until the
receiver acts the proof is outstanding, and the escalation sweep may
move it on their behalf.

Rules:
- Only the next step (current_step + 1) may be sent, only by a match
  participant, and only while the match is COMPLETED (approved).
- At most one proof per (match, step) that is not cancelled. The check
  and the insert are a single store operation, so two participants
  sending at once cannot both claim the step.
- Sending never advances the mission. Delivery (received or
  auto-verified) does.
- Every status check is repeated inside the store's optimistic update,
  so a receiver verifying at the same moment the sweep auto-verifies
  produces exactly one delivery.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from penpal.errors import (
    ForbiddenError,
    InvalidStateError,
    InvariantViolationError,
)
from penpal.letters.mission_tracker import MissionTracker
from penpal.letters.proof_state_machine import OUTSTANDING, ProofStateMachine
from penpal.models.letter import EscalationStage, LetterProof, LetterProofStatus
from penpal.models.penpal import MatchStatus
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
from penpal.storage.blob import BlobStore, upload_letter_photo


def _transition(proof: LetterProof, target: LetterProofStatus) -> None:
    errors = ProofStateMachine.apply_transition(proof, target)
    if errors:
        raise InvalidStateError(errors[0])


def _holds_step(match_id: str, step: int) -> Callable[[LetterProof], bool]:
    """Proofs that occupy a step. Only a cancelled proof frees it for a resend."""
    return lambda p: (
        p.match_id == match_id
        and p.step_number == step
        and p.status != LetterProofStatus.CANCELLED
    )


def _step_taken_message(step: int) -> str:
    return f"A letter for step {step} has already been sent"


def _already_settled_message(proof: LetterProof) -> str:
    if proof.status in (LetterProofStatus.RECEIVED, LetterProofStatus.AUTO_VERIFIED):
        return "This letter has already been verified"
    if proof.status == LetterProofStatus.DISPUTED:
        return "This letter is under dispute"
    return "This letter was cancelled"


class LetterProofEngine:
    """Store-backed letter proof lifecycle."""

    def __init__(
        self,
        store: RecordStore,
        blob_store: BlobStore,
        missions: MissionTracker,
    ) -> None:
        self._store = store
        self._blobs = blob_store
        self._missions = missions

    # ------------------------------------------------------------------
    # Sender
    # ------------------------------------------------------------------

    def send(
        self,
        match_id: str,
        sender_id: str,
        image: bytes,
        step: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterProof]:
        """Submit the photo of a sent letter for the mission's next step.

        ``step`` is optional; when given it must equal current_step + 1.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        match = self._store.require(Collection.MATCHES, match_id)
        if not match.is_participant(sender_id):
            raise ForbiddenError("You are not a participant in this match")
        if match.status != MatchStatus.COMPLETED:
            raise InvalidStateError(
                f"Letters can only be sent on an approved match (status: {match.status.value})"
            )
        mission = self._store.require(Collection.MISSIONS, match_id)

        next_step = mission.next_step
        if step is not None and step != next_step:
            raise InvariantViolationError(
                f"Step {step} is out of sequence; the next step is {next_step}"
            )
        if next_step > mission.total_steps and not mission.extended:
            raise InvalidStateError("All letters for this mission have been exchanged")
        holds_step = _holds_step(match_id, next_step)
        if self._store.list(Collection.PROOFS, holds_step):
            raise InvalidStateError(_step_taken_message(next_step))

        receiver_id = match.partner_of(sender_id)
        image_url = upload_letter_photo(self._blobs, image, match_id, next_step, "sender")
        proof = LetterProof(
            proof_id=f"proof-{uuid.uuid4().hex[:12]}",
            match_id=match_id,
            step_number=next_step,
            sender_id=sender_id,
            sender_child_name=match.child_name_of(sender_id),
            receiver_id=receiver_id,
            receiver_child_name=match.child_name_of(receiver_id),
            sender_image_url=image_url,
            sender_uploaded_utc=now,
        )
        stored = self._store.insert_unique(
            Collection.PROOFS, proof.proof_id, proof, conflicts=holds_step,
        )
        if stored is None:
            raise InvalidStateError(_step_taken_message(next_step))
        proof = stored

        return Outcome(
            record=proof,
            effects=[Notify(
                user_id=receiver_id,
                notification_type=NotificationType.LETTER_SENT,
                title="A letter is on its way!",
                message=(
                    f"{proof.sender_child_name} sent letter #{next_step}. "
                    f"When it arrives, take a photo to verify it."
                ),
                link=f"/penpal/{match_id}/letters/{proof.proof_id}",
            )],
            events=[PendingEvent(
                EventKind.LETTER_SENT,
                sender_id,
                {"match_id": match_id, "proof_id": proof.proof_id, "step": next_step},
            )],
        )

    # ------------------------------------------------------------------
    # Receiver
    # ------------------------------------------------------------------

    def receive(
        self,
        proof_id: str,
        receiver_id: str,
        image: bytes,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterProof]:
        """Verify arrival of a letter with a photo and advance the mission."""
        if now is None:
            now = datetime.now(timezone.utc)
        proof = self._store.require(Collection.PROOFS, proof_id)
        self._check_receiver(proof, receiver_id)
        if proof.status != LetterProofStatus.SENT:
            raise InvalidStateError(_already_settled_message(proof))

        image_url = upload_letter_photo(
            self._blobs, image, proof.match_id, proof.step_number, "receiver",
        )

        def mutate(current: LetterProof) -> None:
            if current.status != LetterProofStatus.SENT:
                raise InvalidStateError(_already_settled_message(current))
            _transition(current, LetterProofStatus.RECEIVED)
            current.receiver_image_url = image_url
            current.receiver_uploaded_utc = now
            current.verified_utc = now
            current.escalation_stage = EscalationStage.RESOLVED

        proof = self._store.update(Collection.PROOFS, proof_id, mutate)
        outcome: Outcome[LetterProof] = Outcome(
            record=proof,
            effects=[Notify(
                user_id=proof.sender_id,
                notification_type=NotificationType.LETTER_RECEIVED,
                title="Your letter arrived!",
                message=f"{proof.receiver_child_name} received letter #{proof.step_number}.",
                link=f"/penpal/{proof.match_id}",
            )],
            events=[PendingEvent(
                EventKind.LETTER_RECEIVED,
                receiver_id,
                {"match_id": proof.match_id, "proof_id": proof_id, "step": proof.step_number},
            )],
        )
        outcome.absorb(self._missions.advance(proof.match_id, proof.step_number, receiver_id, now))
        return outcome

    def dispute(
        self,
        proof_id: str,
        receiver_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterProof]:
        """Report that a letter never arrived. Freezes the step for an admin."""
        if now is None:
            now = datetime.now(timezone.utc)
        reason = (reason or "").strip()
        if not reason:
            raise InvariantViolationError("A reason is required to report a missing letter")
        proof = self._store.require(Collection.PROOFS, proof_id)
        self._check_receiver(proof, receiver_id)

        def mutate(current: LetterProof) -> None:
            if current.status != LetterProofStatus.SENT:
                raise InvalidStateError(_already_settled_message(current))
            _transition(current, LetterProofStatus.DISPUTED)
            current.dispute_reason = reason
            current.disputed_utc = now
            current.escalation_stage = EscalationStage.RESOLVED

        proof = self._store.update(Collection.PROOFS, proof_id, mutate)
        return Outcome(
            record=proof,
            effects=[
                AdminAlert(
                    alert_type=AdminAlertType.LETTER_DISPUTE,
                    priority=AlertPriority.HIGH,
                    title="Letter reported missing",
                    message=(
                        f"{proof.receiver_child_name} reports letter #{proof.step_number} "
                        f"from {proof.sender_child_name} has not arrived: {reason}"
                    ),
                    link=f"/admin/penpal/letters/{proof_id}",
                    subject={"match_id": proof.match_id, "proof_id": proof_id},
                ),
                Notify(
                    user_id=proof.sender_id,
                    notification_type=NotificationType.LETTER_NOT_ARRIVED,
                    title="Your letter has not arrived yet",
                    message=(
                        f"{proof.receiver_child_name} has not received letter "
                        f"#{proof.step_number}. An administrator is checking."
                    ),
                    link=f"/penpal/{proof.match_id}",
                ),
            ],
            events=[PendingEvent(
                EventKind.LETTER_DISPUTED,
                receiver_id,
                {"match_id": proof.match_id, "proof_id": proof_id, "reason": reason},
            )],
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def resolve_dispute(
        self,
        proof_id: str,
        approve: bool,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[LetterProof]:
        """Decide a disputed letter.

        approve=True: the letter was not delivered. The proof is cancelled
        and the sender is asked to resend the same step.
        approve=False: the letter was delivered. The proof is verified on
        the receiver's behalf and the mission advances.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        target = LetterProofStatus.CANCELLED if approve else LetterProofStatus.AUTO_VERIFIED

        def mutate(current: LetterProof) -> None:
            if current.status != LetterProofStatus.DISPUTED:
                raise InvalidStateError(
                    f"Only disputed letters can be resolved (status: {current.status.value})"
                )
            _transition(current, target)
            current.resolved_utc = now
            current.resolved_by = admin_id
            if not approve:
                current.auto_verified_utc = now
                current.verified_utc = now

        proof = self._store.update(Collection.PROOFS, proof_id, mutate)
        outcome: Outcome[LetterProof] = Outcome(
            record=proof,
            events=[PendingEvent(
                EventKind.LETTER_DISPUTE_RESOLVED,
                admin_id,
                {
                    "match_id": proof.match_id,
                    "proof_id": proof_id,
                    "approved": approve,
                    "status": proof.status.value,
                },
            )],
        )
        link = f"/penpal/{proof.match_id}"
        if approve:
            outcome.effects.extend([
                Notify(
                    user_id=proof.sender_id,
                    notification_type=NotificationType.LETTER_NOT_ARRIVED,
                    title="Please send your letter again",
                    message=(
                        f"Letter #{proof.step_number} did not reach "
                        f"{proof.receiver_child_name}. Please write and send it again."
                    ),
                    link=link,
                ),
                Notify(
                    user_id=proof.receiver_id,
                    notification_type=NotificationType.LETTER_NOT_ARRIVED,
                    title="Missing letter confirmed",
                    message=(
                        f"{proof.sender_child_name} has been asked to send "
                        f"letter #{proof.step_number} again."
                    ),
                    link=link,
                ),
            ])
        else:
            outcome.effects.append(Notify(
                user_id=proof.receiver_id,
                notification_type=NotificationType.AUTO_VERIFIED,
                title="Letter confirmed as delivered",
                message=(
                    f"An administrator confirmed letter #{proof.step_number} from "
                    f"{proof.sender_child_name} was delivered. Please check your mailbox."
                ),
                link=link,
            ))
            outcome.absorb(self._missions.advance(proof.match_id, proof.step_number, admin_id, now))
        return outcome

    def withdraw_outstanding(
        self,
        match_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> list[LetterProof]:
        """Cancel every outstanding proof of a match that is being cancelled."""
        if now is None:
            now = datetime.now(timezone.utc)
        withdrawn: list[LetterProof] = []
        proofs = self._store.list(
            Collection.PROOFS,
            lambda p: p.match_id == match_id and p.status in OUTSTANDING,
        )
        for proof in proofs:

            def mutate(current: LetterProof) -> None:
                if current.status not in OUTSTANDING:
                    return
                _transition(current, LetterProofStatus.CANCELLED)
                current.escalation_stage = EscalationStage.RESOLVED
                current.resolved_utc = now
                current.resolved_by = actor_id

            withdrawn.append(self._store.update(Collection.PROOFS, proof.proof_id, mutate))
        return withdrawn

    @staticmethod
    def _check_receiver(proof: LetterProof, user_id: str) -> None:
        if user_id != proof.receiver_id:
            raise ForbiddenError("Only the receiver of this letter can do that")
