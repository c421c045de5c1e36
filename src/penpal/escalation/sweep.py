"""Escalation sweep: time-based follow-up on letters nobody verified.

Triggered externally (cron, the CLI ``sweep`` command). For every proof
still SENT, whole days since the sender's upload decide what happens:

    day >= 3   remind the receiver to verify           stage → REMINDED
    day >= 7   alert the admins                        stage → ADMIN_NOTIFIED
    day >= 10  auto-verify and advance the mission     stage → RESOLVED

The checks are cumulative: a sweep that runs late may fire several of
them for one proof in one pass. Each fires at most once per proof
because the stage only moves forward and is re-checked inside the
proof's optimistic update. A receiver verifying concurrently either
wins (the sweep sees a non-SENT proof and does nothing) or loses (their
verify fails with "already verified"); the mission advances once.

A failure on one proof is logged and counted; the sweep carries on.

Delivered letters whose mission step was never marked (the mission
write failed after the delivery committed) are marked again here.
Marking a step is idempotent, so a repair that races a late mission
write is harmless.

The sweep also raises a one-time admin alert for cancellation requests
left pending too long. Requests never expire on their own.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from penpal.errors import InvalidStateError, InvariantViolationError
from penpal.letters.mission_tracker import MissionTracker, step_marked
from penpal.letters.proof_state_machine import DELIVERED, ProofStateMachine
from penpal.models.cancellation import CancelRequestStatus, PenpalCancelRequest
from penpal.models.letter import (
    ESCALATION_ORDER,
    EscalationStage,
    LetterProof,
    LetterProofStatus,
)
from penpal.models.penpal import MatchStatus
from penpal.models.reputation import ReputationAction
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
from penpal.policy import PenpalPolicy
from penpal.reputation.ledger import ReputationBook

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:escalation"

REMINDER_AFTER_DAYS = 3
ADMIN_ALERT_AFTER_DAYS = 7
AUTO_VERIFY_AFTER_DAYS = 10


class EscalationAction(str, enum.Enum):
    REMIND = "remind"
    ALERT_ADMIN = "alert_admin"
    AUTO_VERIFY = "auto_verify"


def _before(stage: EscalationStage, target: EscalationStage) -> bool:
    return ESCALATION_ORDER.index(stage) < ESCALATION_ORDER.index(target)


def due_actions(proof: LetterProof, now: datetime) -> list[EscalationAction]:
    """Actions the sweep should take for ``proof`` at ``now``. Pure.

    Empty for any proof that is not SENT or whose escalation is resolved.
    """
    if proof.status != LetterProofStatus.SENT:
        return []
    if proof.escalation_stage == EscalationStage.RESOLVED:
        return []
    days = proof.days_outstanding(now)
    actions: list[EscalationAction] = []
    if days >= REMINDER_AFTER_DAYS and _before(proof.escalation_stage, EscalationStage.REMINDED):
        actions.append(EscalationAction.REMIND)
    if days >= ADMIN_ALERT_AFTER_DAYS and _before(
        proof.escalation_stage, EscalationStage.ADMIN_NOTIFIED,
    ):
        actions.append(EscalationAction.ALERT_ADMIN)
    if days >= AUTO_VERIFY_AFTER_DAYS:
        actions.append(EscalationAction.AUTO_VERIFY)
    return actions


@dataclass
class SweepReport:
    """Counts from one sweep run."""
    scanned: int = 0
    reminders: int = 0
    admin_alerts: int = 0
    auto_verified: int = 0
    missions_repaired: int = 0
    stale_cancel_alerts: int = 0
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "reminders": self.reminders,
            "admin_alerts": self.admin_alerts,
            "auto_verified": self.auto_verified,
            "missions_repaired": self.missions_repaired,
            "stale_cancel_alerts": self.stale_cancel_alerts,
            "failures": list(self.failures),
        }


class EscalationSweep:
    """Runs the periodic escalation pass over outstanding letters."""

    def __init__(
        self,
        store: RecordStore,
        missions: MissionTracker,
        reputation: ReputationBook,
        policy: PenpalPolicy,
    ) -> None:
        self._store = store
        self._missions = missions
        self._reputation = reputation
        self._policy = policy

    def run(self, now: Optional[datetime] = None) -> Outcome[SweepReport]:
        """One full pass. Safe to run repeatedly and concurrently."""
        if now is None:
            now = datetime.now(timezone.utc)
        if now.tzinfo is None:
            raise InvariantViolationError("The sweep time must be timezone-aware")
        report = SweepReport()
        outcome: Outcome[SweepReport] = Outcome(record=report)

        candidates = self._store.list(
            Collection.PROOFS, lambda p: p.status == LetterProofStatus.SENT,
        )
        for candidate in candidates:
            report.scanned += 1
            try:
                fired = self.process_proof(candidate.proof_id, now)
            except Exception:
                logger.exception("Escalation failed for letter proof %s", candidate.proof_id)
                report.failures.append(candidate.proof_id)
                continue
            actions = fired.record
            report.reminders += actions.count(EscalationAction.REMIND)
            report.admin_alerts += actions.count(EscalationAction.ALERT_ADMIN)
            report.auto_verified += actions.count(EscalationAction.AUTO_VERIFY)
            outcome.absorb(fired)

        for proof in self._unmarked_deliveries():
            try:
                repaired = self.repair_mission(proof, now)
            except Exception:
                logger.exception("Mission repair failed for letter proof %s", proof.proof_id)
                report.failures.append(proof.proof_id)
                continue
            report.missions_repaired += 1
            outcome.absorb(repaired)

        for request in self._stale_cancel_requests(now):
            try:
                alerted = self.alert_stale_cancel_request(request.request_id, now)
            except Exception:
                logger.exception("Stale-request alert failed for %s", request.request_id)
                report.failures.append(request.request_id)
                continue
            if alerted.record:
                report.stale_cancel_alerts += 1
                outcome.absorb(alerted)

        logger.info(
            "Escalation sweep: scanned=%d reminders=%d admin_alerts=%d "
            "auto_verified=%d missions_repaired=%d stale_cancel_alerts=%d failures=%d",
            report.scanned, report.reminders, report.admin_alerts,
            report.auto_verified, report.missions_repaired, report.stale_cancel_alerts,
            len(report.failures),
        )
        return outcome

    def process_proof(self, proof_id: str, now: datetime) -> Outcome[list[EscalationAction]]:
        """Escalate one proof. Returns the actions that actually fired."""
        match = self._store.require(
            Collection.MATCHES, self._store.require(Collection.PROOFS, proof_id).match_id,
        )
        if match.status != MatchStatus.COMPLETED:
            logger.warning(
                "Skipping escalation for proof %s: match %s is %s",
                proof_id, match.match_id, match.status.value,
            )
            return Outcome(record=[])

        fired: list[EscalationAction] = []

        def mutate(current: LetterProof) -> None:
            fired.clear()
            actions = due_actions(current, now)
            if EscalationAction.REMIND in actions:
                current.reminder_sent_utc = now
                current.escalation_stage = EscalationStage.REMINDED
            if EscalationAction.ALERT_ADMIN in actions:
                current.admin_notified_utc = now
                current.escalation_stage = EscalationStage.ADMIN_NOTIFIED
            if EscalationAction.AUTO_VERIFY in actions:
                errors = ProofStateMachine.apply_transition(
                    current, LetterProofStatus.AUTO_VERIFIED,
                )
                if errors:
                    raise InvalidStateError(errors[0])
                current.auto_verified_utc = now
                current.verified_utc = now
                current.escalation_stage = EscalationStage.RESOLVED
            fired.extend(actions)

        proof = self._store.update(Collection.PROOFS, proof_id, mutate)
        outcome: Outcome[list[EscalationAction]] = Outcome(record=list(fired))
        if not fired:
            return outcome

        days = proof.days_outstanding(now)
        subject = {"match_id": proof.match_id, "proof_id": proof_id}
        link = f"/penpal/{proof.match_id}/letters/{proof_id}"

        if EscalationAction.REMIND in fired:
            outcome.effects.append(Notify(
                user_id=proof.receiver_id,
                notification_type=NotificationType.VERIFICATION_REMINDER,
                title="Did your letter arrive?",
                message=(
                    f"{proof.sender_child_name} sent letter #{proof.step_number} "
                    f"{days} days ago. Please take a photo when it arrives."
                ),
                link=link,
            ))
            outcome.events.append(PendingEvent(
                EventKind.LETTER_REMINDER, SYSTEM_ACTOR, dict(subject, days=days),
            ))
        if EscalationAction.ALERT_ADMIN in fired:
            outcome.effects.append(AdminAlert(
                alert_type=AdminAlertType.VERIFICATION_DELAY,
                priority=AlertPriority.MEDIUM,
                title="Letter verification delayed",
                message=(
                    f"Letter #{proof.step_number} from {proof.sender_child_name} to "
                    f"{proof.receiver_child_name} is unverified after {days} days."
                ),
                link=f"/admin/penpal/letters/{proof_id}",
                subject=subject,
            ))
            outcome.events.append(PendingEvent(
                EventKind.LETTER_ADMIN_ALERT, SYSTEM_ACTOR, dict(subject, days=days),
            ))
        if EscalationAction.AUTO_VERIFY in fired:
            logger.info("Letter proof %s auto-verified after %d days", proof_id, days)
            outcome.effects.append(Notify(
                user_id=proof.receiver_id,
                notification_type=NotificationType.AUTO_VERIFIED,
                title="Letter verified automatically",
                message=(
                    f"Letter #{proof.step_number} from {proof.sender_child_name} was "
                    f"verified automatically because it was not confirmed within "
                    f"{AUTO_VERIFY_AFTER_DAYS} days."
                ),
                link=link,
            ))
            outcome.events.append(PendingEvent(
                EventKind.LETTER_AUTO_VERIFIED, SYSTEM_ACTOR, dict(subject, days=days),
            ))
            outcome.absorb(
                self._missions.advance(proof.match_id, proof.step_number, SYSTEM_ACTOR, now)
            )
            if self._policy.penalize_auto_verify:
                outcome.absorb(self._reputation.record(
                    proof.receiver_id,
                    ReputationAction.LATE_RESPONSE,
                    now,
                    reason=f"Letter #{proof.step_number} not verified within "
                           f"{AUTO_VERIFY_AFTER_DAYS} days",
                    match_id=proof.match_id,
                ))
        return outcome

    def repair_mission(self, proof: LetterProof, now: datetime) -> Outcome[int]:
        """Mark a delivered letter's step on a mission that missed it.

        Delivery and mission progress are separate commits. When the
        mission write fails after the proof has left SENT, nothing else
        revisits the step, so the sweep finishes it here.
        """
        logger.warning(
            "Mission %s is missing delivered step %d (proof %s); marking it",
            proof.match_id, proof.step_number, proof.proof_id,
        )
        advanced = self._missions.advance(proof.match_id, proof.step_number, SYSTEM_ACTOR, now)
        outcome: Outcome[int] = Outcome(record=proof.step_number)
        outcome.events.append(PendingEvent(
            EventKind.MISSION_STEP_REPAIRED,
            SYSTEM_ACTOR,
            {"match_id": proof.match_id, "proof_id": proof.proof_id, "step": proof.step_number},
        ))
        outcome.absorb(advanced)
        return outcome

    def _unmarked_deliveries(self) -> list[LetterProof]:
        delivered = self._store.list(Collection.PROOFS, lambda p: p.status in DELIVERED)
        unmarked: list[LetterProof] = []
        for proof in delivered:
            match = self._store.get(Collection.MATCHES, proof.match_id)
            if match is None or match.status != MatchStatus.COMPLETED:
                continue
            mission = self._store.get(Collection.MISSIONS, proof.match_id)
            if mission is not None and not step_marked(mission, proof.step_number):
                unmarked.append(proof)
        return unmarked

    def alert_stale_cancel_request(
        self, request_id: str, now: datetime,
    ) -> Outcome[bool]:
        """Raise the one-time admin alert for a long-pending cancel request."""
        fired: list[bool] = []

        def mutate(current: PenpalCancelRequest) -> None:
            fired.clear()
            if current.status != CancelRequestStatus.PENDING or current.admin_notified_utc:
                return
            current.admin_notified_utc = now
            fired.append(True)

        request = self._store.update(Collection.CANCEL_REQUESTS, request_id, mutate)
        if not fired:
            return Outcome(record=False)
        days = (now - request.created_utc).days
        return Outcome(
            record=True,
            effects=[AdminAlert(
                alert_type=AdminAlertType.STALE_CANCEL_REQUEST,
                priority=AlertPriority.HIGH,
                title="Cancellation request waiting",
                message=(
                    f"{request.requester_child_name}'s request to end the pen-pal match "
                    f"with {request.partner_child_name} has waited {days} days."
                ),
                link=f"/admin/penpal/cancel-requests/{request_id}",
                subject={"match_id": request.match_id, "request_id": request_id},
            )],
            events=[PendingEvent(
                EventKind.CANCEL_REQUEST_ADMIN_ALERT,
                SYSTEM_ACTOR,
                {"match_id": request.match_id, "request_id": request_id, "days": days},
            )],
        )

    def _stale_cancel_requests(self, now: datetime) -> list[PenpalCancelRequest]:
        cutoff = now - timedelta(days=self._policy.cancel_request_alert_days)
        return self._store.list(
            Collection.CANCEL_REQUESTS,
            lambda r: r.status == CancelRequestStatus.PENDING
            and r.admin_notified_utc is None
            and r.created_utc is not None
            and r.created_utc <= cutoff,
        )
