"""Pen-pal service: unified facade for the letter-exchange workflow.

This is the primary interface for programmatic access. It orchestrates
all subsystems:
- Recruitment (profiles, applications, acceptance)
- Match lifecycle (addresses, admin review, disclosure gate)
- Letters (send, verify, dispute, admin resolution, missions)
- Escalation sweep (reminders, admin alerts, auto-verification)
- Cancellation arbitration and reputation
- Persistence (record store, audit event log)

Every mutating operation returns a ServiceResult and never raises for a
workflow error: engines raise PenpalError subclasses and this layer
turns them into failed results carrying the error kind. On success the
state is already committed; the audit events are then appended and the
notifications dispatched. Neither of those can undo the commit: an
event-log failure comes back as a ``warning`` and a notification
failure is only logged.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from penpal.cancellation.arbitration import CancellationArbiter
from penpal.errors import ErrorKind, ForbiddenError, InvariantViolationError, PenpalError
from penpal.escalation.sweep import EscalationSweep
from penpal.letters.mission_tracker import MissionTracker
from penpal.letters.proofs import LetterProofEngine
from penpal.matching.address_gate import AddressGate
from penpal.matching.applications import ApplicationDesk
from penpal.matching.lifecycle import MatchLifecycle
from penpal.models.cancellation import CancelRequestStatus, PenpalCancelRequest
from penpal.models.letter import LetterMission, LetterProof, LetterProofStatus
from penpal.models.penpal import CharacterStamp, MatchSide, MatchStatus, PenpalMatch
from penpal.models.reputation import ReputationAction, UserPenpalReputation
from penpal.notifications.effects import (
    EffectDispatcher,
    InMemoryNotificationSink,
    NotificationSink,
)
from penpal.outcome import Outcome, PendingEvent
from penpal.persistence.codec import encode
from penpal.persistence.event_log import EventLog, EventRecord
from penpal.persistence.store import Collection, RecordStore
from penpal.policy import PenpalPolicy
from penpal.reputation.ledger import ReputationBook
from penpal.storage.blob import BlobStore, InMemoryBlobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None


class PenpalService:
    """Unified pen-pal workflow facade.

    Usage:
        policy = PenpalPolicy.from_config_dir(config_dir)
        service = PenpalService(policy)

        result = service.register_profile(...)
        result = service.apply_to_profile(profile_id, "bob", "Minji")
        result = service.accept_application(application_id, "alice")
        match_id = result.data["match"]["match_id"]

        service.submit_address(match_id, "alice", ...)
        service.submit_address(match_id, "bob", ...)
        service.admin_approve_match(match_id, admin_id="admin")

        result = service.send_letter(match_id, "alice", image_bytes)
        service.verify_letter_received(result.data["proof"]["proof_id"], "bob", photo)

        # Once a day
        service.run_escalation_sweep()

    Persistence (optional):
        store = RecordStore(storage_path=data_dir / "state.json")
        log = EventLog(storage_path=data_dir / "events.jsonl")
        service = PenpalService(policy, store=store, event_log=log)
    """

    def __init__(
        self,
        policy: PenpalPolicy,
        store: Optional[RecordStore] = None,
        blob_store: Optional[BlobStore] = None,
        sink: Optional[NotificationSink] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._policy = policy
        self._store = store or RecordStore(max_retries=policy.store_max_retries)
        self._blob_store = blob_store or InMemoryBlobStore()
        self._sink = sink or InMemoryNotificationSink()
        self._dispatcher = EffectDispatcher(self._sink)
        self._event_log = event_log
        self._event_log_degraded = False

        self._reputation = ReputationBook(self._store)
        self._desk = ApplicationDesk(self._store, self._reputation)
        self._missions = MissionTracker(self._store, self._reputation)
        self._letters = LetterProofEngine(self._store, self._blob_store, self._missions)
        self._lifecycle = MatchLifecycle(self._store, self._desk, self._missions, self._letters)
        self._gate = AddressGate(self._store)
        self._arbiter = CancellationArbiter(self._store, self._lifecycle, self._reputation)
        self._sweep = EscalationSweep(self._store, self._missions, self._reputation, policy)

    @property
    def policy(self) -> PenpalPolicy:
        return self._policy

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    # ------------------------------------------------------------------
    # Recruitment
    # ------------------------------------------------------------------

    def register_profile(
        self,
        user_id: str,
        child_id: str,
        child_name: str,
        age: int,
        english_level: str,
        introduction: str,
        character_stamp: CharacterStamp | str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Open a recruitment post for a child."""
        return self._run(
            now,
            lambda: self._desk.register_profile(
                user_id, child_id, child_name, age, english_level,
                introduction, self._stamp(character_stamp), now,
            ),
            lambda profile: {"profile": encode(profile)},
        )

    def apply_to_profile(
        self,
        profile_id: str,
        applicant_user_id: str,
        applicant_child_name: str,
        applicant_profile_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Apply, optionally naming the applicant child's own recruiting profile."""
        return self._run(
            now,
            lambda: self._desk.apply(
                profile_id, applicant_user_id, applicant_child_name, applicant_profile_id, now,
            ),
            lambda application: {"application": encode(application)},
        )

    def accept_application(
        self,
        application_id: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Accept an application. Creates the match in ADDRESS_PENDING."""
        return self._run(
            now,
            lambda: self._desk.accept(application_id, owner_id, now),
            lambda match: {"match": encode(match)},
        )

    def reject_application(
        self,
        application_id: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._desk.reject(application_id, owner_id, now),
            lambda application: {"application": encode(application)},
        )

    # ------------------------------------------------------------------
    # Match lifecycle
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
        side: Optional[MatchSide | str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Submit the caller's mailing address for a match."""
        return self._run(
            now,
            lambda: self._lifecycle.submit_address(
                match_id, user_id, parent_name, address, postal_code, email,
                phone=phone,
                consent_to_share=consent_to_share,
                side=self._side(side),
                now=now,
            ),
            lambda match: {"match": encode(match)},
        )

    def get_partner_address(self, match_id: str, caller_id: str) -> ServiceResult:
        """Read the partner's address. Fails closed until the match is approved."""
        return self._run(
            None,
            lambda: Outcome(record=self._gate.partner_address(match_id, caller_id)),
            lambda address: {"address": encode(address)},
        )

    def get_own_address(self, match_id: str, caller_id: str) -> ServiceResult:
        return self._run(
            None,
            lambda: Outcome(record=self._gate.own_address(match_id, caller_id)),
            lambda address: {"address": encode(address)},
        )

    def admin_approve_match(
        self,
        match_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """ADMIN_REVIEW → COMPLETED, and create the letter mission."""
        return self._run(
            now,
            lambda: self._as_admin(admin_id, lambda: self._lifecycle.approve(match_id, admin_id, now)),
            lambda match: {"match": encode(match)},
        )

    def admin_reject_match(
        self,
        match_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """ADMIN_REVIEW → CANCELLED. The reason is sent to both families."""
        return self._run(
            now,
            lambda: self._as_admin(
                admin_id, lambda: self._lifecycle.reject(match_id, admin_id, reason, now),
            ),
            lambda match: {"match": encode(match)},
        )

    def send_address_reminder(
        self,
        match_id: str,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Remind whichever side has not submitted an address yet."""
        return self._run(
            now,
            lambda: self._as_admin(
                admin_id,
                lambda: self._lifecycle.send_address_reminders(
                    match_id, admin_id, self._policy.address_reminder_ttl_hours, now,
                ),
            ),
            lambda reminded: {"match_id": match_id, "reminded": list(reminded)},
        )

    # ------------------------------------------------------------------
    # Letters
    # ------------------------------------------------------------------

    def send_letter(
        self,
        match_id: str,
        sender_id: str,
        image: bytes,
        step: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._letters.send(match_id, sender_id, image, step=step, now=now),
            lambda proof: {"proof": encode(proof)},
        )

    def verify_letter_received(
        self,
        proof_id: str,
        receiver_id: str,
        image: bytes,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._letters.receive(proof_id, receiver_id, image, now),
            self._describe_delivery,
        )

    def dispute_letter(
        self,
        proof_id: str,
        receiver_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._letters.dispute(proof_id, receiver_id, reason, now),
            lambda proof: {"proof": encode(proof)},
        )

    def admin_resolve_dispute(
        self,
        proof_id: str,
        approve: bool,
        admin_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """approve=True: letter lost, resend. approve=False: letter delivered."""
        return self._run(
            now,
            lambda: self._as_admin(
                admin_id, lambda: self._letters.resolve_dispute(proof_id, approve, admin_id, now),
            ),
            self._describe_delivery,
        )

    def get_mission(self, match_id: str) -> Optional[LetterMission]:
        return self._store.get(Collection.MISSIONS, match_id)

    def extend_mission(
        self,
        match_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._missions.extend(match_id, user_id, now),
            lambda mission: {"mission": encode(mission)},
        )

    def claim_mission_reward(
        self,
        match_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Claim a finished mission's reward points, once per participant."""
        return self._run(
            now,
            lambda: self._missions.claim_reward(
                match_id, user_id, self._policy.reward_points, now,
            ),
            lambda mission: {
                "mission": encode(mission),
                "user_id": user_id,
                "reward_points": self._policy.reward_points,
            },
        )

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def run_escalation_sweep(self, now: Optional[datetime] = None) -> ServiceResult:
        """One escalation pass. Per-proof failures are reported, not raised."""
        return self._run(
            now,
            lambda: self._sweep.run(now),
            lambda report: report.to_dict(),
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_cancellation(
        self,
        match_id: str,
        requester_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            now,
            lambda: self._arbiter.request(match_id, requester_id, reason, now),
            lambda request: {"request": encode(request)},
        )

    def admin_resolve_cancellation(
        self,
        request_id: str,
        approve: bool,
        admin_id: str,
        reason: Optional[str] = None,
        penalty_points: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Approve (cancel the match) or reject (reason required)."""
        def op() -> Outcome[PenpalCancelRequest]:
            if approve:
                return self._arbiter.approve(request_id, admin_id, penalty_points, now)
            return self._arbiter.reject(request_id, admin_id, reason or "", now)

        return self._run(
            now,
            lambda: self._as_admin(admin_id, op),
            lambda request: {"request": encode(request)},
        )

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    def get_reputation(self, user_id: str) -> UserPenpalReputation:
        """The user's reputation record, initialised at 100 on first lookup."""
        return self._reputation.get(user_id)

    def record_reputation_event(
        self,
        user_id: str,
        action: ReputationAction | str,
        admin_id: str,
        points: Optional[int] = None,
        reason: Optional[str] = None,
        match_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin adjustment: apply a scoring event directly."""

        def op() -> Outcome[Any]:
            try:
                resolved = ReputationAction(action)
            except ValueError:
                raise InvariantViolationError(f"Unknown reputation action: {action}") from None
            if points is not None and points < 0:
                raise InvariantViolationError(
                    f"Penalty points must be non-negative, got {points}"
                )
            return self._reputation.record(
                user_id, resolved, now, points=points, reason=reason, match_id=match_id,
            )

        return self._run(
            now,
            lambda: self._as_admin(admin_id, op),
            lambda delta: {
                "user_id": delta.user_id,
                "action": delta.action.value,
                "previous_score": delta.previous_score,
                "new_score": delta.new_score,
            },
        )

    # ------------------------------------------------------------------
    # Admin queues and status
    # ------------------------------------------------------------------

    def list_matches(self, status: Optional[MatchStatus] = None) -> list[PenpalMatch]:
        return self._store.list(
            Collection.MATCHES,
            None if status is None else (lambda m: m.status == status),
        )

    def list_disputed_proofs(self) -> list[LetterProof]:
        return self._store.list(
            Collection.PROOFS, lambda p: p.status == LetterProofStatus.DISPUTED,
        )

    def list_pending_cancel_requests(self) -> list[PenpalCancelRequest]:
        return self._store.list(
            Collection.CANCEL_REQUESTS, lambda r: r.status == CancelRequestStatus.PENDING,
        )

    def list_letters(self, match_id: str) -> list[LetterProof]:
        proofs = self._store.list(Collection.PROOFS, lambda p: p.match_id == match_id)
        return sorted(proofs, key=lambda p: (p.step_number, p.sender_uploaded_utc))

    def status(self) -> dict[str, Any]:
        """Summary counts for operators."""
        matches: dict[str, int] = {}
        for match in self._store.list(Collection.MATCHES):
            matches[match.status.value] = matches.get(match.status.value, 0) + 1
        proofs: dict[str, int] = {}
        for proof in self._store.list(Collection.PROOFS):
            proofs[proof.status.value] = proofs.get(proof.status.value, 0) + 1
        return {
            "profiles": self._store.count(Collection.PROFILES),
            "applications": self._store.count(Collection.APPLICATIONS),
            "matches": matches,
            "letters": proofs,
            "missions": self._store.count(Collection.MISSIONS),
            "pending_cancel_requests": len(self.list_pending_cancel_requests()),
            "reputations": self._store.count(Collection.REPUTATIONS),
            "events": self._event_log.count if self._event_log is not None else 0,
            "event_log_degraded": self._event_log_degraded,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(
        self,
        now: Optional[datetime],
        operation: Callable[[], Outcome[Any]],
        describe: Callable[[Any], dict[str, Any]],
    ) -> ServiceResult:
        """Run an engine operation and finish it: audit, notify, report.

        Audit events are stamped with ``now`` when the caller fixed it.
        """
        try:
            outcome = operation()
        except PenpalError as e:
            return ServiceResult(success=False, errors=[str(e)], error_kind=e.kind)
        except OSError as e:
            logger.error("Persistence failure: %s", e)
            return ServiceResult(
                success=False,
                errors=[f"Persistence failure: {e}"],
                error_kind=ErrorKind.UPSTREAM_FAILURE,
            )

        data = describe(outcome.record)
        warning = self._record_events(outcome.events, now)
        self._dispatcher.dispatch(outcome.effects)
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _as_admin(
        self, admin_id: str, operation: Callable[[], Outcome[Any]],
    ) -> Outcome[Any]:
        if not self._policy.is_admin(admin_id):
            raise ForbiddenError("Administrator access is required")
        return operation()

    def _record_events(
        self, events: list[PendingEvent], now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Append committed events to the audit log.

        MUST NOT roll back state: the operation has already committed.
        Returns a warning string on failure.
        """
        if self._event_log is None or not events:
            return None
        failures: list[str] = []
        for pending in events:
            try:
                self._event_log.append(EventRecord.create(
                    event_id=f"evt-{uuid.uuid4().hex[:12]}",
                    event_kind=pending.kind,
                    actor_id=pending.actor_id,
                    payload=pending.payload,
                    timestamp_utc=now,
                ))
            except (ValueError, OSError) as e:
                failures.append(f"{pending.kind.value}: {e}")
        if not failures:
            return None
        self._event_log_degraded = True
        logger.warning("Event log failure: %s", "; ".join(failures))
        return f"Event log degraded: {'; '.join(failures)}; state committed but audit trail is incomplete"

    def _describe_delivery(self, proof: LetterProof) -> dict[str, Any]:
        mission = self._store.get(Collection.MISSIONS, proof.match_id)
        return {
            "proof": encode(proof),
            "mission": encode(mission) if mission is not None else None,
        }

    @staticmethod
    def _side(value: Optional[MatchSide | str]) -> Optional[MatchSide]:
        if value is None:
            return None
        try:
            return MatchSide(value)
        except ValueError:
            raise InvariantViolationError(f"Unknown match side: {value}") from None

    @staticmethod
    def _stamp(value: CharacterStamp | str) -> CharacterStamp:
        try:
            return CharacterStamp(value)
        except ValueError:
            raise InvariantViolationError(f"Unknown character stamp: {value}") from None
