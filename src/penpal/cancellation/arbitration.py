"""Cancellation arbitration: ending a match is requested, never self-served.

Either participant may ask to end a match; only an admin decides.
Approving cancels the match, charges the requester a penalty, records
the partner as the non-initiating side (no score change), reopens both
profiles and tells the partner why, in the requester's own words.
Rejecting leaves the match running and tells the requester the admin's
reason.

One pending request per match. Requests do not expire; the escalation
sweep raises a single reminder to admins when one has waited too long.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from penpal.errors import ForbiddenError, InvalidStateError, InvariantViolationError
from penpal.matching.lifecycle import MatchLifecycle
from penpal.matching.match_state_machine import MatchStateMachine
from penpal.models.cancellation import CancelRequestStatus, PenpalCancelRequest
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
from penpal.reputation.ledger import DEFAULT_CANCEL_PENALTY, ReputationBook


class CancellationArbiter:
    """Request / approve / reject flow for match cancellation."""

    def __init__(
        self,
        store: RecordStore,
        lifecycle: MatchLifecycle,
        reputation: ReputationBook,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._reputation = reputation

    def request(
        self,
        match_id: str,
        requester_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalCancelRequest]:
        if now is None:
            now = datetime.now(timezone.utc)
        reason = (reason or "").strip()
        if not reason:
            raise InvariantViolationError("A reason is required to request cancellation")
        match = self._store.require(Collection.MATCHES, match_id)
        if not match.is_participant(requester_id):
            raise ForbiddenError("You are not a participant in this match")
        if MatchStateMachine.is_terminal(match.status):
            raise InvalidStateError("This match has already ended")
        pending = self._store.list(
            Collection.CANCEL_REQUESTS,
            lambda r: r.match_id == match_id and r.status == CancelRequestStatus.PENDING,
        )
        if pending:
            raise InvalidStateError("A cancellation request for this match is already pending")

        partner_id = match.partner_of(requester_id)
        request = PenpalCancelRequest(
            request_id=f"cancel-{uuid.uuid4().hex[:12]}",
            match_id=match_id,
            requester_id=requester_id,
            requester_child_name=match.child_name_of(requester_id),
            partner_id=partner_id,
            partner_child_name=match.child_name_of(partner_id),
            reason=reason,
            created_utc=now,
            updated_utc=now,
        )
        request = self._store.insert(Collection.CANCEL_REQUESTS, request.request_id, request)
        return Outcome(
            record=request,
            effects=[AdminAlert(
                alert_type=AdminAlertType.CANCEL_REQUEST,
                priority=AlertPriority.MEDIUM,
                title="Pen-pal cancellation requested",
                message=(
                    f"{request.requester_child_name} asked to end the match with "
                    f"{request.partner_child_name}: {reason}"
                ),
                link=f"/admin/penpal/cancel-requests/{request.request_id}",
                subject={"match_id": match_id, "request_id": request.request_id},
            )],
            events=[PendingEvent(
                EventKind.CANCEL_REQUESTED,
                requester_id,
                {"match_id": match_id, "request_id": request.request_id, "reason": reason},
            )],
        )

    def approve(
        self,
        request_id: str,
        admin_id: str,
        penalty_points: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalCancelRequest]:
        """Approve: cancel the match and apply reputation consequences.

        ``penalty_points`` overrides the default deduction for the
        requester.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        points = DEFAULT_CANCEL_PENALTY if penalty_points is None else penalty_points
        if points < 0:
            raise InvariantViolationError(f"Penalty points must be non-negative, got {points}")

        request = self._store.require(Collection.CANCEL_REQUESTS, request_id)
        if request.status != CancelRequestStatus.PENDING:
            raise InvalidStateError(
                f"This cancellation request has already been {request.status.value}"
            )
        match = self._store.require(Collection.MATCHES, request.match_id)
        if MatchStateMachine.is_terminal(match.status):
            raise InvalidStateError("This match has already ended")

        def mutate(current: PenpalCancelRequest) -> None:
            if current.status != CancelRequestStatus.PENDING:
                raise InvalidStateError(
                    f"This cancellation request has already been {current.status.value}"
                )
            current.status = CancelRequestStatus.APPROVED
            current.processed_utc = now
            current.processed_by = admin_id
            current.penalty_points = points
            current.updated_utc = now

        request = self._store.update(Collection.CANCEL_REQUESTS, request_id, mutate)

        outcome: Outcome[PenpalCancelRequest] = Outcome(record=request)
        outcome.events.append(PendingEvent(
            EventKind.CANCEL_APPROVED,
            admin_id,
            {"match_id": request.match_id, "request_id": request_id, "penalty_points": points},
        ))
        outcome.absorb(self._lifecycle.cancel(
            request.match_id, request.requester_id, request.reason, now,
        ))
        outcome.absorb(self._reputation.record(
            request.requester_id,
            ReputationAction.CANCEL_BY_USER,
            now,
            points=points,
            reason=request.reason,
            match_id=request.match_id,
        ))
        outcome.absorb(self._reputation.record(
            request.partner_id,
            ReputationAction.CANCEL_BY_PARTNER,
            now,
            match_id=request.match_id,
        ))
        outcome.effects.append(Notify(
            user_id=request.partner_id,
            notification_type=NotificationType.PENPAL_CANCELLED,
            title="Pen-pal match ended",
            message=request.reason,
            link="/penpal/profiles",
        ))
        return outcome

    def reject(
        self,
        request_id: str,
        admin_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalCancelRequest]:
        """Reject: the match stays active, nobody's score changes."""
        if now is None:
            now = datetime.now(timezone.utc)
        reason = (reason or "").strip()
        if not reason:
            raise InvariantViolationError("A reason is required to reject a cancellation request")

        def mutate(current: PenpalCancelRequest) -> None:
            if current.status != CancelRequestStatus.PENDING:
                raise InvalidStateError(
                    f"This cancellation request has already been {current.status.value}"
                )
            current.status = CancelRequestStatus.REJECTED
            current.rejection_reason = reason
            current.processed_utc = now
            current.processed_by = admin_id
            current.updated_utc = now

        request = self._store.update(Collection.CANCEL_REQUESTS, request_id, mutate)
        return Outcome(
            record=request,
            effects=[Notify(
                user_id=request.requester_id,
                notification_type=NotificationType.CANCEL_REQUEST_REJECTED,
                title="Cancellation request declined",
                message=reason,
                link=f"/penpal/{request.match_id}",
            )],
            events=[PendingEvent(
                EventKind.CANCEL_REJECTED,
                admin_id,
                {"match_id": request.match_id, "request_id": request_id, "reason": reason},
            )],
        )
