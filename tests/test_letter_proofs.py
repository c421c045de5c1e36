"""Tests for letter proofs: send, verify, dispute, admin resolution."""

from datetime import timedelta

from conftest import T0, rendezvous, run_concurrently

from penpal.errors import ErrorKind
from penpal.models.letter import EscalationStage, LetterProofStatus
from penpal.notifications.effects import AdminAlertType, NotificationType
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection

PHOTO = b"\xff\xd8 letter photo"


def _send(service, match_id, sender="alice", now=T0, step=None):
    result = service.send_letter(match_id, sender, PHOTO, step=step, now=now)
    assert result.success, result.errors
    return result.data["proof"]["proof_id"]


def _exchange(service, match_id, steps, now=T0):
    """Deliver ``steps`` letters, alternating senders."""
    for i in range(steps):
        sender, receiver = ("alice", "bob") if i % 2 == 0 else ("bob", "alice")
        proof_id = _send(service, match_id, sender, now=now)
        assert service.verify_letter_received(proof_id, receiver, PHOTO, now=now).success


class TestSend:
    def test_send_first_step(self, service, approved_match_id, sink, blobs) -> None:
        result = service.send_letter(approved_match_id, "alice", PHOTO, now=T0)
        assert result.success
        proof = result.data["proof"]
        assert proof["step_number"] == 1
        assert proof["status"] == "sent"
        assert proof["receiver_id"] == "bob"
        assert blobs.get(proof["sender_image_url"]) == PHOTO
        assert sink.for_user("bob", NotificationType.LETTER_SENT)

    def test_sending_does_not_advance_mission(self, service, approved_match_id) -> None:
        _send(service, approved_match_id)
        assert service.get_mission(approved_match_id).current_step == 0

    def test_requires_approved_match(self, service, match_id) -> None:
        result = service.send_letter(match_id, "alice", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.INVALID_STATE

    def test_outsider_forbidden(self, service, approved_match_id) -> None:
        result = service.send_letter(approved_match_id, "mallory", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.FORBIDDEN

    def test_out_of_sequence_step(self, service, approved_match_id) -> None:
        result = service.send_letter(approved_match_id, "alice", PHOTO, step=3, now=T0)
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert "out of sequence" in result.errors[0]

    def test_explicit_next_step_accepted(self, service, approved_match_id) -> None:
        _send(service, approved_match_id, step=1)

    def test_one_outstanding_letter_per_step(self, service, approved_match_id, blobs) -> None:
        _send(service, approved_match_id)
        result = service.send_letter(approved_match_id, "bob", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert blobs.count == 1

    def test_concurrent_senders_claim_the_step_once(
        self, service, approved_match_id, blobs, monkeypatch,
    ) -> None:
        rendezvous(monkeypatch, blobs, "put")

        results = run_concurrently(
            lambda: service.send_letter(approved_match_id, "alice", PHOTO, now=T0),
            lambda: service.send_letter(approved_match_id, "bob", PHOTO, now=T0),
        )
        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_kind == ErrorKind.INVALID_STATE
        sent = [
            p for p in service.list_letters(approved_match_id)
            if p.step_number == 1 and p.status == LetterProofStatus.SENT
        ]
        assert len(sent) == 1

    def test_empty_photo_rejected(self, service, approved_match_id) -> None:
        result = service.send_letter(approved_match_id, "alice", b"", now=T0)
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert service.list_letters(approved_match_id) == []


class TestReceive:
    def test_verify_advances_mission(self, service, approved_match_id, sink) -> None:
        proof_id = _send(service, approved_match_id)
        later = T0 + timedelta(days=2)
        result = service.verify_letter_received(proof_id, "bob", PHOTO, now=later)
        assert result.success
        assert result.data["proof"]["status"] == "received"
        assert result.data["mission"]["current_step"] == 1
        assert result.data["mission"]["completed_steps"][0] is True
        proof = service.store.require(Collection.PROOFS, proof_id)
        assert proof.verified_utc == later
        assert proof.escalation_stage == EscalationStage.RESOLVED
        assert sink.for_user("alice", NotificationType.LETTER_RECEIVED)

    def test_only_receiver_can_verify(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        result = service.verify_letter_received(proof_id, "alice", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.FORBIDDEN

    def test_second_verify_fails(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        assert service.verify_letter_received(proof_id, "bob", PHOTO, now=T0).success
        result = service.verify_letter_received(proof_id, "bob", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert "already been verified" in result.errors[0]
        assert service.get_mission(approved_match_id).current_step == 1

    def test_next_step_follows_delivery(self, service, approved_match_id) -> None:
        _exchange(service, approved_match_id, 2)
        proof_id = _send(service, approved_match_id)
        assert service.store.require(Collection.PROOFS, proof_id).step_number == 3

    def test_tenth_delivery_completes_mission(self, service, approved_match_id, sink) -> None:
        _exchange(service, approved_match_id, 10)
        mission = service.get_mission(approved_match_id)
        assert mission.is_completed
        assert mission.completed_steps == [True] * 10
        assert service.get_reputation("alice").completed_matches == 1
        assert len(sink.for_user("bob", NotificationType.MISSION_COMPLETED)) == 1

    def test_no_eleventh_letter_without_extension(self, service, approved_match_id) -> None:
        _exchange(service, approved_match_id, 10)
        result = service.send_letter(approved_match_id, "alice", PHOTO, now=T0)
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert "All letters" in result.errors[0]


class TestDispute:
    def test_dispute_freezes_step_and_alerts_admin(
        self, service, approved_match_id, sink,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        result = service.dispute_letter(proof_id, "bob", "Nothing in the mailbox", now=T0)
        assert result.success
        assert result.data["proof"]["status"] == "disputed"
        assert [a.alert_type for a in sink.admin_alerts] == [AdminAlertType.LETTER_DISPUTE]
        assert sink.for_user("alice", NotificationType.LETTER_NOT_ARRIVED)
        assert [p.proof_id for p in service.list_disputed_proofs()] == [proof_id]

        resend = service.send_letter(approved_match_id, "alice", PHOTO, now=T0)
        assert resend.error_kind == ErrorKind.INVALID_STATE

    def test_dispute_needs_reason(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        result = service.dispute_letter(proof_id, "bob", "", now=T0)
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION

    def test_disputed_letter_cannot_be_verified(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        result = service.verify_letter_received(proof_id, "bob", PHOTO, now=T0)
        assert "under dispute" in result.errors[0]

    def test_admin_approves_dispute_sender_resends(
        self, service, approved_match_id, sink,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        result = service.admin_resolve_dispute(proof_id, True, "admin", now=T0)
        assert result.success
        assert result.data["proof"]["status"] == "cancelled"
        assert result.data["mission"]["current_step"] == 0

        resent = _send(service, approved_match_id)
        assert service.store.require(Collection.PROOFS, resent).step_number == 1

    def test_admin_rejects_dispute_letter_counts(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        result = service.admin_resolve_dispute(proof_id, False, "admin", now=T0)
        assert result.data["proof"]["status"] == "auto_verified"
        assert result.data["mission"]["current_step"] == 1

    def test_resolve_requires_dispute(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        result = service.admin_resolve_dispute(proof_id, True, "admin", now=T0)
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert service.store.require(Collection.PROOFS, proof_id).status == (
            LetterProofStatus.SENT
        )

    def test_resolve_requires_admin(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        result = service.admin_resolve_dispute(proof_id, False, "alice", now=T0)
        assert result.error_kind == ErrorKind.FORBIDDEN

    def test_events_recorded(self, service, approved_match_id, event_log) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        service.admin_resolve_dispute(proof_id, True, "admin", now=T0)
        kinds = [e.event_kind for e in event_log.events_for(proof_id)]
        assert kinds == [
            EventKind.LETTER_SENT,
            EventKind.LETTER_DISPUTED,
            EventKind.LETTER_DISPUTE_RESOLVED,
        ]
