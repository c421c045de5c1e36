"""Tests for the escalation sweep: reminders, admin alerts, auto-verification."""

import logging
from datetime import datetime, timedelta

import pytest

from conftest import T0, register, rendezvous, run_concurrently, submit_address

from penpal.errors import ErrorKind
from penpal.escalation.sweep import EscalationAction, due_actions
from penpal.models.letter import EscalationStage, LetterProof, LetterProofStatus
from penpal.models.reputation import PenaltyType
from penpal.notifications.effects import AdminAlertType, NotificationType
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection
from penpal.policy import PenpalPolicy
from penpal.service import PenpalService

PHOTO = b"photo"


def _proof(stage: EscalationStage = EscalationStage.NONE) -> LetterProof:
    return LetterProof(
        proof_id="P-1", match_id="M-001", step_number=1,
        sender_id="alice", sender_child_name="Jiwoo",
        receiver_id="bob", receiver_child_name="Minji",
        sender_image_url="memory://x", sender_uploaded_utc=T0,
        escalation_stage=stage,
    )


def _send(service, match_id) -> str:
    result = service.send_letter(match_id, "alice", PHOTO, now=T0)
    assert result.success, result.errors
    return result.data["proof"]["proof_id"]


def _sweep(service, days: float):
    result = service.run_escalation_sweep(now=T0 + timedelta(days=days))
    assert result.success, result.errors
    return result.data


class TestDueActions:
    @pytest.mark.parametrize("days, expected", [
        (0, []),
        (2.9, []),
        (3, [EscalationAction.REMIND]),
        (7, [EscalationAction.REMIND, EscalationAction.ALERT_ADMIN]),
        (10, [
            EscalationAction.REMIND,
            EscalationAction.ALERT_ADMIN,
            EscalationAction.AUTO_VERIFY,
        ]),
    ])
    def test_thresholds_are_cumulative(self, days, expected) -> None:
        assert due_actions(_proof(), T0 + timedelta(days=days)) == expected

    def test_stage_suppresses_repeats(self) -> None:
        reminded = _proof(EscalationStage.REMINDED)
        assert due_actions(reminded, T0 + timedelta(days=8)) == [EscalationAction.ALERT_ADMIN]
        notified = _proof(EscalationStage.ADMIN_NOTIFIED)
        assert due_actions(notified, T0 + timedelta(days=8)) == []

    def test_settled_proofs_ignored(self) -> None:
        proof = _proof()
        proof.status = LetterProofStatus.RECEIVED
        assert due_actions(proof, T0 + timedelta(days=30)) == []


class TestSweep:
    def test_day_three_reminds_receiver_once(self, service, approved_match_id, sink) -> None:
        _send(service, approved_match_id)
        report = _sweep(service, 3)
        assert report["reminders"] == 1
        assert len(sink.for_user("bob", NotificationType.VERIFICATION_REMINDER)) == 1

        again = _sweep(service, 3.5)
        assert again["reminders"] == 0
        assert len(sink.for_user("bob", NotificationType.VERIFICATION_REMINDER)) == 1

    def test_day_seven_alerts_admin(self, service, approved_match_id, sink) -> None:
        proof_id = _send(service, approved_match_id)
        _sweep(service, 3)
        report = _sweep(service, 7)
        assert report["admin_alerts"] == 1
        assert [a.alert_type for a in sink.admin_alerts if a.subject.get("proof_id") == proof_id] == [
            AdminAlertType.VERIFICATION_DELAY,
        ]
        assert service.store.require(Collection.PROOFS, proof_id).escalation_stage == (
            EscalationStage.ADMIN_NOTIFIED
        )

    def test_late_sweep_fires_everything_once(
        self, service, approved_match_id, sink, event_log,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        report = _sweep(service, 11)
        assert report["reminders"] == 1
        assert report["admin_alerts"] == 1
        assert report["auto_verified"] == 1

        proof = service.store.require(Collection.PROOFS, proof_id)
        assert proof.status == LetterProofStatus.AUTO_VERIFIED
        assert proof.escalation_stage == EscalationStage.RESOLVED
        assert service.get_mission(approved_match_id).current_step == 1
        assert sink.for_user("bob", NotificationType.AUTO_VERIFIED)
        kinds = [e.event_kind for e in event_log.events_for(proof_id)]
        assert kinds[-3:] == [
            EventKind.LETTER_REMINDER,
            EventKind.LETTER_ADMIN_ALERT,
            EventKind.LETTER_AUTO_VERIFIED,
        ]

        report = _sweep(service, 12)
        assert report["scanned"] == 0
        assert service.get_mission(approved_match_id).current_step == 1

    def test_auto_verify_penalises_receiver(self, service, approved_match_id) -> None:
        _send(service, approved_match_id)
        _sweep(service, 10)
        bob = service.get_reputation("bob")
        assert bob.reputation_score == 97
        assert bob.penalties[-1].penalty_type == PenaltyType.LATE_RESPONSE
        assert service.get_reputation("alice").reputation_score == 100

    def test_penalty_can_be_disabled(self, sink, blobs, event_log) -> None:
        policy = PenpalPolicy(admin_ids=frozenset({"admin"}), penalize_auto_verify=False)
        service = PenpalService(policy, blob_store=blobs, sink=sink, event_log=event_log)
        profile_id = register(service, "alice", "child-a", "Jiwoo")
        applied = service.apply_to_profile(profile_id, "bob", "Minji", now=T0)
        match_id = service.accept_application(
            applied.data["application"]["application_id"], "alice", now=T0,
        ).data["match"]["match_id"]
        submit_address(service, match_id, "alice")
        submit_address(service, match_id, "bob")
        service.admin_approve_match(match_id, "admin", now=T0)

        _send(service, match_id)
        _sweep(service, 10)
        assert service.get_reputation("bob").reputation_score == 100

    def test_verified_letter_untouched(self, service, approved_match_id, sink) -> None:
        proof_id = _send(service, approved_match_id)
        service.verify_letter_received(proof_id, "bob", PHOTO, now=T0 + timedelta(days=1))
        report = _sweep(service, 20)
        assert report["scanned"] == 0
        assert sink.for_user("bob", NotificationType.VERIFICATION_REMINDER) == []

    def test_disputed_letter_not_escalated(self, service, approved_match_id) -> None:
        proof_id = _send(service, approved_match_id)
        service.dispute_letter(proof_id, "bob", "lost", now=T0)
        report = _sweep(service, 20)
        assert report["auto_verified"] == 0
        assert service.store.require(Collection.PROOFS, proof_id).status == (
            LetterProofStatus.DISPUTED
        )

    def test_one_bad_proof_does_not_stop_the_sweep(
        self, service, approved_match_id, caplog,
    ) -> None:
        good = _send(service, approved_match_id)
        orphan = LetterProof(
            proof_id="proof-orphan", match_id="match-gone", step_number=1,
            sender_id="x", sender_child_name="X",
            receiver_id="y", receiver_child_name="Y",
            sender_image_url="memory://x", sender_uploaded_utc=T0,
        )
        service.store.insert(Collection.PROOFS, orphan.proof_id, orphan)

        with caplog.at_level(logging.ERROR, logger="penpal.escalation.sweep"):
            report = _sweep(service, 3)
        assert report["failures"] == ["proof-orphan"]
        assert report["reminders"] == 1
        assert service.store.require(Collection.PROOFS, good).escalation_stage == (
            EscalationStage.REMINDED
        )
        assert "proof-orphan" in caplog.text

    def test_naive_sweep_time_rejected(self, service) -> None:
        result = service.run_escalation_sweep(now=datetime(2026, 3, 20))
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION


def _is_proof_write(collection, *args) -> bool:
    return collection == Collection.PROOFS


class TestConcurrency:
    def test_overlapping_sweeps_auto_verify_once(
        self, service, approved_match_id, monkeypatch,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        rendezvous(monkeypatch, service.store, "compare_and_swap", when=_is_proof_write)
        later = T0 + timedelta(days=11)

        results = run_concurrently(
            lambda: service.run_escalation_sweep(now=later),
            lambda: service.run_escalation_sweep(now=later),
        )
        assert all(r.success for r in results)
        assert sum(r.data["auto_verified"] for r in results) == 1
        assert sum(r.data["reminders"] for r in results) == 1
        assert service.store.require(Collection.PROOFS, proof_id).status == (
            LetterProofStatus.AUTO_VERIFIED
        )
        assert service.get_mission(approved_match_id).current_step == 1
        assert service.get_reputation("bob").reputation_score == 97

    def test_verify_racing_auto_verify_delivers_once(
        self, service, approved_match_id, monkeypatch,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        rendezvous(monkeypatch, service.store, "compare_and_swap", when=_is_proof_write)
        later = T0 + timedelta(days=11)

        received, swept = run_concurrently(
            lambda: service.verify_letter_received(proof_id, "bob", PHOTO, now=later),
            lambda: service.run_escalation_sweep(now=later),
        )
        assert swept.success
        assert received.success != (swept.data["auto_verified"] == 1)
        proof = service.store.require(Collection.PROOFS, proof_id)
        expected = LetterProofStatus.RECEIVED if received.success else (
            LetterProofStatus.AUTO_VERIFIED
        )
        assert proof.status == expected
        mission = service.get_mission(approved_match_id)
        assert mission.current_step == 1
        assert mission.completed_steps[:2] == [True, False]


def _fail_next_mission_write(monkeypatch, store) -> None:
    original = store.update
    pending_failures = [OSError("disk full")]

    def flaky(collection, record_id, mutate, **kwargs):
        if collection == Collection.MISSIONS and pending_failures:
            raise pending_failures.pop()
        return original(collection, record_id, mutate, **kwargs)

    monkeypatch.setattr(store, "update", flaky)


class TestMissionRepair:
    def test_failed_mission_write_is_repaired_by_sweep(
        self, service, approved_match_id, event_log, monkeypatch,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        _fail_next_mission_write(monkeypatch, service.store)
        result = service.verify_letter_received(
            proof_id, "bob", PHOTO, now=T0 + timedelta(days=1),
        )
        assert result.error_kind == ErrorKind.UPSTREAM_FAILURE
        assert service.store.require(Collection.PROOFS, proof_id).status == (
            LetterProofStatus.RECEIVED
        )
        assert service.get_mission(approved_match_id).current_step == 0

        report = _sweep(service, 1)
        assert report["missions_repaired"] == 1
        mission = service.get_mission(approved_match_id)
        assert mission.current_step == 1
        assert mission.completed_steps[0]
        kinds = [e.event_kind for e in event_log.events_for(proof_id)]
        assert EventKind.MISSION_STEP_REPAIRED in kinds

        assert _sweep(service, 2)["missions_repaired"] == 0
        next_proof = _send(service, approved_match_id)
        assert service.store.require(Collection.PROOFS, next_proof).step_number == 2

    def test_auto_verify_with_failed_mission_write(
        self, service, approved_match_id, monkeypatch,
    ) -> None:
        proof_id = _send(service, approved_match_id)
        _fail_next_mission_write(monkeypatch, service.store)
        report = _sweep(service, 10)
        assert report["failures"] == [proof_id]
        assert report["missions_repaired"] == 1
        assert service.store.require(Collection.PROOFS, proof_id).status == (
            LetterProofStatus.AUTO_VERIFIED
        )
        assert service.get_mission(approved_match_id).current_step == 1


class TestStaleCancelRequests:
    def test_alert_after_seven_days_once(self, service, approved_match_id, sink) -> None:
        request = service.request_cancellation(approved_match_id, "alice", "moving", now=T0)
        request_id = request.data["request"]["request_id"]

        assert _sweep(service, 6)["stale_cancel_alerts"] == 0
        assert _sweep(service, 7)["stale_cancel_alerts"] == 1
        assert _sweep(service, 9)["stale_cancel_alerts"] == 0

        stale = [a for a in sink.admin_alerts if a.alert_type == AdminAlertType.STALE_CANCEL_REQUEST]
        assert len(stale) == 1
        assert stale[0].subject["request_id"] == request_id
        stored = service.store.require(Collection.CANCEL_REQUESTS, request_id)
        assert stored.admin_notified_utc == T0 + timedelta(days=7)

    def test_resolved_requests_ignored(self, service, approved_match_id) -> None:
        request = service.request_cancellation(approved_match_id, "alice", "moving", now=T0)
        service.admin_resolve_cancellation(
            request.data["request"]["request_id"], False, "admin", reason="Please keep going",
            now=T0,
        )
        assert _sweep(service, 30)["stale_cancel_alerts"] == 0
