"""Tests for the service facade: result shape, admin checks, audit and status."""

import logging
from datetime import timedelta

from conftest import T0, submit_address

from penpal.errors import ErrorKind
from penpal.notifications.effects import InMemoryNotificationSink
from penpal.persistence.event_log import EventKind, EventLog
from penpal.persistence.store import Collection, RecordStore
from penpal.policy import PenpalPolicy
from penpal.service import PenpalService


class _FailingEventLog(EventLog):
    def append(self, event) -> None:
        raise OSError("disk full")


class _DeadSink(InMemoryNotificationSink):
    def notify(self, *args, **kwargs) -> None:
        raise ConnectionError("push service down")

    def alert_admins(self, *args, **kwargs) -> None:
        raise ConnectionError("push service down")


def _policy() -> PenpalPolicy:
    return PenpalPolicy(admin_ids=frozenset({"admin"}))


class TestResults:
    def test_not_found_kind(self, service) -> None:
        result = service.admin_approve_match("match-missing", "admin", now=T0)
        assert not result.success
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.errors == ["Match not found: match-missing"]

    def test_admin_check_runs_first(self, service) -> None:
        result = service.admin_approve_match("match-missing", "alice", now=T0)
        assert result.error_kind == ErrorKind.FORBIDDEN
        assert result.errors == ["Administrator access is required"]

    def test_success_has_no_error_kind(self, service, match_id) -> None:
        result = submit_address(service, match_id, "alice")
        assert result.success
        assert result.errors == []
        assert result.error_kind is None
        assert "warning" not in result.data


class TestAudit:
    def test_operations_append_events(self, service, approved_match_id, event_log) -> None:
        kinds = [e.event_kind for e in event_log.events_for(approved_match_id)]
        assert EventKind.MATCH_CREATED in kinds
        assert EventKind.MATCH_ADMIN_REVIEW in kinds
        assert kinds[-2:] == [EventKind.MATCH_APPROVED, EventKind.MISSION_CREATED]

    def test_events_carry_the_operation_time(self, service, event_log) -> None:
        service.register_profile(
            "alice", "child-a", "Jiwoo", 9, "beginner", "hi", "fox", now=T0,
        )
        assert [e.timestamp_utc for e in event_log.events(EventKind.PROFILE_REGISTERED)] == [
            "2026-03-02T09:00:00Z",
        ]

    def test_sweep_events_use_sweep_time(self, service, approved_match_id, event_log) -> None:
        service.send_letter(approved_match_id, "alice", b"photo", now=T0)
        service.run_escalation_sweep(now=T0 + timedelta(days=3))
        reminders = event_log.events(EventKind.LETTER_REMINDER)
        assert [e.timestamp_utc for e in reminders] == ["2026-03-05T09:00:00Z"]

    def test_failed_operation_appends_nothing(self, service, match_id, event_log) -> None:
        before = event_log.count
        service.admin_approve_match(match_id, "admin", now=T0)
        assert event_log.count == before

    def test_event_log_failure_is_a_warning(self, caplog) -> None:
        service = PenpalService(_policy(), event_log=_FailingEventLog())
        with caplog.at_level(logging.WARNING, logger="penpal.service"):
            result = service.register_profile(
                "alice", "child-a", "Jiwoo", 9, "beginner", "hi", "fox", now=T0,
            )
        assert result.success
        assert "Event log degraded" in result.data["warning"]
        assert service.store.count(Collection.PROFILES) == 1
        assert service.status()["event_log_degraded"] is True

    def test_notification_failure_does_not_fail_operation(self) -> None:
        service = PenpalService(_policy(), sink=_DeadSink())
        result = service.register_profile(
            "alice", "child-a", "Jiwoo", 9, "beginner", "hi", "fox", now=T0,
        )
        profile_id = result.data["profile"]["profile_id"]
        applied = service.apply_to_profile(profile_id, "bob", "Minji", now=T0)
        assert applied.success

    def test_snapshot_failure_is_upstream_failure(self, tmp_path) -> None:
        store = RecordStore(storage_path=tmp_path / "missing" / "state.json")
        service = PenpalService(_policy(), store=store)
        result = service.register_profile(
            "alice", "child-a", "Jiwoo", 9, "beginner", "hi", "fox", now=T0,
        )
        assert not result.success
        assert result.error_kind == ErrorKind.UPSTREAM_FAILURE
        assert result.errors[0].startswith("Persistence failure:")


class TestReputationAdmin:
    def test_record_event(self, service) -> None:
        result = service.record_reputation_event(
            "alice", "no_address", "admin", reason="Never sent an address", now=T0,
        )
        assert result.success
        assert result.data["new_score"] == 95
        assert service.get_reputation("alice").reputation_score == 95

    def test_unknown_action(self, service) -> None:
        result = service.record_reputation_event("alice", "bribery", "admin", now=T0)
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION

    def test_negative_points(self, service) -> None:
        result = service.record_reputation_event(
            "alice", "cancel_by_user", "admin", points=-1, now=T0,
        )
        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION

    def test_requires_admin(self, service) -> None:
        result = service.record_reputation_event("alice", "late_response", "bob", now=T0)
        assert result.error_kind == ErrorKind.FORBIDDEN
        assert service.store.get(Collection.REPUTATIONS, "alice") is None


class TestStatus:
    def test_counts(self, service, approved_match_id) -> None:
        service.send_letter(approved_match_id, "alice", b"photo", now=T0)
        status = service.status()
        assert status["profiles"] == 2
        assert status["matches"] == {"completed": 1}
        assert status["letters"] == {"sent": 1}
        assert status["missions"] == 1
        assert status["pending_cancel_requests"] == 0
        assert status["event_log_degraded"] is False
        assert status["events"] > 0

    def test_list_letters_in_step_order(self, service, approved_match_id) -> None:
        first = service.send_letter(approved_match_id, "alice", b"1", now=T0)
        service.verify_letter_received(first.data["proof"]["proof_id"], "bob", b"r", now=T0)
        service.send_letter(approved_match_id, "bob", b"2", now=T0)
        steps = [p.step_number for p in service.list_letters(approved_match_id)]
        assert steps == [1, 2]
