"""Tests for effect dispatch and the letter photo blob store."""

import logging

import pytest

from penpal.errors import InvariantViolationError, UpstreamFailureError
from penpal.notifications.effects import (
    AdminAlert,
    AdminAlertType,
    AlertPriority,
    EffectDispatcher,
    InMemoryNotificationSink,
    Notify,
    NotificationType,
)
from penpal.storage.blob import InMemoryBlobStore, upload_letter_photo


class _FlakySink(InMemoryNotificationSink):
    """Fails for one specific user, delivers everything else."""

    def notify(self, user_id, notification_type, title, message, link, expires_utc=None):
        if user_id == "broken":
            raise ConnectionError("push service down")
        super().notify(user_id, notification_type, title, message, link, expires_utc)


class _BrokenBlobStore:
    def put(self, data: bytes, key: str) -> str:
        raise ConnectionError("bucket unavailable")


def _notify(user_id: str) -> Notify:
    return Notify(
        user_id=user_id,
        notification_type=NotificationType.LETTER_SENT,
        title="t",
        message="m",
    )


class TestEffectDispatcher:
    def test_delivers_in_order(self) -> None:
        sink = InMemoryNotificationSink()
        alert = AdminAlert(
            alert_type=AdminAlertType.LETTER_DISPUTE,
            priority=AlertPriority.HIGH,
            title="t",
            message="m",
            subject={"proof_id": "P-1"},
        )
        delivered = EffectDispatcher(sink).dispatch([_notify("alice"), alert, _notify("bob")])
        assert delivered == 3
        assert [n.user_id for n in sink.notifications] == ["alice", "bob"]
        assert sink.admin_alerts == [alert]

    def test_sink_failure_is_logged_and_skipped(self, caplog) -> None:
        sink = _FlakySink()
        with caplog.at_level(logging.WARNING, logger="penpal.notifications.effects"):
            delivered = EffectDispatcher(sink).dispatch(
                [_notify("alice"), _notify("broken"), _notify("bob")],
            )
        assert delivered == 2
        assert [n.user_id for n in sink.notifications] == ["alice", "bob"]
        assert "Notification delivery failed" in caplog.text

    def test_for_user_filters(self) -> None:
        sink = InMemoryNotificationSink()
        EffectDispatcher(sink).dispatch([_notify("alice"), _notify("bob")])
        assert len(sink.for_user("alice")) == 1
        assert sink.for_user("alice", NotificationType.MATCH_APPROVED) == []


class TestBlobUpload:
    def test_upload_returns_retrievable_url(self) -> None:
        store = InMemoryBlobStore()
        url = upload_letter_photo(store, b"jpeg-bytes", "M-001", 3, "sender")
        assert url.startswith("memory://letters/penpal/letters/M-001/step3_sender-")
        assert store.get(url) == b"jpeg-bytes"
        assert store.count == 1

    def test_empty_image_rejected(self) -> None:
        with pytest.raises(InvariantViolationError, match="photo of the letter is required"):
            upload_letter_photo(InMemoryBlobStore(), b"", "M-001", 1, "sender")

    def test_backend_failure_becomes_upstream_failure(self) -> None:
        with pytest.raises(UpstreamFailureError, match="Photo upload failed"):
            upload_letter_photo(_BrokenBlobStore(), b"x", "M-001", 1, "sender")
