"""Shared fixtures: a service wired to in-memory collaborators, and
matches walked to each lifecycle stage."""

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pytest

from penpal.notifications.effects import InMemoryNotificationSink
from penpal.persistence.event_log import EventLog
from penpal.policy import PenpalPolicy
from penpal.service import PenpalService
from penpal.storage.blob import InMemoryBlobStore


T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def register(service: PenpalService, user_id: str, child_id: str, name: str) -> str:
    result = service.register_profile(
        user_id=user_id,
        child_id=child_id,
        child_name=name,
        age=9,
        english_level="beginner",
        introduction=f"Hi, I am {name}!",
        character_stamp="fox",
        now=T0,
    )
    assert result.success, result.errors
    return result.data["profile"]["profile_id"]


def rendezvous(
    monkeypatch: pytest.MonkeyPatch,
    target: Any,
    method: str,
    when: Optional[Callable[..., bool]] = None,
    parties: int = 2,
) -> None:
    """Hold each thread's first matching call to ``target.method`` until
    ``parties`` threads have arrived, so their reads all precede any write."""
    barrier = threading.Barrier(parties)
    arrived: set[int] = set()
    original = getattr(target, method)

    def gated(*args: Any, **kwargs: Any) -> Any:
        ident = threading.get_ident()
        if len(arrived) < parties and ident not in arrived and (when is None or when(*args)):
            arrived.add(ident)
            barrier.wait(timeout=5)
        return original(*args, **kwargs)

    monkeypatch.setattr(target, method, gated)


def run_concurrently(*calls: Callable[[], Any]) -> list[Any]:
    """Run each call on its own thread and return their results in order."""
    results: list[Any] = [None] * len(calls)

    def run(index: int, call: Callable[[], Any]) -> None:
        results[index] = call()

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def submit_address(service: PenpalService, match_id: str, user_id: str, now=T0):
    return service.submit_address(
        match_id,
        user_id,
        parent_name=f"Parent of {user_id}",
        address="12 Letterbox Lane",
        postal_code="04524",
        email=f"{user_id}@example.com",
        consent_to_share=True,
        now=now,
    )


@pytest.fixture
def policy() -> PenpalPolicy:
    return PenpalPolicy(admin_ids=frozenset({"admin"}))


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def service(
    policy: PenpalPolicy,
    sink: InMemoryNotificationSink,
    blobs: InMemoryBlobStore,
    event_log: EventLog,
) -> PenpalService:
    return PenpalService(policy, blob_store=blobs, sink=sink, event_log=event_log)


@pytest.fixture
def match_id(service: PenpalService) -> str:
    """alice (user1, Jiwoo) matched with bob (user2, Minji); addresses pending."""
    profile_id = register(service, "alice", "child-a", "Jiwoo")
    bob_profile_id = register(service, "bob", "child-b", "Minji")
    applied = service.apply_to_profile(
        profile_id, "bob", "Minji", applicant_profile_id=bob_profile_id, now=T0,
    )
    assert applied.success, applied.errors
    accepted = service.accept_application(
        applied.data["application"]["application_id"], "alice", now=T0,
    )
    assert accepted.success, accepted.errors
    return accepted.data["match"]["match_id"]


@pytest.fixture
def approved_match_id(service: PenpalService, match_id: str) -> str:
    """Same pair, both addresses in and approved by the admin."""
    assert submit_address(service, match_id, "alice").success
    assert submit_address(service, match_id, "bob").success
    result = service.admin_approve_match(match_id, "admin", now=T0)
    assert result.success, result.errors
    return match_id
