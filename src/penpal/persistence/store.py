"""Versioned record store: the shared state every handler reads and writes.

All pen-pal state lives here, and it is touched by independent writers:
two guardians submitting addresses at the same moment, an admin acting
on a match, the escalation sweep racing a receiver who is verifying a
letter. None of them may do a blind read-compute-write.

Every record carries a ``version``. Writers either:
1. call ``compare_and_swap`` with the version they read, or
2. call ``update`` with a mutation function, which re-reads, re-applies
   and retries on conflict until it wins or the retry budget runs out.

Mutation functions see a private copy of the current record and may
raise a PenpalError to abort; nothing is written in that case.

Optional durability: when ``storage_path`` is given, the full store is
snapshotted to JSON before each write is committed in memory. A failed
snapshot aborts the write (OSError propagates, memory unchanged).
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from penpal.errors import ConcurrentUpdateError, DuplicateRecordError, NotFoundError
from penpal.models.cancellation import PenpalCancelRequest
from penpal.models.letter import LetterMission, LetterProof
from penpal.models.penpal import (
    ParentAddress,
    PenpalApplication,
    PenpalMatch,
    PenpalProfile,
)
from penpal.models.reputation import UserPenpalReputation
from penpal.persistence.codec import decode, encode

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Collection(str, enum.Enum):
    PROFILES = "profiles"
    APPLICATIONS = "applications"
    MATCHES = "matches"
    ADDRESSES = "addresses"
    MISSIONS = "missions"
    PROOFS = "proofs"
    REPUTATIONS = "reputations"
    CANCEL_REQUESTS = "cancel_requests"


_RECORD_TYPES: dict[Collection, type] = {
    Collection.PROFILES: PenpalProfile,
    Collection.APPLICATIONS: PenpalApplication,
    Collection.MATCHES: PenpalMatch,
    Collection.ADDRESSES: ParentAddress,
    Collection.MISSIONS: LetterMission,
    Collection.PROOFS: LetterProof,
    Collection.REPUTATIONS: UserPenpalReputation,
    Collection.CANCEL_REQUESTS: PenpalCancelRequest,
}

_LABELS: dict[Collection, str] = {
    Collection.PROFILES: "Profile",
    Collection.APPLICATIONS: "Application",
    Collection.MATCHES: "Match",
    Collection.ADDRESSES: "Address",
    Collection.MISSIONS: "Mission",
    Collection.PROOFS: "Letter proof",
    Collection.REPUTATIONS: "Reputation",
    Collection.CANCEL_REQUESTS: "Cancel request",
}


class RecordStore:
    """In-process record store with per-record optimistic concurrency.

    Usage:
        store = RecordStore()
        store.insert(Collection.MATCHES, match.match_id, match)
        match = store.update(Collection.MATCHES, match_id, lambda m: ...)
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        max_retries: int = 5,
    ) -> None:
        self._lock = threading.RLock()
        self._records: dict[Collection, dict[str, Any]] = {c: {} for c in Collection}
        self._storage_path = storage_path
        self._max_retries = max_retries

        if storage_path is not None and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: Collection, record_id: str) -> Optional[Any]:
        """Return a private copy of a record, or None."""
        with self._lock:
            record = self._records[collection].get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def require(self, collection: Collection, record_id: str) -> Any:
        """Return a private copy of a record or raise NotFoundError."""
        record = self.get(collection, record_id)
        if record is None:
            raise NotFoundError(f"{_LABELS[collection]} not found: {record_id}")
        return record

    def list(
        self,
        collection: Collection,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list[Any]:
        """Return copies of all records (insertion order), optionally filtered."""
        with self._lock:
            records = list(self._records[collection].values())
        result = [copy.deepcopy(r) for r in records]
        if predicate is not None:
            result = [r for r in result if predicate(r)]
        return result

    def count(self, collection: Collection) -> int:
        with self._lock:
            return len(self._records[collection])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, collection: Collection, record_id: str, record: T) -> T:
        """Insert a new record. Raises ValueError if the id already exists."""
        with self._lock:
            if record_id in self._records[collection]:
                raise ValueError(f"Duplicate {_LABELS[collection].lower()} ID: {record_id}")
            self._commit(collection, record_id, copy.deepcopy(record))
            return copy.deepcopy(record)

    def insert_if_absent(
        self, collection: Collection, record_id: str, record: T,
    ) -> tuple[T, bool]:
        """Insert unless present. Returns (stored record, inserted?)."""
        with self._lock:
            existing = self._records[collection].get(record_id)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._commit(collection, record_id, copy.deepcopy(record))
            return copy.deepcopy(record), True

    def insert_unique(
        self,
        collection: Collection,
        record_id: str,
        record: T,
        conflicts: Callable[[Any], bool],
    ) -> Optional[T]:
        """Insert unless an existing record satisfies ``conflicts``.

        The scan and the insert happen under one lock hold, so two
        writers racing for the same slot cannot both succeed. Returns the
        stored copy, or None when a conflicting record exists.

        ``conflicts`` sees the stored records themselves and must not
        modify them.
        """
        with self._lock:
            if record_id in self._records[collection]:
                raise ValueError(f"Duplicate {_LABELS[collection].lower()} ID: {record_id}")
            if any(conflicts(r) for r in self._records[collection].values()):
                return None
            self._commit(collection, record_id, copy.deepcopy(record))
            return copy.deepcopy(record)

    def compare_and_swap(
        self,
        collection: Collection,
        record_id: str,
        expected_version: int,
        new_record: T,
        conflicts: Optional[Callable[[Any], bool]] = None,
    ) -> Optional[T]:
        """Replace a record only if its version is still ``expected_version``.

        On success the stored record's version is expected_version + 1 and
        a copy of it is returned. On a version mismatch nothing is written
        and None is returned.

        When ``conflicts`` is given and any other record in the collection
        satisfies it, nothing is written and DuplicateRecordError is raised.
        """
        with self._lock:
            current = self._records[collection].get(record_id)
            if current is None:
                raise NotFoundError(f"{_LABELS[collection]} not found: {record_id}")
            if current.version != expected_version:
                return None
            if conflicts is not None:
                for other_id, other in self._records[collection].items():
                    if other_id != record_id and conflicts(other):
                        raise DuplicateRecordError(
                            f"{_LABELS[collection]} {record_id} conflicts with {other_id}"
                        )
            stored = dataclasses.replace(new_record, version=expected_version + 1)
            self._commit(collection, record_id, copy.deepcopy(stored))
            return stored

    def update(
        self,
        collection: Collection,
        record_id: str,
        mutate: Callable[[Any], Optional[Any]],
        max_retries: Optional[int] = None,
        conflicts: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Optimistic read-modify-write with retry.

        ``mutate`` receives a private copy of the current record. It may
        modify it in place (return None) or return a replacement (for
        frozen records). Any exception it raises aborts the update.
        ``conflicts`` is checked at commit time, as in compare_and_swap.
        """
        attempts = max_retries if max_retries is not None else self._max_retries
        for attempt in range(1, attempts + 1):
            current = self.require(collection, record_id)
            working = copy.deepcopy(current)
            replacement = mutate(working)
            if replacement is not None:
                working = replacement
            stored = self.compare_and_swap(
                collection, record_id, current.version, working, conflicts=conflicts,
            )
            if stored is not None:
                return stored
            logger.debug(
                "Version conflict on %s/%s (attempt %d/%d)",
                collection.value, record_id, attempt, attempts,
            )
        raise ConcurrentUpdateError(
            f"{_LABELS[collection]} {record_id} changed concurrently "
            f"{attempts} times, giving up"
        )

    # ------------------------------------------------------------------
    # Durability
    # ------------------------------------------------------------------

    def _commit(self, collection: Collection, record_id: str, record: Any) -> None:
        """Write-through: snapshot first, then publish in memory. Lock held."""
        if self._storage_path is not None:
            snapshot = {c.value: dict(recs) for c, recs in self._records.items()}
            snapshot[collection.value][record_id] = record
            self._write_snapshot(snapshot)
        self._records[collection][record_id] = record

    def _write_snapshot(self, snapshot: dict[str, dict[str, Any]]) -> None:
        payload = {
            name: {rid: encode(rec) for rid, rec in records.items()}
            for name, records in snapshot.items()
        }
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, sort_keys=True, ensure_ascii=False, indent=1)
        os.replace(tmp_path, self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        for collection in Collection:
            record_type = _RECORD_TYPES[collection]
            for record_id, raw in data.get(collection.value, {}).items():
                self._records[collection][record_id] = decode(record_type, raw)
