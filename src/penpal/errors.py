"""Error taxonomy for pen-pal workflow operations.

Engines raise these; the service facade turns them into failed
ServiceResults carrying the ErrorKind. Every raise happens before any
write for the operation that raised it, so a rejected operation leaves
no partial state behind.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    INVARIANT_VIOLATION = "invariant_violation"
    UPSTREAM_FAILURE = "upstream_failure"
    CONFLICT = "conflict"


class PenpalError(Exception):
    """Base class for all workflow errors."""
    kind: ErrorKind = ErrorKind.INVALID_STATE


class NotFoundError(PenpalError):
    """Referenced profile, match, proof, mission or request does not exist."""
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(PenpalError):
    """Caller is not a participant, or not an admin for an admin operation."""
    kind = ErrorKind.FORBIDDEN


class AddressNotDisclosedError(ForbiddenError):
    """Partner address requested before the match was approved."""


class InvalidStateError(PenpalError):
    """Operation not permitted from the record's current status."""
    kind = ErrorKind.INVALID_STATE


class InvariantViolationError(PenpalError):
    """Operation would break a structural rule (step order, one recruiting profile...)."""
    kind = ErrorKind.INVARIANT_VIOLATION


class UpstreamFailureError(PenpalError):
    """Blob store or other external collaborator failed."""
    kind = ErrorKind.UPSTREAM_FAILURE


class ConcurrentUpdateError(PenpalError):
    """Optimistic update lost the race too many times."""
    kind = ErrorKind.CONFLICT


class DuplicateRecordError(InvariantViolationError):
    """A write would create a second record where only one may exist."""
