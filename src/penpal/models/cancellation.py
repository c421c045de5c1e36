"""Cancellation request data model.

A participant asks for a match to be ended; only an admin decides.

    PENDING → APPROVED   (match cancelled, reputation adjusted)
    PENDING → REJECTED   (match untouched)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class CancelRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class PenpalCancelRequest:
    """A request to terminate a match, awaiting admin arbitration."""
    request_id: str
    match_id: str
    requester_id: str
    requester_child_name: str
    partner_id: str
    partner_child_name: str
    reason: str
    status: CancelRequestStatus = CancelRequestStatus.PENDING
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    processed_utc: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    penalty_points: Optional[int] = None
    admin_notified_utc: Optional[datetime] = None
    version: int = 0
