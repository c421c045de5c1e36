"""Pen-pal recruitment and match data models.

A child's recruitment post (PenpalProfile) receives applications
(PenpalApplication). Accepting one produces a PenpalMatch, the
two-party aggregate that carries both address flags and moves through:

    ADDRESS_PENDING → ADMIN_REVIEW → COMPLETED
    Any non-terminal state → CANCELLED

ParentAddress records are written once per (user, match) and never
mutated. Whether the counterpart may read one is decided at read time
by the address disclosure gate, not here.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class ProfileStatus(str, enum.Enum):
    """Recruitment status of a profile."""
    RECRUITING = "recruiting"
    MATCHED = "matched"


class ApplicationStatus(str, enum.Enum):
    """Lifecycle of an application. ACCEPTED and REJECTED are terminal."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MatchStatus(str, enum.Enum):
    """Lifecycle of a match.

    ADDRESS_PENDING: waiting for one or both guardians' addresses.
    ADMIN_REVIEW: both addresses in, waiting for an admin decision.
    COMPLETED: admin approved; addresses disclosed, mission running.
    CANCELLED: terminal, by admin rejection or approved cancellation.
    """
    ADDRESS_PENDING = "address_pending"
    ADMIN_REVIEW = "admin_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchSide(str, enum.Enum):
    """Which participant slot of a match a user occupies."""
    USER1 = "user1"
    USER2 = "user2"


class CharacterStamp(str, enum.Enum):
    """Decorative stamp a child picks for their letters."""
    LION = "lion"
    RABBIT = "rabbit"
    BEAR = "bear"
    FOX = "fox"
    PANDA = "panda"
    TIGER = "tiger"
    KOALA = "koala"
    FROG = "frog"
    PIG = "pig"
    CHICK = "chick"


@dataclass
class PenpalProfile:
    """One child's open recruitment post.

    At most one RECRUITING profile per child. A profile flips to
    MATCHED on acceptance and may be restored to RECRUITING when the
    match is cancelled.
    """
    profile_id: str
    user_id: str
    child_id: str
    child_name: str
    age: int
    english_level: str
    introduction: str
    character_stamp: CharacterStamp
    status: ProfileStatus = ProfileStatus.RECRUITING
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    version: int = 0


@dataclass
class PenpalApplication:
    """A request from an applicant to a profile owner."""
    application_id: str
    profile_id: str
    applicant_user_id: str
    applicant_child_name: str
    applicant_profile_id: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.PENDING
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    version: int = 0


@dataclass
class PenpalMatch:
    """The bidirectional relationship between two users' children.

    user1 is the profile owner, user2 the applicant. The profile ids
    record exactly which posts were flipped to MATCHED so that a
    cancellation restores those and nothing else.

    Invariants (enforced by MatchLifecycle through the store's
    compare-and-swap update):
    - ADMIN_REVIEW implies both address flags are true.
    - COMPLETED is only reached through an explicit admin approval.
    """
    match_id: str
    user1_id: str
    user1_child_name: str
    user2_id: str
    user2_child_name: str
    user1_address_submitted: bool = False
    user2_address_submitted: bool = False
    status: MatchStatus = MatchStatus.ADDRESS_PENDING
    user1_profile_id: Optional[str] = None
    user2_profile_id: Optional[str] = None
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    approved_utc: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_utc: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_utc: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    version: int = 0

    def participants(self) -> tuple[str, str]:
        return (self.user1_id, self.user2_id)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def side_of(self, user_id: str) -> Optional[MatchSide]:
        if user_id == self.user1_id:
            return MatchSide.USER1
        if user_id == self.user2_id:
            return MatchSide.USER2
        return None

    def partner_of(self, user_id: str) -> str:
        """Return the other participant's id. Caller must be a participant."""
        if user_id == self.user1_id:
            return self.user2_id
        if user_id == self.user2_id:
            return self.user1_id
        raise ValueError(f"{user_id} is not a participant in match {self.match_id}")

    def child_name_of(self, user_id: str) -> str:
        if user_id == self.user1_id:
            return self.user1_child_name
        return self.user2_child_name

    def address_submitted(self, side: MatchSide) -> bool:
        if side == MatchSide.USER1:
            return self.user1_address_submitted
        return self.user2_address_submitted


@dataclass(frozen=True)
class ParentAddress:
    """One guardian's mailing address for one match. Immutable."""
    address_id: str
    user_id: str
    match_id: str
    parent_name: str
    address: str
    postal_code: str
    email: str
    phone: str = ""
    consent_to_share: bool = False
    created_utc: Optional[datetime] = None
    version: int = 0
