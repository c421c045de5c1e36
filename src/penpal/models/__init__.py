"""Core data models for the pen-pal workflow."""

from penpal.models.penpal import (
    ApplicationStatus,
    CharacterStamp,
    MatchSide,
    MatchStatus,
    ParentAddress,
    PenpalApplication,
    PenpalMatch,
    PenpalProfile,
    ProfileStatus,
)
from penpal.models.letter import (
    EscalationStage,
    LetterMission,
    LetterProof,
    LetterProofStatus,
    TOTAL_STEPS,
)
from penpal.models.reputation import (
    PenaltyRecord,
    PenaltySeverity,
    PenaltyType,
    ReputationAction,
    ReputationDelta,
    UserPenpalReputation,
)
from penpal.models.cancellation import CancelRequestStatus, PenpalCancelRequest

__all__ = [
    "ApplicationStatus",
    "CharacterStamp",
    "MatchSide",
    "MatchStatus",
    "ParentAddress",
    "PenpalApplication",
    "PenpalMatch",
    "PenpalProfile",
    "ProfileStatus",
    "EscalationStage",
    "LetterMission",
    "LetterProof",
    "LetterProofStatus",
    "TOTAL_STEPS",
    "PenaltyRecord",
    "PenaltySeverity",
    "PenaltyType",
    "ReputationAction",
    "ReputationDelta",
    "UserPenpalReputation",
    "CancelRequestStatus",
    "PenpalCancelRequest",
]
