"""Recruitment and applications: the front door that produces matches.

A child posts a recruiting profile; other families apply; the owner
accepts one application, which creates the match. Accepting flips the
owner's profile (and the recruiting profile the applicant applied
with, if any) to MATCHED and rejects every other pending application to
the same profile, so a profile is never referenced by two accepted
applications.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from penpal.errors import (
    DuplicateRecordError,
    ForbiddenError,
    InvalidStateError,
    InvariantViolationError,
)
from penpal.models.penpal import (
    ApplicationStatus,
    CharacterStamp,
    PenpalApplication,
    PenpalMatch,
    PenpalProfile,
    ProfileStatus,
)
from penpal.models.reputation import ReputationAction
from penpal.notifications.effects import Notify, NotificationType
from penpal.outcome import Outcome, PendingEvent
from penpal.persistence.event_log import EventKind
from penpal.persistence.store import Collection, RecordStore
from penpal.reputation.ledger import ReputationBook


def _recruiting_for(child_id: str) -> Callable[[PenpalProfile], bool]:
    return lambda p: p.child_id == child_id and p.status == ProfileStatus.RECRUITING


class ApplicationDesk:
    """Profiles, applications and acceptance."""

    def __init__(self, store: RecordStore, reputation: ReputationBook) -> None:
        self._store = store
        self._reputation = reputation

    def register_profile(
        self,
        user_id: str,
        child_id: str,
        child_name: str,
        age: int,
        english_level: str,
        introduction: str,
        character_stamp: CharacterStamp,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalProfile]:
        """Open a recruitment post. One recruiting profile per child."""
        if now is None:
            now = datetime.now(timezone.utc)
        if not child_name.strip():
            raise InvariantViolationError("A child name is required")
        if age <= 0:
            raise InvariantViolationError(f"Age must be positive, got {age}")
        profile = PenpalProfile(
            profile_id=f"profile-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            child_id=child_id,
            child_name=child_name.strip(),
            age=age,
            english_level=english_level,
            introduction=introduction,
            character_stamp=CharacterStamp(character_stamp),
            created_utc=now,
            updated_utc=now,
        )
        stored = self._store.insert_unique(
            Collection.PROFILES, profile.profile_id, profile,
            conflicts=_recruiting_for(child_id),
        )
        if stored is None:
            raise InvariantViolationError(
                f"{child_name} already has an active pen-pal recruitment"
            )
        return Outcome(
            record=stored,
            events=[PendingEvent(
                EventKind.PROFILE_REGISTERED,
                user_id,
                {"profile_id": stored.profile_id, "user_id": user_id, "child_id": child_id},
            )],
        )

    def apply(
        self,
        profile_id: str,
        applicant_user_id: str,
        applicant_child_name: str,
        applicant_profile_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalApplication]:
        """Apply to become a recruiting child's pen pal.

        ``applicant_profile_id`` names the applicant child's own
        recruiting profile, which is taken off the market if this
        application is accepted.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        profile = self._store.require(Collection.PROFILES, profile_id)
        if profile.user_id == applicant_user_id:
            raise InvariantViolationError("You cannot apply to your own profile")
        if profile.status != ProfileStatus.RECRUITING:
            raise InvalidStateError("This profile is no longer recruiting")
        if applicant_profile_id is not None:
            own = self._store.require(Collection.PROFILES, applicant_profile_id)
            if own.user_id != applicant_user_id:
                raise ForbiddenError("You can only apply with your own child's profile")

        application = PenpalApplication(
            application_id=f"app-{uuid.uuid4().hex[:12]}",
            profile_id=profile_id,
            applicant_user_id=applicant_user_id,
            applicant_child_name=applicant_child_name,
            applicant_profile_id=applicant_profile_id,
            created_utc=now,
            updated_utc=now,
        )
        stored = self._store.insert_unique(
            Collection.APPLICATIONS, application.application_id, application,
            conflicts=lambda a: a.profile_id == profile_id
            and a.applicant_user_id == applicant_user_id
            and a.status == ApplicationStatus.PENDING,
        )
        if stored is None:
            raise InvariantViolationError("You have already applied to this profile")
        return Outcome(
            record=stored,
            effects=[Notify(
                user_id=profile.user_id,
                notification_type=NotificationType.APPLICATION_RECEIVED,
                title="New pen-pal application",
                message=f"{applicant_child_name} would like to be {profile.child_name}'s pen pal.",
                link=f"/penpal/profiles/{profile_id}",
            )],
            events=[PendingEvent(
                EventKind.APPLICATION_SUBMITTED,
                applicant_user_id,
                {"application_id": stored.application_id, "profile_id": profile_id},
            )],
        )

    def accept(
        self,
        application_id: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalMatch]:
        """Accept an application and create the match.

        The profile flip to MATCHED is the commit point: whichever
        acceptance wins it creates the match, any concurrent loser sees
        a non-recruiting profile and fails.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        application = self._store.require(Collection.APPLICATIONS, application_id)
        profile = self._store.require(Collection.PROFILES, application.profile_id)
        if profile.user_id != owner_id:
            raise ForbiddenError("Only the profile owner can accept applications")
        if application.status != ApplicationStatus.PENDING:
            raise InvalidStateError(
                f"This application has already been {application.status.value}"
            )

        def claim_profile(current: PenpalProfile) -> None:
            if current.status != ProfileStatus.RECRUITING:
                raise InvalidStateError("This profile is no longer recruiting")
            current.status = ProfileStatus.MATCHED
            current.updated_utc = now

        profile = self._store.update(Collection.PROFILES, profile.profile_id, claim_profile)

        def accept_application(current: PenpalApplication) -> None:
            current.status = ApplicationStatus.ACCEPTED
            current.updated_utc = now

        self._store.update(Collection.APPLICATIONS, application_id, accept_application)

        applicant_profile = self._claim_applicant_profile(application, now)

        match = PenpalMatch(
            match_id=f"match-{uuid.uuid4().hex[:12]}",
            user1_id=profile.user_id,
            user1_child_name=profile.child_name,
            user2_id=application.applicant_user_id,
            user2_child_name=application.applicant_child_name,
            user1_profile_id=profile.profile_id,
            user2_profile_id=applicant_profile.profile_id if applicant_profile else None,
            created_utc=now,
            updated_utc=now,
        )
        match = self._store.insert(Collection.MATCHES, match.match_id, match)

        outcome: Outcome[PenpalMatch] = Outcome(record=match)
        outcome.events.append(PendingEvent(
            EventKind.APPLICATION_ACCEPTED,
            owner_id,
            {"application_id": application_id, "profile_id": profile.profile_id},
        ))
        outcome.events.append(PendingEvent(
            EventKind.MATCH_CREATED,
            owner_id,
            {
                "match_id": match.match_id,
                "user1_id": match.user1_id,
                "user2_id": match.user2_id,
            },
        ))
        outcome.effects.append(Notify(
            user_id=application.applicant_user_id,
            notification_type=NotificationType.APPLICATION_ACCEPTED,
            title="Application accepted!",
            message=(
                f"{profile.child_name} accepted your application. "
                f"Please submit your mailing address."
            ),
            link=f"/penpal/{match.match_id}/address",
        ))
        for user_id in match.participants():
            outcome.absorb(self._reputation.record(
                user_id, ReputationAction.MATCH_CREATED, now, match_id=match.match_id,
            ))
        outcome.absorb(self._reject_siblings(profile, application_id, now))
        return outcome

    def reject(
        self,
        application_id: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> Outcome[PenpalApplication]:
        """Decline an application."""
        if now is None:
            now = datetime.now(timezone.utc)
        application = self._store.require(Collection.APPLICATIONS, application_id)
        profile = self._store.require(Collection.PROFILES, application.profile_id)
        if profile.user_id != owner_id:
            raise ForbiddenError("Only the profile owner can reject applications")

        def mutate(current: PenpalApplication) -> None:
            if current.status != ApplicationStatus.PENDING:
                raise InvalidStateError(
                    f"This application has already been {current.status.value}"
                )
            current.status = ApplicationStatus.REJECTED
            current.updated_utc = now

        application = self._store.update(Collection.APPLICATIONS, application_id, mutate)
        return Outcome(
            record=application,
            effects=[self._rejection_notice(application, profile)],
            events=[PendingEvent(
                EventKind.APPLICATION_REJECTED,
                owner_id,
                {"application_id": application_id, "profile_id": profile.profile_id},
            )],
        )

    def restore_profiles(self, match: PenpalMatch, now: datetime) -> list[PenpalProfile]:
        """Put a cancelled match's profiles back into recruitment.

        A profile is skipped when its child has meanwhile opened another
        recruiting profile, so the one-per-child rule still holds.
        """
        restored: list[PenpalProfile] = []
        for profile_id in (match.user1_profile_id, match.user2_profile_id):
            if profile_id is None:
                continue
            profile = self._store.get(Collection.PROFILES, profile_id)
            if profile is None or profile.status == ProfileStatus.RECRUITING:
                continue

            def mutate(current: PenpalProfile) -> None:
                current.status = ProfileStatus.RECRUITING
                current.updated_utc = now

            try:
                restored.append(self._store.update(
                    Collection.PROFILES, profile_id, mutate,
                    conflicts=_recruiting_for(profile.child_id),
                ))
            except DuplicateRecordError:
                continue
        return restored

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _claim_applicant_profile(
        self, application: PenpalApplication, now: datetime,
    ) -> Optional[PenpalProfile]:
        """Mark the profile the applicant applied with MATCHED, if still recruiting."""
        if application.applicant_profile_id is None:
            return None

        def mutate(current: PenpalProfile) -> None:
            if current.status != ProfileStatus.RECRUITING:
                raise InvalidStateError("Applicant profile is no longer recruiting")
            current.status = ProfileStatus.MATCHED
            current.updated_utc = now

        try:
            return self._store.update(
                Collection.PROFILES, application.applicant_profile_id, mutate,
            )
        except InvalidStateError:
            return None

    def _reject_siblings(
        self, profile: PenpalProfile, accepted_id: str, now: datetime,
    ) -> Outcome[int]:
        siblings = self._store.list(
            Collection.APPLICATIONS,
            lambda a: a.profile_id == profile.profile_id
            and a.application_id != accepted_id
            and a.status == ApplicationStatus.PENDING,
        )
        outcome: Outcome[int] = Outcome(record=0)
        rejected = 0
        for sibling in siblings:

            def mutate(current: PenpalApplication) -> None:
                if current.status != ApplicationStatus.PENDING:
                    return
                current.status = ApplicationStatus.REJECTED
                current.updated_utc = now

            updated = self._store.update(Collection.APPLICATIONS, sibling.application_id, mutate)
            if updated.status != ApplicationStatus.REJECTED:
                continue
            rejected += 1
            outcome.effects.append(self._rejection_notice(updated, profile))
            outcome.events.append(PendingEvent(
                EventKind.APPLICATION_REJECTED,
                profile.user_id,
                {
                    "application_id": updated.application_id,
                    "profile_id": profile.profile_id,
                    "auto": True,
                },
            ))
        outcome.record = rejected
        return outcome

    @staticmethod
    def _rejection_notice(application: PenpalApplication, profile: PenpalProfile) -> Notify:
        return Notify(
            user_id=application.applicant_user_id,
            notification_type=NotificationType.APPLICATION_REJECTED,
            title="Application not accepted",
            message=f"{profile.child_name} has found a different pen pal this time.",
            link="/penpal/profiles",
        )
