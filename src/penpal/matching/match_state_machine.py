"""Match state machine: enforces valid match status transitions.

Match lifecycle:
    ADDRESS_PENDING → ADMIN_REVIEW → COMPLETED
    Any non-terminal state → CANCELLED

State semantics:
- ADDRESS_PENDING: match created, waiting for both guardians' addresses.
- ADMIN_REVIEW: both addresses submitted, waiting for an admin.
- COMPLETED: admin approved; addresses disclosed, letters flowing.
  Not terminal: an active exchange can still be cancelled.
- CANCELLED: terminal, by admin rejection or approved cancellation.

Guards:
- → ADMIN_REVIEW requires both address flags to be true.

Fail-closed: invalid transitions return errors. There are no implicit
transitions.
"""

from __future__ import annotations

from penpal.models.penpal import MatchStatus, PenpalMatch


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[MatchStatus, set[MatchStatus]] = {
    MatchStatus.ADDRESS_PENDING: {MatchStatus.ADMIN_REVIEW, MatchStatus.CANCELLED},
    MatchStatus.ADMIN_REVIEW: {MatchStatus.COMPLETED, MatchStatus.CANCELLED},
    MatchStatus.COMPLETED: {MatchStatus.CANCELLED},
    # Terminal
    MatchStatus.CANCELLED: set(),
}


class MatchStateMachine:
    """Validates and applies match status transitions.

    Pure computation. Persistence and notifications are handled by the
    lifecycle layer.
    """

    @staticmethod
    def validate_transition(
        match: PenpalMatch,
        target: MatchStatus,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = match.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid match transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]

        if target == MatchStatus.ADMIN_REVIEW and not (
            match.user1_address_submitted and match.user2_address_submitted
        ):
            return ["Both addresses must be submitted before admin review"]
        return []

    @staticmethod
    def apply_transition(
        match: PenpalMatch,
        target: MatchStatus,
    ) -> list[str]:
        """Validate and apply a transition.

        Returns errors if the transition is invalid. On success mutates
        match.status and returns an empty list.
        """
        errors = MatchStateMachine.validate_transition(match, target)
        if errors:
            return errors
        match.status = target
        return []

    @staticmethod
    def is_terminal(status: MatchStatus) -> bool:
        return status == MatchStatus.CANCELLED

    @staticmethod
    def valid_transitions(status: MatchStatus) -> set[MatchStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(status, set()))
