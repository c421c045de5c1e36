"""Letter proof state machine: enforces valid proof status transitions.

Proof lifecycle:
    SENT → RECEIVED          receiver verified with a photo
    SENT → AUTO_VERIFIED     escalation timeout
    SENT → DISPUTED          receiver says the letter never arrived
    DISPUTED → CANCELLED     admin: not delivered, sender must resend
    DISPUTED → AUTO_VERIFIED admin: delivered
    SENT → CANCELLED         match cancelled while the letter was outstanding

RECEIVED, AUTO_VERIFIED and CANCELLED are terminal. The mission only
advances on RECEIVED or AUTO_VERIFIED.
"""

from __future__ import annotations

from penpal.models.letter import LetterProof, LetterProofStatus


_TRANSITIONS: dict[LetterProofStatus, set[LetterProofStatus]] = {
    LetterProofStatus.SENT: {
        LetterProofStatus.RECEIVED,
        LetterProofStatus.AUTO_VERIFIED,
        LetterProofStatus.DISPUTED,
        LetterProofStatus.CANCELLED,
    },
    LetterProofStatus.DISPUTED: {
        LetterProofStatus.AUTO_VERIFIED,
        LetterProofStatus.CANCELLED,
    },
    LetterProofStatus.RECEIVED: set(),
    LetterProofStatus.AUTO_VERIFIED: set(),
    LetterProofStatus.CANCELLED: set(),
}

# Outcomes that count as a delivered letter.
DELIVERED: frozenset[LetterProofStatus] = frozenset({
    LetterProofStatus.RECEIVED,
    LetterProofStatus.AUTO_VERIFIED,
})

# Proofs in these states block a new proof for the same step.
OUTSTANDING: frozenset[LetterProofStatus] = frozenset({
    LetterProofStatus.SENT,
    LetterProofStatus.DISPUTED,
})


class ProofStateMachine:
    """Validates and applies letter proof transitions. Pure computation."""

    @staticmethod
    def validate_transition(
        proof: LetterProof,
        target: LetterProofStatus,
    ) -> list[str]:
        current = proof.status
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid letter transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(
        proof: LetterProof,
        target: LetterProofStatus,
    ) -> list[str]:
        errors = ProofStateMachine.validate_transition(proof, target)
        if errors:
            return errors
        proof.status = target
        return []

    @staticmethod
    def is_terminal(status: LetterProofStatus) -> bool:
        return not _TRANSITIONS.get(status)

    @staticmethod
    def valid_transitions(status: LetterProofStatus) -> set[LetterProofStatus]:
        return set(_TRANSITIONS.get(status, set()))
