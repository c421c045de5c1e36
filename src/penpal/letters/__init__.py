"""Letter exchange: per-step proofs and the mission they advance."""

from penpal.letters.mission_tracker import MissionTracker
from penpal.letters.proof_state_machine import ProofStateMachine
from penpal.letters.proofs import LetterProofEngine

__all__ = ["LetterProofEngine", "MissionTracker", "ProofStateMachine"]
