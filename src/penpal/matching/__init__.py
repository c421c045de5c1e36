"""Matching: recruitment, applications, and the match lifecycle.

Profiles collect applications; acceptance creates a match, which then
waits for both addresses and an admin decision before letters flow.
"""

from penpal.matching.address_gate import AddressGate
from penpal.matching.applications import ApplicationDesk
from penpal.matching.lifecycle import MatchLifecycle
from penpal.matching.match_state_machine import MatchStateMachine

__all__ = ["AddressGate", "ApplicationDesk", "MatchLifecycle", "MatchStateMachine"]
