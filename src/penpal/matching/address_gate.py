"""Address disclosure gate.

Addresses are stored the moment a guardian submits them, but a partner
can read one only when the match is COMPLETED. The check runs on every
read; there is no cached "disclosed" flag to drift out of date.
"""

from __future__ import annotations

from penpal.errors import AddressNotDisclosedError, ForbiddenError, NotFoundError
from penpal.matching.lifecycle import address_id_for
from penpal.models.penpal import MatchStatus, ParentAddress
from penpal.persistence.store import Collection, RecordStore


class AddressGate:
    """Read-time access control for ParentAddress records."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def partner_address(self, match_id: str, caller_id: str) -> ParentAddress:
        """Return the caller's partner's address, or fail closed."""
        match = self._store.require(Collection.MATCHES, match_id)
        if not match.is_participant(caller_id):
            raise ForbiddenError("You are not a participant in this match")
        if match.status != MatchStatus.COMPLETED:
            raise AddressNotDisclosedError(
                "Your pen pal's address is shared only after an administrator approves the match"
            )
        partner_id = match.partner_of(caller_id)
        address = self._store.get(Collection.ADDRESSES, address_id_for(match_id, partner_id))
        if address is None:
            raise NotFoundError(f"Address not found for match {match_id}")
        return address

    def own_address(self, match_id: str, caller_id: str) -> ParentAddress:
        """A guardian may always read back what they submitted."""
        match = self._store.require(Collection.MATCHES, match_id)
        if not match.is_participant(caller_id):
            raise ForbiddenError("You are not a participant in this match")
        return self._store.require(Collection.ADDRESSES, address_id_for(match_id, caller_id))
