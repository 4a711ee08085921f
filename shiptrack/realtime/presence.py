"""
In-memory presence bookkeeping: which connections watch which shipments.

The relation is held as two inverse indexes that only ever change together:

    shipment id   -> {connection id, ...}
    connection id -> {shipment id, ...}

Every mutation goes through ``_link`` / ``_unlink``, and empty sets are
deleted rather than kept as placeholders. All methods are synchronous, so
on the event loop each call runs to completion without interleaving.
"""

from typing import Dict, FrozenSet, Optional, Set

from shiptrack.realtime.auth import Identity


class PresenceRegistry:
    def __init__(self):
        self._viewers: Dict[str, Set[str]] = {}
        self._watching: Dict[str, Set[str]] = {}
        self._identities: Dict[str, Identity] = {}

    # ------------------------------------------------------------------
    # Paired index helpers
    # ------------------------------------------------------------------

    def _link(self, identity: Identity, shipment_id: str) -> bool:
        connection_id = identity.connection_id
        viewers = self._viewers.setdefault(shipment_id, set())
        watching = self._watching.setdefault(connection_id, set())
        self._identities[connection_id] = identity
        added = connection_id not in viewers
        viewers.add(connection_id)
        watching.add(shipment_id)
        return added

    def _unlink(self, connection_id: str, shipment_id: str) -> bool:
        viewers = self._viewers.get(shipment_id)
        watching = self._watching.get(connection_id)
        removed = bool(viewers and connection_id in viewers)

        if viewers is not None:
            viewers.discard(connection_id)
            if not viewers:
                del self._viewers[shipment_id]
        if watching is not None:
            watching.discard(shipment_id)
            if not watching:
                del self._watching[connection_id]
                self._identities.pop(connection_id, None)
        return removed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def join(self, identity: Identity, shipment_id: str) -> int:
        """Register ``identity`` as watching ``shipment_id``. Idempotent.

        Returns the room's viewer count after the join.
        """
        self._link(identity, shipment_id)
        return len(self._viewers[shipment_id])

    def leave(self, identity: Identity, shipment_id: str) -> Optional[int]:
        """Remove ``identity`` from the room. Idempotent.

        Returns the remaining viewer count, or None when the connection was
        not watching the shipment (nothing changed).
        """
        if not self._unlink(identity.connection_id, shipment_id):
            return None
        return self.viewer_count(shipment_id)

    def disconnect(self, identity: Identity) -> Dict[str, int]:
        """Remove the connection from every room in one sweep.

        Returns ``{shipment_id: remaining viewer count}`` for each room the
        connection was in.
        """
        remaining = {}
        for shipment_id in sorted(self._watching.get(identity.connection_id, ())):
            self._unlink(identity.connection_id, shipment_id)
            remaining[shipment_id] = self.viewer_count(shipment_id)
        # Drop any residue even if the indexes had drifted
        self._watching.pop(identity.connection_id, None)
        self._identities.pop(identity.connection_id, None)
        return remaining

    def clear(self) -> None:
        self._viewers.clear()
        self._watching.clear()
        self._identities.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def viewer_count(self, shipment_id: str) -> int:
        return len(self._viewers.get(shipment_id, ()))

    def viewers(self, shipment_id: str) -> FrozenSet[str]:
        """Snapshot of the connection ids currently in the room."""
        return frozenset(self._viewers.get(shipment_id, ()))

    def watched_shipments(self, identity: Identity) -> FrozenSet[str]:
        return frozenset(self._watching.get(identity.connection_id, ()))

    def shipments_for_user(self, user_id: str) -> FrozenSet[str]:
        """Every shipment watched by any live connection of ``user_id``."""
        shipments: Set[str] = set()
        for connection_id, identity in self._identities.items():
            if identity.user_id == user_id:
                shipments |= self._watching.get(connection_id, set())
        return frozenset(shipments)

    def identity_of(self, connection_id: str) -> Optional[Identity]:
        return self._identities.get(connection_id)

    @property
    def room_count(self) -> int:
        return len(self._viewers)

    @property
    def watcher_count(self) -> int:
        return len(self._watching)

    def is_consistent(self) -> bool:
        """True when both indexes describe exactly the same relation."""
        forward = {(c, s) for s, conns in self._viewers.items() for c in conns}
        backward = {(c, s) for c, ships in self._watching.items() for s in ships}
        no_empties = all(self._viewers.values()) and all(self._watching.values())
        return forward == backward and no_empties and set(self._identities) == set(self._watching)
