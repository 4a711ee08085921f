"""
Fan-out of outbound frames to rooms.

``publish`` resolves the room against a snapshot of the presence registry at
call time and hands the frame to each member's sink. Sinks only enqueue, so a
publish runs to completion without suspending and two publishes to the same
room can never interleave.

``subscribe`` is the hook for an external pub/sub backplane: a handler
registered for a shipment sees every frame published to that room in this
process and can relay it elsewhere.
"""

from typing import Any, Callable, Dict, List, Optional

from shared.core import get_logger
from shiptrack.realtime.presence import PresenceRegistry

logger = get_logger(__name__)

Frame = Dict[str, Any]
Sink = Callable[[Frame], bool]
Handler = Callable[[str, Frame], None]


class BroadcastBus:
    def __init__(self, presence: PresenceRegistry):
        self.presence = presence
        self._sinks: Dict[str, Sink] = {}
        self._subscribers: Dict[str, List[Handler]] = {}

    def attach(self, connection_id: str, sink: Sink) -> None:
        self._sinks[connection_id] = sink

    def detach(self, connection_id: str) -> None:
        self._sinks.pop(connection_id, None)

    def subscribe(self, shipment_id: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler(shipment_id, frame)``; returns an unsubscribe callable."""
        self._subscribers.setdefault(shipment_id, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(shipment_id, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(shipment_id, None)

        return unsubscribe

    def publish(self, shipment_id: str, frame: Frame, exclude: Optional[str] = None) -> int:
        """Deliver ``frame`` to the room's current members. Returns the number reached."""
        delivered = 0
        for connection_id in sorted(self.presence.viewers(shipment_id)):
            if connection_id == exclude:
                continue
            if self._deliver(connection_id, frame):
                delivered += 1

        for handler in list(self._subscribers.get(shipment_id, ())):
            try:
                handler(shipment_id, frame)
            except Exception:
                logger.exception(f"Subscriber failed for shipment {shipment_id}")
        return delivered

    def publish_all(self, frame: Frame) -> int:
        """Deliver ``frame`` to every attached connection regardless of rooms."""
        return sum(1 for connection_id in list(self._sinks) if self._deliver(connection_id, frame))

    def clear(self) -> None:
        self._sinks.clear()
        self._subscribers.clear()

    def _deliver(self, connection_id: str, frame: Frame) -> bool:
        sink = self._sinks.get(connection_id)
        if sink is None:
            return False
        return sink(frame)
