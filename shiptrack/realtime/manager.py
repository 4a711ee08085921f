"""
Real-time channel manager.

Owns the lifecycle of every live connection:

    handshake -> authenticate -> accept -> read loop -> cleanup

Inbound frames are routed through an explicit dispatch table. Handlers are
plain synchronous functions over the presence registry and the bus, so each
one runs to completion on the event loop before the next frame is read. The
only suspension points are the credential check and socket I/O.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError as PydanticValidationError

from shared.core import get_logger, set_connection_context
from shiptrack.application.schemas import (
    CamelModel,
    ClientFrame,
    ErrorEvent,
    JoinedConfirmation,
    ShipmentRoomRequest,
    WatcherArrived,
    WatcherDeparted,
)
from shiptrack.core_settings import Settings
from shiptrack.exceptions import AuthenticationError, ValidationError
from shiptrack.realtime.auth import ConnectionAuthenticator, Identity, new_connection_id
from shiptrack.realtime.bus import BroadcastBus
from shiptrack.realtime.connection import (
    CLOSE_GOING_AWAY,
    CLOSE_UNAUTHORIZED,
    Connection,
    ConnectionClosed,
    Transport,
)
from shiptrack.realtime.presence import PresenceRegistry

logger = get_logger(__name__, component="channel")

# Client -> server
JOIN_SHIPMENT = "join:shipment"
LEAVE_SHIPMENT = "leave:shipment"
PING = "ping"

# Server -> client
SHIPMENT_JOINED = "shipment:joined"
WATCHER_ARRIVED = "watcher:arrived"
WATCHER_DEPARTED = "watcher:departed"
SHIPMENT_UPDATED = "shipment:updated"
DOCUMENT_UPLOADED = "document:uploaded"
WAREHOUSE_CAPACITY_UPDATED = "warehouse:capacity_updated"
PONG = "pong"
ERROR = "error"

Payload = Union[CamelModel, Mapping[str, Any], None]
FrameHandler = Callable[[Connection, Dict[str, Any]], None]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_frame(event: str, payload: Payload = None) -> Dict[str, Any]:
    """Wire frame for ``event``, stamped with the time it is sent."""
    if isinstance(payload, CamelModel):
        data = payload.to_wire()
    else:
        # Plain mappings may carry datetimes, enums or models; encode them once here
        data = jsonable_encoder(dict(payload or {}))
    data["timestamp"] = _timestamp()
    return {"event": event, "data": data}


class ChannelManager:
    def __init__(
        self,
        authenticator: ConnectionAuthenticator,
        presence: Optional[PresenceRegistry] = None,
        bus: Optional[BroadcastBus] = None,
        send_timeout: float = 10.0,
        outbox_size: int = 256,
    ):
        self.authenticator = authenticator
        self.presence = presence if presence is not None else PresenceRegistry()
        self.bus = bus if bus is not None else BroadcastBus(self.presence)
        self.send_timeout = send_timeout
        self.outbox_size = outbox_size
        self._connections: Dict[str, Connection] = {}
        self._handlers: Dict[str, FrameHandler] = {
            JOIN_SHIPMENT: self._handle_join,
            LEAVE_SHIPMENT: self._handle_leave,
            PING: self._handle_ping,
        }

    @classmethod
    def from_settings(cls, settings: Settings, presence: Optional[PresenceRegistry] = None) -> "ChannelManager":
        return cls(
            authenticator=ConnectionAuthenticator.from_settings(settings),
            presence=presence,
            send_timeout=settings.SEND_TIMEOUT_SECONDS,
            outbox_size=settings.OUTBOX_MAX_SIZE,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def serve(self, transport: Transport, credential: Optional[str] = None) -> None:
        """Run one connection from handshake to cleanup."""
        connection_id = new_connection_id()
        set_connection_context(connection_id=connection_id)

        try:
            identity = await self.authenticator.authenticate(credential, connection_id)
        except AuthenticationError as e:
            logger.warning(
                f"Connection refused: {e.message}",
                extra={"extra_fields": {"connection_id": connection_id}},
            )
            await transport.close(CLOSE_UNAUTHORIZED, "Authentication failed")
            return

        await transport.accept()
        connection = self.register(identity, transport)
        set_connection_context(connection_id=connection_id, user_id=identity.user_id)

        try:
            while True:
                raw = await transport.receive_text()
                self.handle_frame(connection, raw)
        except ConnectionClosed as e:
            logger.info(
                f"Connection closed: {connection_id} (code {e.code})",
                extra={"extra_fields": {"connection_id": connection_id, "code": e.code}},
            )
        finally:
            self.unregister(connection)
            await connection.stop()

    def register(self, identity: Identity, transport: Transport) -> Connection:
        connection = Connection(
            identity,
            transport,
            send_timeout=self.send_timeout,
            outbox_size=self.outbox_size,
            on_failure=self.unregister,
        )
        self._connections[identity.connection_id] = connection
        self.bus.attach(identity.connection_id, connection.send)
        connection.start()
        logger.info(
            f"Client connected: {identity.connection_id}",
            extra={"extra_fields": {
                "connection_id": identity.connection_id,
                "user_id": identity.user_id,
                "role": identity.role.value,
            }},
        )
        return connection

    def unregister(self, connection: Connection) -> None:
        """Sweep the connection out of every room and tell the remaining watchers."""
        identity = connection.identity
        if self._connections.get(identity.connection_id) is not connection:
            return
        remaining: Dict[str, int] = {}
        try:
            remaining = self.presence.disconnect(identity)
        finally:
            self.bus.detach(identity.connection_id)
            self._connections.pop(identity.connection_id, None)

        for shipment_id, viewer_count in remaining.items():
            self.bus.publish(shipment_id, build_frame(WATCHER_DEPARTED, WatcherDeparted(
                shipment_id=shipment_id,
                user_id=identity.user_id,
                role=identity.role.value,
                connection_id=identity.connection_id,
                viewer_count=viewer_count,
            )))
        logger.info(
            f"Client disconnected: {identity.connection_id}",
            extra={"extra_fields": {
                "connection_id": identity.connection_id,
                "rooms_left": sorted(remaining),
            }},
        )

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    def handle_frame(self, connection: Connection, raw: str) -> None:
        """Route one inbound frame. Faults are reported to this connection only."""
        try:
            frame = ClientFrame.model_validate_json(raw)
        except PydanticValidationError:
            self._send_error(connection, "Malformed message", "BAD_FRAME")
            return

        handler = self._handlers.get(frame.event)
        if handler is None:
            self._send_error(connection, f"Unknown event: {frame.event}", "UNKNOWN_EVENT")
            return

        try:
            handler(connection, frame.data)
        except ValidationError as e:
            logger.info(f"Rejected {frame.event} from {connection.connection_id}: {e.message}")
            self._send_error(connection, e.message, e.code)
        except Exception:
            logger.exception(f"Handler for {frame.event} failed on {connection.connection_id}")
            self._send_error(connection, "Internal error", "INTERNAL_ERROR")

    @staticmethod
    def _room_from(data: Dict[str, Any]) -> str:
        try:
            return ShipmentRoomRequest.model_validate(data).shipment_id
        except PydanticValidationError:
            raise ValidationError("shipmentId required")

    def _handle_join(self, connection: Connection, data: Dict[str, Any]) -> None:
        shipment_id = self._room_from(data)
        identity = connection.identity
        viewer_count = self.presence.join(identity, shipment_id)
        set_connection_context(shipment_id=shipment_id)
        logger.info(
            f"{identity.connection_id} joined shipment room {shipment_id}",
            extra={"extra_fields": {"shipment_id": shipment_id, "viewer_count": viewer_count}},
        )

        connection.send(build_frame(SHIPMENT_JOINED, JoinedConfirmation(
            shipment_id=shipment_id,
            viewer_count=viewer_count,
        )))
        self.bus.publish(
            shipment_id,
            build_frame(WATCHER_ARRIVED, WatcherArrived(
                shipment_id=shipment_id,
                user_id=identity.user_id,
                role=identity.role.value,
                connection_id=identity.connection_id,
            )),
            exclude=identity.connection_id,
        )

    def _handle_leave(self, connection: Connection, data: Dict[str, Any]) -> None:
        shipment_id = self._room_from(data)
        identity = connection.identity
        viewer_count = self.presence.leave(identity, shipment_id)
        if viewer_count is None:
            logger.debug(f"{identity.connection_id} left {shipment_id} without being in it")
            return

        logger.info(
            f"{identity.connection_id} left shipment room {shipment_id}",
            extra={"extra_fields": {"shipment_id": shipment_id, "viewer_count": viewer_count}},
        )
        self.bus.publish(shipment_id, build_frame(WATCHER_DEPARTED, WatcherDeparted(
            shipment_id=shipment_id,
            user_id=identity.user_id,
            role=identity.role.value,
            connection_id=identity.connection_id,
            viewer_count=viewer_count,
        )))

    def _handle_ping(self, connection: Connection, data: Dict[str, Any]) -> None:
        connection.send(build_frame(PONG))

    def _send_error(self, connection: Connection, message: str, code: Optional[str] = None) -> None:
        connection.send(build_frame(ERROR, ErrorEvent(message=message, code=code)))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def broadcast(self, shipment_id: str, event: str, payload: Payload = None) -> int:
        """Send ``event`` to everyone watching ``shipment_id`` right now.

        Returns how many connections it was queued for; zero watchers is a no-op.
        """
        delivered = self.bus.publish(shipment_id, build_frame(event, payload))
        logger.debug(
            f"Broadcast {event} to shipment {shipment_id}",
            extra={"extra_fields": {"shipment_id": shipment_id, "event": event, "delivered": delivered}},
        )
        return delivered

    def broadcast_global(self, event: str, payload: Payload = None) -> int:
        delivered = self.bus.publish_all(build_frame(event, payload))
        logger.debug(f"Broadcast {event} to all connections ({delivered})")
        return delivered

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "rooms": self.presence.room_count,
            "watchers": self.presence.watcher_count,
        }

    async def shutdown(self) -> None:
        """Close every live connection and forget all presence state."""
        connections = list(self._connections.values())
        for connection in connections:
            await connection.close(CLOSE_GOING_AWAY, "Server shutting down")
        self._connections.clear()
        self.presence.clear()
        self.bus.clear()
        logger.info(f"Channel manager shut down, closed {len(connections)} connections")
