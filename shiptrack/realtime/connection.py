"""
One live real-time connection.

Outbound frames are queued on a bounded per-connection outbox and written by
a single writer task, so enqueueing never suspends the caller and frames
reach the socket in the order they were enqueued. Each write is bounded by a
send timeout; a stalled or broken peer closes its own connection without
affecting anyone else.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect

from shared.core import get_logger
from shiptrack.realtime.auth import Identity

logger = get_logger(__name__, component="channel")

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013
CLOSE_UNAUTHORIZED = 4401


class ConnectionClosed(Exception):
    """The peer is gone; nothing more can be read from or written to it."""

    def __init__(self, code: int = CLOSE_NORMAL):
        super().__init__(f"connection closed ({code})")
        self.code = code


class Transport(ABC):
    """Minimal duplex text channel the connection loop runs over."""

    @abstractmethod
    async def accept(self) -> None:
        ...

    @abstractmethod
    async def receive_text(self) -> str:
        """Next inbound frame. Raises ConnectionClosed when the peer leaves."""

    @abstractmethod
    async def send_json(self, message: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        ...


class WebSocketTransport(Transport):
    """Adapter over a Starlette/FastAPI ``WebSocket``."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def accept(self) -> None:
        await self.websocket.accept()

    async def receive_text(self) -> str:
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionClosed(getattr(e, "code", CLOSE_NORMAL))

        if message["type"] == "websocket.disconnect":
            raise ConnectionClosed(message.get("code", CLOSE_NORMAL))
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send_json(self, message: Dict[str, Any]) -> None:
        try:
            await self.websocket.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise ConnectionClosed(getattr(e, "code", CLOSE_GOING_AWAY))

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        try:
            await self.websocket.close(code=code, reason=reason or None)
        except RuntimeError:
            # Already closed by either side
            pass


class ConnectionState(str, Enum):
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Connection:
    def __init__(
        self,
        identity: Identity,
        transport: Transport,
        send_timeout: float = 10.0,
        outbox_size: int = 256,
        on_failure: Optional[Callable[["Connection"], None]] = None,
    ):
        self.identity = identity
        self.on_failure = on_failure
        self.transport = transport
        self.send_timeout = send_timeout
        self.state = ConnectionState.OPEN
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Future] = None

    @property
    def connection_id(self) -> str:
        return self.identity.connection_id

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.CLOSED

    def start(self) -> None:
        self.state = ConnectionState.AUTHENTICATED
        self._writer = asyncio.create_task(self._write_loop(), name=f"writer-{self.connection_id}")

    def send(self, message: Dict[str, Any]) -> bool:
        """Queue a frame for delivery. Never suspends.

        Returns False when the connection is closed or its outbox is full; a
        full outbox means the peer is not keeping up, so it is disconnected.
        """
        if not self.is_open:
            return False
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                f"Outbox full, dropping slow consumer {self.connection_id}",
                extra={"extra_fields": {"connection_id": self.connection_id, "queued": self._outbox.qsize()}},
            )
            self._closer = asyncio.ensure_future(self._fail(CLOSE_TRY_AGAIN_LATER, "Too slow"))
            self._closer.add_done_callback(self._closed_after_overflow)
            return False
        return True

    def _closed_after_overflow(self, future: "asyncio.Future[None]") -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                f"Closing slow consumer {self.connection_id} failed",
                exc_info=future.exception(),
                extra={"extra_fields": {"connection_id": self.connection_id}},
            )

    async def drain(self) -> None:
        """Wait until every queued frame has been written or discarded."""
        await self._outbox.join()

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if not self.is_open:
            return
        self.state = ConnectionState.CLOSED
        await self.stop()
        await self.transport.close(code, reason)

    async def _fail(self, code: int, reason: str) -> None:
        """Close after a delivery fault and report it so the connection is unregistered."""
        if not self.is_open:
            return
        await self.close(code, reason)
        if self.on_failure is not None:
            self.on_failure(self)

    async def stop(self) -> None:
        """Stop the writer and discard whatever is still queued."""
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception(f"Writer for {self.connection_id} ended with an error")
        self._discard_pending()

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await asyncio.wait_for(self.transport.send_json(message), self.send_timeout)
            except Exception as e:
                # Timeouts, dead peers and unencodable frames all end this connection only
                logger.warning(
                    f"Send failed on {self.connection_id}: {type(e).__name__}: {e}",
                    extra={"extra_fields": {"connection_id": self.connection_id, "event": message.get("event")}},
                )
                await self._fail(CLOSE_INTERNAL_ERROR, "Send failed")
                return
            finally:
                self._outbox.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()
