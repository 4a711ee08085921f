import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from shiptrack.core_settings import Settings
from shiptrack.domain.models import ShipmentRecord, ShipmentStatus
from shiptrack.realtime.auth import ConnectionAuthenticator, Identity, Role
from shiptrack.realtime.connection import ConnectionClosed, Transport
from shiptrack.realtime.manager import ChannelManager

TEST_SECRET = "test-secret"
FIXED_NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeTransport(Transport):
    """In-memory transport: inbound frames are fed by the test, outbound ones recorded."""

    def __init__(self):
        self.accepted = False
        self.closed_code: Optional[int] = None
        self.sent: List[Dict[str, Any]] = []
        self._inbound: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    def feed(self, event: str, data: Optional[dict] = None) -> None:
        self._inbound.put_nowait(json.dumps({"event": event, "data": data or {}}))

    def feed_raw(self, text: str) -> None:
        self._inbound.put_nowait(text)

    def hang_up(self) -> None:
        self._inbound.put_nowait(None)

    async def accept(self) -> None:
        self.accepted = True

    async def receive_text(self) -> str:
        text = await self._inbound.get()
        if text is None:
            raise ConnectionClosed(1006)
        return text

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.closed_code is not None:
            raise ConnectionClosed(self.closed_code)
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_code = code

    def events(self) -> List[str]:
        return [m["event"] for m in self.sent]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.sent if m["event"] == event]


def make_identity(connection_id: str, user_id: Optional[str] = "user-1", role: Role = Role.USER) -> Identity:
    return Identity(connection_id=connection_id, user_id=user_id, role=role)


@pytest.fixture
def settings():
    return Settings(
        REPOSITORY_BACKEND="memory",
        JWT_SECRET=TEST_SECRET,
        LOG_LEVEL="WARNING",
        AUTH_TIMEOUT_SECONDS=2.0,
        SEND_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def authenticator():
    return ConnectionAuthenticator(secret=TEST_SECRET, timeout=2.0)


@pytest.fixture
def manager(authenticator):
    return ChannelManager(authenticator, send_timeout=2.0, outbox_size=64)


@pytest.fixture
def make_record():
    def _make(**overrides) -> ShipmentRecord:
        fields = {
            "id": "shp-1",
            "order_ref": "PO-1001",
            "supplier": "Acme Textiles",
            "quantity": 100,
            "status": ShipmentStatus.ARRIVED_PTA,
            "created_at": FIXED_NOW,
        }
        fields.update(overrides)
        return ShipmentRecord(**fields)

    return _make
