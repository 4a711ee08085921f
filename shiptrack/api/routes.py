from fastapi import APIRouter, WebSocket

from shiptrack.realtime.auth import extract_credential
from shiptrack.realtime.connection import WebSocketTransport
from shiptrack.realtime.manager import ChannelManager

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/shipments")
async def shipment_channel(websocket: WebSocket):
    """Live shipment updates. Pass ``?token=`` or a bearer header to identify; omit for guest access."""
    manager: ChannelManager = websocket.app.state.channel_manager
    credential = extract_credential(websocket.headers, websocket.query_params)
    await manager.serve(WebSocketTransport(websocket), credential)
