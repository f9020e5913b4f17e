from typing import Optional

from fastapi import APIRouter, Query, WebSocket

from rewrite_proxy.relay.signaling import WebRTCSignaling
from rewrite_proxy.relay.websocket_relay import WebSocketRelay
from rewrite_proxy.vars import WS_RELAY_PATH

router = APIRouter()

relay = WebSocketRelay()
signaling = WebRTCSignaling()


@router.websocket(WS_RELAY_PATH)
async def relay_socket(websocket: WebSocket):
    await relay.handle(websocket)


@router.websocket("/proxy")
async def proxied_socket(websocket: WebSocket, url: Optional[str] = Query(None)):
    await relay.handle(websocket, target_url=url)
