"""
WebSocket Endpoint

只負責訂閱：client 連上之後只會收到事件通知（room:list:updated、
room:players:updated、room:state:updated），實際狀態仍透過 HTTP 讀取。

- 不帶 room_id：訂閱大廳（房間列表變動）
- 帶 room_id：訂閱該房間的玩家 / 狀態變動
"""
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

from services.notify_service import LOBBY_CHANNEL, room_channel

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def subscribe(websocket: WebSocket, room_id: Optional[str] = None):
    hub = websocket.app.state.event_hub
    channel = room_channel(room_id) if room_id else LOBBY_CHANNEL

    await hub.connect(websocket, channel)
    try:
        while True:
            # client 傳來的訊息只用來保持連線
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket left {channel}")
    finally:
        hub.disconnect(websocket, channel)
