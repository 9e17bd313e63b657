"""
通知服務：狀態變更後通知訂閱中的 WebSocket client

Best-effort：
- 通知在 response 之後才送出（FastAPI BackgroundTasks）
- 任何送出失敗只記 warning 並移除該連線，不會影響已 commit 的遊戲狀態
"""
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

LOBBY_CHANNEL = "lobby"

ROOM_LIST_UPDATED = "room:list:updated"
ROOM_PLAYERS_UPDATED = "room:players:updated"
ROOM_STATE_UPDATED = "room:state:updated"


def room_channel(room_id: str) -> str:
    return f"room:{room_id}"


class RoomEventHub:
    """依 channel 管理 WebSocket 連線"""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        logger.info(f"WebSocket subscribed to {channel}")

    def disconnect(self, websocket: WebSocket, channel: str) -> None:
        connections = self.active_connections.get(channel)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        # 沒有連線的 channel 直接移除
        if not connections:
            del self.active_connections[channel]

    async def publish(self, channel: str, event: str, payload: Optional[dict] = None) -> int:
        """
        送出事件給 channel 內所有連線

        返回：
            成功送達的連線數
        """
        message = {"event": event, **(payload or {})}
        delivered = 0
        for connection in list(self.active_connections.get(channel, [])):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Broadcast of {event} to {channel} failed: {e}")
                self.disconnect(connection, channel)
        return delivered


async def notify_room_list_changed(hub: RoomEventHub) -> None:
    try:
        await hub.publish(LOBBY_CHANNEL, ROOM_LIST_UPDATED)
    except Exception as e:
        logger.warning(f"Room list notification dropped: {e}")


async def notify_players_changed(hub: RoomEventHub, room_id: str) -> None:
    try:
        await hub.publish(room_channel(room_id), ROOM_PLAYERS_UPDATED, {"room_id": room_id})
    except Exception as e:
        logger.warning(f"Players notification for room {room_id} dropped: {e}")


async def notify_room_state_changed(hub: RoomEventHub, room_id: str, status: str) -> None:
    try:
        await hub.publish(room_channel(room_id), ROOM_STATE_UPDATED, {"room_id": room_id, "status": status})
    except Exception as e:
        logger.warning(f"State notification for room {room_id} dropped: {e}")
