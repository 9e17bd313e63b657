"""
Room API Endpoints

職責：
1. 建立房間 / 房間列表
2. 玩家加入房間
3. 查詢房間與玩家
4. 開始遊戲
"""
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
import logging

from models import RoomStatus
from schemas import (
    RoomCreate,
    RoomJoin,
    RoomResponse,
    RoomSummary,
    PlayerResponse,
    RoomPlayerResponse,
)
from core.store import GameStore
from core.room_manager import RoomManager
from core.chapter_engine import ChapterEngine
from core.exceptions import SurvivalVoteException
from services.notify_service import (
    RoomEventHub,
    notify_players_changed,
    notify_room_list_changed,
    notify_room_state_changed,
)
from api.deps import get_current_user_id, get_event_hub, get_store, internal_error, to_http_error

router = APIRouter(prefix="/api/rooms", tags=["rooms"])
logger = logging.getLogger(__name__)


@router.post("", response_model=RoomResponse, status_code=201)
def create_room(
    body: RoomCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    建立房間（呼叫者成為 Host 並自動加入）
    """
    try:
        room = RoomManager.create_room(store, user_id, body.capacity, body.nickname)
        background_tasks.add_task(notify_room_list_changed, hub)
        return RoomResponse.model_validate(room)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("create room", e)


@router.get("", response_model=List[RoomSummary])
def list_rooms(
    status: Optional[RoomStatus] = None,
    only_joinable: bool = False,
    store: GameStore = Depends(get_store),
):
    """
    房間列表（不含已結算的房間）

    參數：
        status: 只列出某個狀態
        only_joinable: 只列出 WAITING 且未滿的房間
    """
    try:
        rooms = RoomManager.list_rooms(store, status=status, only_joinable=only_joinable)
        return [
            RoomSummary(
                id=room.id,
                status=room.status,
                capacity=room.capacity,
                current_players=count,
                created_at=room.created_at,
            )
            for room, count in rooms
        ]

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("list rooms", e)


@router.post("/{room_id}/join", response_model=PlayerResponse, status_code=201)
def join_room(
    room_id: str,
    body: RoomJoin,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    加入房間

    前置條件：
    - 房間必須存在
    - 房間狀態必須是 WAITING（尚未開始遊戲）
    - 房間未滿，且尚未加入
    """
    try:
        player = RoomManager.join_room(store, room_id, user_id, body.nickname)
        background_tasks.add_task(notify_room_list_changed, hub)
        background_tasks.add_task(notify_players_changed, hub, room_id)
        return PlayerResponse.model_validate(player)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("join room", e)


@router.get("/{room_id}", response_model=RoomResponse)
def get_room(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        return RoomResponse.model_validate(RoomManager.get_room(store, room_id, user_id))

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get room", e)


@router.get("/{room_id}/players", response_model=List[RoomPlayerResponse])
def get_players(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        room = RoomManager.get_room(store, room_id, user_id)
        players = RoomManager.get_players(store, room_id, user_id)
        return [
            RoomPlayerResponse(
                room_id=p.room_id,
                user_id=p.user_id,
                nickname=p.nickname,
                score=p.score,
                joined_at=p.joined_at,
                is_host=p.user_id == room.host_user_id,
            )
            for p in players
        ]

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get players", e)


@router.post("/{room_id}/start", response_model=RoomResponse)
def start_game(
    room_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    開始遊戲（只有 Host 可以）

    流程：
    1. 驗證玩家數量（奇數且 >= 3）
    2. 建立章節目錄
    3. WAITING -> PLAYING，current_chapter_order = 1
    """
    try:
        room = ChapterEngine.start_game(store, room_id, user_id)
        background_tasks.add_task(notify_room_list_changed, hub)
        background_tasks.add_task(notify_room_state_changed, hub, room_id, room.status.value)
        return RoomResponse.model_validate(room)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("start game", e)
