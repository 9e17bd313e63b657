"""
Game API Endpoints

重點：
1. 所有業務邏輯集中在 ChapterEngine / LeaderElection
2. 投票 endpoint 在達到 quorum 時會自動結算，Host 也可以手動結算
3. 結算輸給其他請求時回 409 並帶 race: true，前端重新讀取房間狀態即可
"""
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
import logging

from schemas import (
    ChapterResponse,
    ChapterVoteSubmit,
    ChapterVoteResponse,
    ChapterVoteResult,
    ChapterOutcomeResponse,
    ChapterHistoryEntry,
    GameStateResponse,
    LeaderVoteSubmit,
    LeaderVoteResponse,
    RoomResultResponse,
    LeaderboardEntry,
)
from core.store import GameStore
from core.room_manager import RoomManager
from core.chapter_engine import ChapterEngine
from core.leader_election import LeaderElection
from core.exceptions import SurvivalVoteException
from services.history_service import get_chapter_history
from services.notify_service import RoomEventHub, notify_room_list_changed, notify_room_state_changed
from api.deps import get_current_user_id, get_event_hub, get_store, internal_error, to_http_error

router = APIRouter(prefix="/api/rooms", tags=["game"])
logger = logging.getLogger(__name__)


# ============ State ============

@router.get("/{room_id}/game/state", response_model=GameStateResponse)
def get_game_state(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    """房間目前的狀態、章節與投票進度；前端沒有 WebSocket 時用來輪詢"""
    try:
        return GameStateResponse.model_validate(ChapterEngine.get_game_state(store, room_id, user_id))

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get game state", e)


# ============ Chapters ============

@router.get("/{room_id}/chapters", response_model=List[ChapterResponse])
def list_chapters(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        return [ChapterResponse.model_validate(c) for c in ChapterEngine.list_chapters(store, room_id, user_id)]

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("list chapters", e)


@router.get("/{room_id}/chapters/current", response_model=ChapterResponse)
def get_current_chapter(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    """
    取得目前正在投票的章節

    只有 PLAYING 狀態才有 current chapter，其他狀態回 409
    """
    try:
        return ChapterResponse.model_validate(ChapterEngine.get_current_chapter(store, room_id, user_id))

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get current chapter", e)


@router.get("/{room_id}/chapters/history", response_model=List[ChapterHistoryEntry])
def get_history(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    """已結算章節的票數與多數方"""
    try:
        room = RoomManager.get_room(store, room_id, user_id)
        return get_chapter_history(store, room)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get chapter history", e)


@router.get("/{room_id}/chapters/{chapter_id}/votes", response_model=List[ChapterVoteResponse])
def list_chapter_votes(
    room_id: str,
    chapter_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        votes = ChapterEngine.list_chapter_votes(store, room_id, chapter_id, user_id)
        return [ChapterVoteResponse.model_validate(v) for v in votes]

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("list chapter votes", e)


@router.post("/{room_id}/chapters/{chapter_id}/vote", response_model=ChapterVoteResult, status_code=201)
def vote_chapter(
    room_id: str,
    chapter_id: str,
    body: ChapterVoteSubmit,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    提交章節投票

    流程：
    1. 寫入投票（每人每章一次）
    2. 所有玩家都投完時自動結算並推進章節

    返回：
        - vote: 剛寫入的投票
        - status / current_chapter_order: 自動結算之後的房間狀態
    """
    try:
        vote, room = ChapterEngine.vote_chapter(store, room_id, chapter_id, user_id, body.choice)
        background_tasks.add_task(notify_room_state_changed, hub, room_id, room.status.value)

        return ChapterVoteResult(
            vote=ChapterVoteResponse.model_validate(vote),
            status=room.status,
            current_chapter_order=room.current_chapter_order,
        )

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("vote on chapter", e)


@router.post("/{room_id}/chapters/{chapter_id}/resolve", response_model=ChapterOutcomeResponse)
def resolve_chapter(
    room_id: str,
    chapter_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    Host 手動結算目前章節

    - 平手回 409（VoteTied），狀態不變
    - 已被其他請求結算回 409（race: true）
    """
    try:
        outcome = ChapterEngine.resolve_chapter(store, room_id, chapter_id, user_id)
        background_tasks.add_task(notify_room_state_changed, hub, room_id, outcome.status.value)
        return ChapterOutcomeResponse.model_validate(outcome)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("resolve chapter", e)


# ============ Leader ============

@router.post("/{room_id}/leader/vote", response_model=LeaderVoteResponse, status_code=201)
def vote_leader(
    room_id: str,
    body: LeaderVoteSubmit,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    """
    投出領袖票（weight = 投票當下自己的分數）

    所有玩家都投完時自動結算
    """
    try:
        vote = LeaderElection.vote_leader(store, room_id, user_id, body.target_user_id)
        response = LeaderVoteResponse.model_validate(vote)

        room = store.reload_room(room_id)
        background_tasks.add_task(notify_room_state_changed, hub, room_id, room.status.value)
        background_tasks.add_task(notify_room_list_changed, hub)
        return response

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("vote for leader", e)


@router.post("/{room_id}/leader/resolve", response_model=RoomResultResponse)
def resolve_final(
    room_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
    hub: RoomEventHub = Depends(get_event_hub),
):
    try:
        result = LeaderElection.resolve_final(store, room_id, user_id)
        background_tasks.add_task(notify_room_state_changed, hub, room_id, "RESOLVED")
        background_tasks.add_task(notify_room_list_changed, hub)
        return RoomResultResponse.model_validate(result)

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("resolve leader vote", e)


@router.get("/{room_id}/result", response_model=RoomResultResponse)
def get_final_result(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        return RoomResultResponse.model_validate(LeaderElection.get_final_result(store, room_id, user_id))

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get final result", e)


@router.get("/{room_id}/leaderboard", response_model=List[LeaderboardEntry])
def get_leaderboard(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    store: GameStore = Depends(get_store),
):
    try:
        return [LeaderboardEntry.model_validate(p) for p in LeaderElection.get_leaderboard(store, room_id, user_id)]

    except SurvivalVoteException as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("get leaderboard", e)
