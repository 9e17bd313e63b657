"""
Room Manager：管理 Room 的建立、成員與查詢

職責：
1. 建立 Room（含 Host player）
2. 玩家加入房間（容量 / 狀態 / 重複加入檢查）
3. 成員權限檢查（給其他 engine 共用）
4. 查詢 Room 與玩家

並發：
- 加入前的檢查只是提示性的：(room_id, user_id) 唯一索引擋下重複加入，
  guard_room() 在同一個 transaction 內重新驗證狀態與人數並推進 version，
  與 start_game 的 CAS 互斥
"""
from typing import List, Optional, Tuple
import logging

from models import Room, Player, RoomStatus
from core.store import GameStore, StoreError, StoreErrorKind, transactional
from core.exceptions import (
    RoomNotFound,
    NotRoomMember,
    AlreadyJoined,
    RoomFull,
    RoomNotJoinable,
    InvalidCapacity,
    RoomChangedConcurrently,
)
from core.state_machine import RoomStateMachine
from services.naming_service import resolve_nickname

logger = logging.getLogger(__name__)

ALLOWED_CAPACITIES = frozenset({3, 5, 7, 9})

# 版本號被其他寫入搶先時，重新驗證並重試的次數
MAX_GUARD_ATTEMPTS = 3


class RoomManager:
    """Room 生命週期管理器"""

    @staticmethod
    def load_room(store: GameStore, room_id: str) -> Room:
        """
        取得 Room，不存在時拋出 RoomNotFound

        異常：
            RoomNotFound: Room 不存在
        """
        try:
            return store.require_room(room_id)
        except StoreError as e:
            if e.kind == StoreErrorKind.NOT_FOUND:
                raise RoomNotFound(room_id)
            raise

    @staticmethod
    def ensure_membership(store: GameStore, room_id: str, user_id: str) -> Tuple[Room, bool]:
        """
        確認呼叫者是 Host 或房間成員

        返回：
            (Room, is_host) tuple

        異常：
            RoomNotFound: Room 不存在
            NotRoomMember: 既不是 Host 也不是成員
        """
        room = RoomManager.load_room(store, room_id)
        if room.host_user_id == user_id:
            return room, True

        if store.get_player(room_id, user_id) is None:
            raise NotRoomMember(f"User {user_id} is not a member of room {room_id}")
        return room, False

    @staticmethod
    def guard_room(store: GameStore, room_id: str, expected_status: RoomStatus, recheck) -> Room:
        """
        在呼叫者的 transaction 內推進 room.version，讓同一個房間的寫入依序生效

        寫入（新玩家、新投票）flush 之後呼叫。每次嘗試都重新讀取 Room，
        交給 recheck(room) 用最新狀態重新驗證前置條件，再以 CAS 推進版本；
        CAS 失敗代表有其他寫入剛 commit，重新驗證後再試。

        參數：
            recheck: 前置條件不成立時自行拋出業務異常

        異常：
            recheck 拋出的異常
            RoomChangedConcurrently: 重試 MAX_GUARD_ATTEMPTS 次仍被搶先
        """
        for attempt in range(1, MAX_GUARD_ATTEMPTS + 1):
            room = store.reload_room(room_id)
            if room is None:
                raise RoomNotFound(room_id)
            recheck(room)
            if store.compare_and_swap_room(room_id, expected_status, room.version):
                return room
            logger.info(f"Room {room_id} changed during write (attempt {attempt}), re-checking")

        raise RoomChangedConcurrently(f"Room {room_id} is changing too quickly, please retry")

    @staticmethod
    @transactional
    def create_room(store: GameStore, host_user_id: str, capacity: int, nickname: Optional[str] = None) -> Room:
        """
        建立新房間（含 Host 玩家）

        流程：
        1. 驗證容量
        2. 建立 Room（WAITING）
        3. 建立 Host Player
        4. 記錄事件

        異常：
            InvalidCapacity: 容量不是 3 / 5 / 7 / 9
        """
        # bool 是 int 的子類別，要另外排除
        if isinstance(capacity, bool) or capacity not in ALLOWED_CAPACITIES:
            raise InvalidCapacity(capacity)

        room = store.insert(Room(
            host_user_id=host_user_id,
            capacity=capacity,
            status=RoomStatus.WAITING,
            version=0,
        ))

        store.insert(Player(
            room_id=room.id,
            user_id=host_user_id,
            nickname=resolve_nickname(nickname, 0),
        ))

        store.log_event(room.id, "ROOM_CREATED", {"host_user_id": host_user_id, "capacity": capacity})
        logger.info(f"Created room {room.id} (capacity={capacity}) hosted by {host_user_id}")

        return room

    @staticmethod
    @transactional
    def join_room(store: GameStore, room_id: str, user_id: str, nickname: Optional[str] = None) -> Player:
        """
        玩家加入房間

        前置條件：
        1. Room 必須存在
        2. Room 狀態必須是 WAITING
        3. 玩家數量 < capacity
        4. 尚未加入

        異常：
            RoomNotFound / RoomNotJoinable / RoomFull / AlreadyJoined
            RoomChangedConcurrently: 房間持續被其他寫入搶先
        """
        room = RoomManager.load_room(store, room_id)

        if room.status != RoomStatus.WAITING:
            raise RoomNotJoinable(
                f"Room {room_id} is not accepting players (status: {room.status.value})"
            )

        if store.get_player(room_id, user_id) is not None:
            raise AlreadyJoined(f"User {user_id} already joined room {room_id}")

        player_count = store.count_players(room_id)
        if player_count >= room.capacity:
            raise RoomFull(f"Room {room_id} is full ({player_count}/{room.capacity})")

        try:
            player = store.insert(Player(
                room_id=room_id,
                user_id=user_id,
                nickname=resolve_nickname(nickname, player_count),
            ))
        except StoreError as e:
            # 同時加入的競爭由唯一索引裁決
            if e.kind == StoreErrorKind.UNIQUE_VIOLATION:
                raise AlreadyJoined(f"User {user_id} already joined room {room_id}")
            if e.kind == StoreErrorKind.FOREIGN_KEY_VIOLATION:
                raise RoomNotFound(room_id)
            raise

        def recheck(current: Room) -> None:
            # 檢查之後可能已經有人開始遊戲或搶先加入；count 含這次剛寫入的玩家
            if current.status != RoomStatus.WAITING:
                raise RoomNotJoinable(
                    f"Room {room_id} is not accepting players (status: {current.status.value})"
                )
            joined = store.count_players(room_id)
            if joined > current.capacity:
                raise RoomFull(f"Room {room_id} is full ({joined - 1}/{current.capacity})")

        RoomManager.guard_room(store, room_id, RoomStatus.WAITING, recheck)

        store.log_event(room_id, "PLAYER_JOINED", {"user_id": user_id})
        logger.info(f"User {user_id} ({player.nickname}) joined room {room_id}")

        return player

    @staticmethod
    def get_room(store: GameStore, room_id: str, caller_id: str) -> Room:
        room, _ = RoomManager.ensure_membership(store, room_id, caller_id)
        return room

    @staticmethod
    def get_players(store: GameStore, room_id: str, caller_id: str) -> List[Player]:
        """依加入順序返回房間內所有玩家（含 Host）"""
        RoomManager.ensure_membership(store, room_id, caller_id)
        return store.list_players(room_id)

    @staticmethod
    def list_rooms(
        store: GameStore,
        status: Optional[RoomStatus] = None,
        only_joinable: bool = False
    ) -> List[Tuple[Room, int]]:
        """
        房間列表（大廳用）

        - RESOLVED 的房間不會出現
        - only_joinable：只列出 WAITING 且未滿的房間

        返回：
            (Room, player_count) 列表，最新的在前
        """
        if only_joinable:
            statuses = [RoomStatus.WAITING]
        elif status is not None:
            if RoomStateMachine.is_terminal(status):
                return []
            statuses = [status]
        else:
            statuses = [s for s in RoomStatus if not RoomStateMachine.is_terminal(s)]

        rooms = store.list_rooms(statuses)
        if only_joinable:
            rooms = [(room, count) for room, count in rooms if count < room.capacity]
        return rooms
