"""
Store 抽象層

所有元件都透過 GameStore 讀寫資料，GameStore 由呼叫者（API 層或測試）
明確建立並傳入，生命週期跟著 request 走，沒有全域 client。

並發控制不使用 in-process lock，而是依賴資料庫的原子操作：
1. 重複提交：由唯一索引擋下，違反時回傳 StoreErrorKind.UNIQUE_VIOLATION
2. 重複結算：compare_and_swap_room() 只在 (status, version) 仍等於讀取時的值才會更新，
   否則影響 0 列，呼叫者視為「已經被別人處理」
"""
import enum
import logging
from functools import wraps
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import SurvivalVoteException
from models import (
    Chapter,
    ChapterVote,
    EventLog,
    LeaderVote,
    Player,
    Room,
    RoomResult,
    RoomStatus,
)

logger = logging.getLogger(__name__)


class StoreErrorKind(enum.Enum):
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    NOT_FOUND = "not_found"
    OTHER = "other"


class StoreError(Exception):
    """Store 層錯誤，只暴露封閉的 kind 集合，engine 依 kind 判斷"""
    def __init__(self, kind: StoreErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


# PostgreSQL SQLSTATE 與 SQLite 錯誤訊息，只在這裡解析
_UNIQUE_SQLSTATE = "23505"
_FOREIGN_KEY_SQLSTATE = "23503"


def _classify(exc: IntegrityError) -> StoreErrorKind:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == _UNIQUE_SQLSTATE:
        return StoreErrorKind.UNIQUE_VIOLATION
    if sqlstate == _FOREIGN_KEY_SQLSTATE:
        return StoreErrorKind.FOREIGN_KEY_VIOLATION

    message = str(orig)
    if "UNIQUE constraint failed" in message:
        return StoreErrorKind.UNIQUE_VIOLATION
    if "FOREIGN KEY constraint failed" in message:
        return StoreErrorKind.FOREIGN_KEY_VIOLATION
    return StoreErrorKind.OTHER


class GameStore:
    """包住一個 SQLAlchemy Session 的窄介面"""

    def __init__(self, session: Session):
        self.session = session

    # ============ Transaction ============

    def commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise StoreError(_classify(e), str(e.orig)) from e

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)

    def close(self) -> None:
        self.session.close()

    # ============ Write ============

    def insert(self, obj):
        """
        新增一筆資料並立即 flush，讓唯一索引在這裡就生效

        異常：
            StoreError: 違反唯一索引 / 外鍵
        """
        self.session.add(obj)
        try:
            self.session.flush()
        except IntegrityError as e:
            kind = _classify(e)
            logger.info(f"Insert of {type(obj).__name__} rejected by store: {kind.value}")
            raise StoreError(kind, str(e.orig)) from e
        return obj

    def insert_all(self, objs: Iterable) -> None:
        self.session.add_all(list(objs))
        try:
            self.session.flush()
        except IntegrityError as e:
            raise StoreError(_classify(e), str(e.orig)) from e

    def log_event(self, room_id: str, event_type: str, data: Optional[dict] = None) -> None:
        self.session.add(EventLog(room_id=room_id, event_type=event_type, data=data or {}))

    def compare_and_swap_room(
        self,
        room_id: str,
        expected_status: RoomStatus,
        expected_version: int,
        **values
    ) -> bool:
        """
        Versioned update：只有在 status 與 version 都等於預期值時才更新

        成功時 version 自動 +1；不帶 values 時只推進 version，
        用來讓同一個房間的寫入（加入、投票、結算）依序生效。

        返回：
            True 表示剛好更新 1 列；False 表示已經被其他請求推進（0 列）
        """
        updated = self.session.query(Room).filter(
            Room.id == room_id,
            Room.status == expected_status,
            Room.version == expected_version,
        ).update(
            {Room.version: Room.version + 1, **{getattr(Room, k): v for k, v in values.items()}},
            synchronize_session=False,
        )
        # 不論成功與否，identity map 中的 Room 都可能已經過期
        self._expire_cached(lambda obj: isinstance(obj, Room) and obj.id == room_id)
        return updated == 1

    def add_to_scores(self, room_id: str, user_ids: List[str], amount: float) -> int:
        """以單一 UPDATE 對多位玩家加分，返回實際更新的列數"""
        if not user_ids:
            return 0
        updated = self.session.query(Player).filter(
            Player.room_id == room_id,
            Player.user_id.in_(user_ids),
        ).update({Player.score: Player.score + amount}, synchronize_session=False)
        targets = set(user_ids)
        self._expire_cached(
            lambda obj: isinstance(obj, Player) and obj.room_id == room_id and obj.user_id in targets
        )
        return updated

    def _expire_cached(self, predicate) -> None:
        for obj in list(self.session.identity_map.values()):
            if predicate(obj):
                self.session.expire(obj)

    # ============ Read ============

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.session.query(Room).filter(Room.id == room_id).first()

    def require_room(self, room_id: str) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, f"Room {room_id} not found")
        return room

    def reload_room(self, room_id: str) -> Optional[Room]:
        """丟掉 identity map 的快取，重新從資料庫讀取 Room"""
        room = self.get_room(room_id)
        if room is not None:
            self.session.refresh(room)
        return room

    def list_rooms(self, statuses: Optional[List[RoomStatus]] = None) -> List[tuple]:
        """返回 (Room, player_count) 列表，最新建立的在前"""
        counts = self.session.query(
            Player.room_id,
            func.count(Player.id).label("player_count"),
        ).group_by(Player.room_id).subquery()

        query = self.session.query(Room, func.coalesce(counts.c.player_count, 0)).outerjoin(
            counts, counts.c.room_id == Room.id
        )
        if statuses:
            query = query.filter(Room.status.in_(statuses))
        return [(room, count) for room, count in query.order_by(Room.created_at.desc()).all()]

    def get_player(self, room_id: str, user_id: str) -> Optional[Player]:
        return self.session.query(Player).filter(
            Player.room_id == room_id,
            Player.user_id == user_id,
        ).first()

    def list_players(self, room_id: str) -> List[Player]:
        return self.session.query(Player).filter(
            Player.room_id == room_id
        ).order_by(Player.joined_at, Player.id).all()

    def count_players(self, room_id: str) -> int:
        return self.session.query(Player).filter(Player.room_id == room_id).count()

    def get_chapter(self, room_id: str, chapter_id: str) -> Optional[Chapter]:
        return self.session.query(Chapter).filter(
            Chapter.room_id == room_id,
            Chapter.id == chapter_id,
        ).first()

    def get_chapter_by_order(self, room_id: str, order: int) -> Optional[Chapter]:
        return self.session.query(Chapter).filter(
            Chapter.room_id == room_id,
            Chapter.order == order,
        ).first()

    def list_chapters(self, room_id: str) -> List[Chapter]:
        return self.session.query(Chapter).filter(Chapter.room_id == room_id).order_by(Chapter.order).all()

    def count_chapters(self, room_id: str) -> int:
        return self.session.query(Chapter).filter(Chapter.room_id == room_id).count()

    def list_chapter_votes(self, room_id: str, chapter_id: Optional[str] = None) -> List[ChapterVote]:
        query = self.session.query(ChapterVote).filter(ChapterVote.room_id == room_id)
        if chapter_id is not None:
            query = query.filter(ChapterVote.chapter_id == chapter_id)
        return query.order_by(ChapterVote.id).all()

    def count_chapter_votes(self, room_id: str, chapter_id: str) -> int:
        return self.session.query(ChapterVote).filter(
            ChapterVote.room_id == room_id,
            ChapterVote.chapter_id == chapter_id,
        ).count()

    def list_leader_votes(self, room_id: str) -> List[LeaderVote]:
        return self.session.query(LeaderVote).filter(
            LeaderVote.room_id == room_id
        ).order_by(LeaderVote.id).all()

    def count_leader_votes(self, room_id: str) -> int:
        return self.session.query(LeaderVote).filter(LeaderVote.room_id == room_id).count()

    def get_result(self, room_id: str) -> Optional[RoomResult]:
        return self.session.query(RoomResult).filter(RoomResult.room_id == room_id).first()

    def list_events(self, room_id: str, event_type: Optional[str] = None) -> List[EventLog]:
        query = self.session.query(EventLog).filter(EventLog.room_id == room_id)
        if event_type is not None:
            query = query.filter(EventLog.event_type == event_type)
        return query.order_by(EventLog.id).all()


def transactional(func):
    """
    Transaction decorator：確保 store 操作的原子性

    使用方式：
        @transactional
        def some_business_logic(store: GameStore, ...):
            # 所有 DB 操作都在一個 transaction 內
            store.insert(Room(...))
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 第一個參數必須是 store: GameStore
        - 不要在函式內手動 commit（decorator 會處理）
        - 業務異常（SurvivalVoteException）只記 info，其他異常記 error
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        store = None
        if args and isinstance(args[0], GameStore):
            store = args[0]
        elif 'store' in kwargs:
            store = kwargs['store']

        if store is None:
            raise ValueError(
                f"@transactional requires 'store: GameStore' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            store.commit()
            return result
        except SurvivalVoteException as e:
            logger.info(f"Transaction aborted in {func.__name__}: {type(e).__name__}: {e}")
            store.rollback()
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            store.rollback()
            raise

    return wrapper
