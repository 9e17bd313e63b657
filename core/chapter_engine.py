"""
Chapter Engine：章節投票循環

狀態流程：
    WAITING --start--> PLAYING(chapter=1) --resolve x N--> PLAYING(chapter=N) --resolve--> FINAL_VOTE

結算（resolve）的兩個觸發點共用同一套邏輯：
- 投票數達到玩家數（quorum）時由 engine 自動觸發
- Host 手動觸發

並發安全：
- 重複投票由 (room_id, chapter_id, user_id) 唯一索引擋下
- 每張票在同一個 transaction 內經過 RoomManager.guard_room() 推進 version，
  章節已被結算時整張票 rollback
- 結算以 compare_and_swap_room() 保護：只有 version 仍等於讀取時的值才會推進，
  加分與推進在同一個 transaction 內，所以獎勵最多只會發一次；
  讀取之後才 commit 的票會讓結算失敗（RoomChangedConcurrently），不會被漏算
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

from models import Chapter, ChapterVote, Choice, Room, RoomStatus
from core.store import GameStore, StoreError, StoreErrorKind, transactional
from core.room_manager import RoomManager
from core.score_ledger import ScoreLedger
from core.state_machine import RoomStateMachine
from core.exceptions import (
    AlreadyVoted,
    ChapterNotActive,
    ChapterNotFound,
    GameAlreadyStarted,
    GameNotStarted,
    InvalidChoice,
    InvalidPlayerCount,
    NoActiveChapter,
    NotHost,
    NotRoomMember,
    NoVotes,
    ResolutionAlreadyApplied,
    RoomChangedConcurrently,
    VoteTied,
)
from database import get_settings
from services.chapter_catalog import build_chapters, next_chapter_order
from services.tally_service import MajorityTally, tally_majority

logger = logging.getLogger(__name__)

MIN_PLAYERS = 3


@dataclass
class ChapterResolution:
    """prepare_resolution() 讀到的快照，apply_resolution() 依此做 CAS"""
    room_id: str
    chapter_id: str
    chapter_order: int
    expected_version: int
    tally: MajorityTally
    next_order: Optional[int]
    reward: float

    @property
    def next_status(self) -> RoomStatus:
        return RoomStatus.FINAL_VOTE if self.next_order is None else RoomStatus.PLAYING


@dataclass
class ChapterOutcome:
    room_id: str
    chapter_id: str
    order: int
    majority: Choice
    count_a: int
    count_b: int
    reward: float
    status: RoomStatus
    current_chapter_order: Optional[int]
    rewarded_user_ids: List[str] = field(default_factory=list)


@dataclass
class GameState:
    room_id: str
    status: RoomStatus
    current_chapter_order: Optional[int]
    version: int
    player_count: int
    votes_cast: int


def parse_choice(choice) -> Choice:
    try:
        return Choice(choice)
    except ValueError:
        raise InvalidChoice(choice)


class ChapterEngine:
    """章節投票與結算"""

    @staticmethod
    @transactional
    def start_game(store: GameStore, room_id: str, caller_id: str) -> Room:
        """
        開始遊戲（WAITING -> PLAYING, chapter=1）

        前置條件：
        1. 呼叫者是 Host
        2. Room 狀態是 WAITING
        3. 玩家數量為奇數且 >= 3（含 Host）

        流程：
        1. 驗證前置條件
        2. 建立章節目錄（已存在就跳過）
        3. CAS 轉換狀態

        異常：
            RoomNotFound / NotHost / GameAlreadyStarted / InvalidPlayerCount
            RoomChangedConcurrently: 驗證人數之後又有玩家加入
        """
        room = RoomManager.load_room(store, room_id)
        if room.host_user_id != caller_id:
            raise NotHost("Only the host can start the game")
        if room.status != RoomStatus.WAITING:
            raise GameAlreadyStarted(f"Room {room_id} already started (status: {room.status.value})")

        player_count = store.count_players(room_id)
        if player_count < MIN_PLAYERS or player_count % 2 == 0:
            raise InvalidPlayerCount(
                f"Room must have an odd number of players (>= {MIN_PLAYERS}), got {player_count}"
            )

        expected_version = room.version
        if store.count_chapters(room_id) == 0:
            try:
                store.insert_all(build_chapters(room_id))
            except StoreError as e:
                # 另一個 start 請求已經建立了目錄
                if e.kind == StoreErrorKind.UNIQUE_VIOLATION:
                    raise GameAlreadyStarted(f"Room {room_id} already started")
                raise

        RoomStateMachine.validate(RoomStatus.WAITING, RoomStatus.PLAYING)
        swapped = store.compare_and_swap_room(
            room_id,
            RoomStatus.WAITING,
            expected_version,
            status=RoomStatus.PLAYING,
            current_chapter_order=1,
        )
        if not swapped:
            current = store.reload_room(room_id)
            if current.status != RoomStatus.WAITING:
                raise GameAlreadyStarted(f"Room {room_id} already started")
            # 還在 WAITING：計算人數之後有玩家加入，人數需要重新驗證
            raise RoomChangedConcurrently(f"Players joined room {room_id} while starting, start again")

        store.log_event(room_id, "GAME_STARTED", {"player_count": player_count})
        logger.info(f"Started game for room {room_id} with {player_count} players")

        return room

    @staticmethod
    def get_current_chapter(store: GameStore, room_id: str, caller_id: str) -> Chapter:
        room, _ = RoomManager.ensure_membership(store, room_id, caller_id)
        if room.status == RoomStatus.WAITING:
            raise GameNotStarted(f"Room {room_id} has not started yet")
        if room.status != RoomStatus.PLAYING or room.current_chapter_order is None:
            raise NoActiveChapter(f"Room {room_id} has no active chapter (status: {room.status.value})")

        chapter = store.get_chapter_by_order(room_id, room.current_chapter_order)
        if chapter is None:
            raise ChapterNotFound(f"order {room.current_chapter_order}")
        return chapter

    @staticmethod
    def get_game_state(store: GameStore, room_id: str, caller_id: str) -> GameState:
        """
        目前的遊戲進度（給前端輪詢用）

        votes_cast：PLAYING 時是目前章節的票數，FINAL_VOTE 時是領袖票數，其他狀態為 0
        """
        room, _ = RoomManager.ensure_membership(store, room_id, caller_id)

        votes_cast = 0
        if room.status == RoomStatus.PLAYING and room.current_chapter_order is not None:
            chapter = store.get_chapter_by_order(room_id, room.current_chapter_order)
            if chapter is not None:
                votes_cast = store.count_chapter_votes(room_id, chapter.id)
        elif room.status == RoomStatus.FINAL_VOTE:
            votes_cast = store.count_leader_votes(room_id)

        return GameState(
            room_id=room.id,
            status=room.status,
            current_chapter_order=room.current_chapter_order,
            version=room.version,
            player_count=store.count_players(room_id),
            votes_cast=votes_cast,
        )

    @staticmethod
    def list_chapters(store: GameStore, room_id: str, caller_id: str) -> List[Chapter]:
        RoomManager.ensure_membership(store, room_id, caller_id)
        return store.list_chapters(room_id)

    @staticmethod
    def list_chapter_votes(store: GameStore, room_id: str, chapter_id: str, caller_id: str) -> List[ChapterVote]:
        RoomManager.ensure_membership(store, room_id, caller_id)
        if store.get_chapter(room_id, chapter_id) is None:
            raise ChapterNotFound(chapter_id)
        return store.list_chapter_votes(room_id, chapter_id)

    # ============ 投票 ============

    @staticmethod
    def vote_chapter(store: GameStore, room_id: str, chapter_id: str, user_id: str, choice) -> Tuple[ChapterVote, Room]:
        """
        提交章節投票

        流程：
        1. 寫入投票（獨立 transaction）
        2. commit 之後重新計算票數；達到玩家數就自動結算
        3. 自動結算輸給其他請求時不視為錯誤（已經有人結算了）

        返回：
            (ChapterVote, 結算後的 Room)

        異常：
            InvalidChoice / RoomNotFound / GameNotStarted / ChapterNotActive /
            NotRoomMember / ChapterNotFound / AlreadyVoted
            RoomChangedConcurrently: 房間持續被其他寫入搶先
        """
        vote = ChapterEngine._cast_vote(store, room_id, chapter_id, user_id, parse_choice(choice))

        # commit 之後才數票：最後一個 commit 的投票者一定看得到所有票
        vote_count = store.count_chapter_votes(room_id, chapter_id)
        player_count = store.count_players(room_id)
        if vote_count >= player_count:
            logger.info(f"Quorum reached for chapter {chapter_id} in room {room_id} ({vote_count}/{player_count})")
            try:
                ChapterEngine._resolve_on_quorum(store, room_id, chapter_id)
            except (ResolutionAlreadyApplied, RoomChangedConcurrently, ChapterNotActive) as e:
                logger.info(f"Chapter {chapter_id} in room {room_id} already resolved elsewhere: {e}")
            except VoteTied as e:
                logger.warning(f"Chapter {chapter_id} in room {room_id} is tied after all votes: {e}")

        room = store.reload_room(room_id)
        return vote, room

    @staticmethod
    @transactional
    def _cast_vote(store: GameStore, room_id: str, chapter_id: str, user_id: str, choice: Choice) -> ChapterVote:
        room = RoomManager.load_room(store, room_id)
        if room.status == RoomStatus.WAITING:
            raise GameNotStarted(f"Room {room_id} has not started yet")
        if room.status != RoomStatus.PLAYING:
            raise ChapterNotActive(f"Room {room_id} is not in chapter voting (status: {room.status.value})")

        if store.get_player(room_id, user_id) is None:
            raise NotRoomMember(f"User {user_id} is not a player of room {room_id}")

        chapter = store.get_chapter(room_id, chapter_id)
        if chapter is None:
            raise ChapterNotFound(chapter_id)
        if chapter.order != room.current_chapter_order:
            raise ChapterNotActive(
                f"Chapter {chapter.order} is not active (current: {room.current_chapter_order})"
            )

        try:
            vote = store.insert(ChapterVote(
                room_id=room_id,
                chapter_id=chapter_id,
                user_id=user_id,
                choice=choice,
            ))
        except StoreError as e:
            if e.kind == StoreErrorKind.UNIQUE_VIOLATION:
                raise AlreadyVoted(f"User {user_id} already voted on chapter {chapter.order}")
            raise

        order = chapter.order

        def recheck(current: Room) -> None:
            # 檢查之後章節可能已經被結算；這張票不能落在已結算的章節上
            if current.status != RoomStatus.PLAYING or current.current_chapter_order != order:
                raise ChapterNotActive(
                    f"Chapter {order} was resolved while voting (current: {current.current_chapter_order})"
                )

        RoomManager.guard_room(store, room_id, RoomStatus.PLAYING, recheck)

        logger.info(f"User {user_id} voted {choice.value} on chapter {chapter.order} in room {room_id}")
        return vote

    # ============ 結算 ============

    @staticmethod
    def prepare_resolution(
        store: GameStore,
        room_id: str,
        chapter_id: str,
        caller_id: Optional[str]
    ) -> ChapterResolution:
        """
        讀取並計算結算計畫，不寫入任何資料

        參數：
            caller_id: 手動結算的呼叫者（必須是 Host）；None 表示 quorum 自動觸發

        異常：
            RoomNotFound / NotRoomMember / NotHost / ChapterNotActive /
            ChapterNotFound / NoVotes / VoteTied
        """
        if caller_id is None:
            room = RoomManager.load_room(store, room_id)
        else:
            room, is_host = RoomManager.ensure_membership(store, room_id, caller_id)
            if not is_host:
                raise NotHost("Only the host can resolve a chapter")

        if room.status != RoomStatus.PLAYING:
            raise ChapterNotActive(f"Room {room_id} is not in chapter voting (status: {room.status.value})")

        chapter = store.get_chapter(room_id, chapter_id)
        if chapter is None:
            raise ChapterNotFound(chapter_id)
        if chapter.order != room.current_chapter_order:
            raise ChapterNotActive(
                f"Chapter {chapter.order} is not active (current: {room.current_chapter_order})"
            )

        votes = store.list_chapter_votes(room_id, chapter_id)
        if not votes:
            raise NoVotes(f"No votes to resolve for chapter {chapter.order}")

        tally = tally_majority(votes)
        if tally.tied:
            raise VoteTied(tally.count_a, tally.count_b)

        return ChapterResolution(
            room_id=room_id,
            chapter_id=chapter_id,
            chapter_order=chapter.order,
            expected_version=room.version,
            tally=tally,
            next_order=next_chapter_order(chapter.order),
            reward=get_settings().chapter_reward,
        )

    @staticmethod
    def resolve_chapter(store: GameStore, room_id: str, chapter_id: str, caller_id: str) -> ChapterOutcome:
        """
        Host 手動結算目前章節

        平手時拋出 VoteTied，不改變任何狀態。

        異常：
            同 prepare_resolution()，另外：
            ResolutionAlreadyApplied: 別的請求已經結算了這個章節
            RoomChangedConcurrently: 讀取之後又有新的投票，重新結算即可
        """
        plan = ChapterEngine.prepare_resolution(store, room_id, chapter_id, caller_id)
        return ChapterEngine.apply_resolution(store, plan)

    @staticmethod
    def _resolve_on_quorum(store: GameStore, room_id: str, chapter_id: str) -> ChapterOutcome:
        plan = ChapterEngine.prepare_resolution(store, room_id, chapter_id, None)
        return ChapterEngine.apply_resolution(store, plan)

    @staticmethod
    @transactional
    def apply_resolution(store: GameStore, plan: ChapterResolution) -> ChapterOutcome:
        """
        以 CAS 提交 prepare_resolution() 的結果

        CAS 與加分在同一個 transaction：全部加分 + 推進，或全部不做。
        """
        RoomStateMachine.validate(RoomStatus.PLAYING, plan.next_status)

        swapped = store.compare_and_swap_room(
            plan.room_id,
            RoomStatus.PLAYING,
            plan.expected_version,
            status=plan.next_status,
            current_chapter_order=plan.next_order,
        )
        if not swapped:
            room = store.reload_room(plan.room_id)
            if room.status == RoomStatus.PLAYING and room.current_chapter_order == plan.chapter_order:
                # 章節還在，只是讀取之後有新的投票 commit
                raise RoomChangedConcurrently(
                    f"New votes arrived for chapter {plan.chapter_order} of room {plan.room_id}, resolve again"
                )
            logger.warning(
                f"Chapter {plan.chapter_order} of room {plan.room_id} was already resolved by another request"
            )
            raise ResolutionAlreadyApplied(
                f"Chapter {plan.chapter_order} of room {plan.room_id} was already resolved"
            )

        ScoreLedger.increment(store, plan.room_id, plan.tally.winners, plan.reward)

        store.log_event(plan.room_id, "CHAPTER_RESOLVED", {
            "chapter_id": plan.chapter_id,
            "order": plan.chapter_order,
            "majority": plan.tally.majority.value,
            "count_a": plan.tally.count_a,
            "count_b": plan.tally.count_b,
            "rewarded_user_ids": plan.tally.winners,
        })
        logger.info(
            f"Resolved chapter {plan.chapter_order} of room {plan.room_id}: "
            f"{plan.tally.majority.value} ({plan.tally.count_a}:{plan.tally.count_b}), "
            f"next={plan.next_order if plan.next_order is not None else plan.next_status.value}"
        )

        return ChapterOutcome(
            room_id=plan.room_id,
            chapter_id=plan.chapter_id,
            order=plan.chapter_order,
            majority=plan.tally.majority,
            count_a=plan.tally.count_a,
            count_b=plan.tally.count_b,
            reward=plan.reward,
            status=plan.next_status,
            current_chapter_order=plan.next_order,
            rewarded_user_ids=list(plan.tally.winners),
        )
