"""
Leader Election：最終的加權領袖投票

- 每位玩家投給房間內的一位玩家（可以投自己）
- 票的 weight 是投票當下投票者的分數，寫入後不再變動
- 加權總和最高者當選；最高分並列時拋出 LeaderVoteTied，不改變任何狀態
- 結算時同時計算 MVP（分數最高的玩家，同分取先加入者）

並發安全與章節結算相同：FINAL_VOTE -> RESOLVED 以 CAS 保護，
RoomResult 的 room_id 唯一索引再多擋一層，確保最多只結算一次；
每張領袖票也經過 RoomManager.guard_room()，結算之後才 commit 的票會整張 rollback。
"""
from datetime import datetime, timezone
from typing import List
import logging

from models import LeaderVote, Player, RoomResult, RoomStatus
from core.store import GameStore, StoreError, StoreErrorKind, transactional
from core.room_manager import RoomManager
from core.score_ledger import ScoreLedger
from core.state_machine import RoomStateMachine
from core.exceptions import (
    AlreadyVoted,
    FinalVoteNotStarted,
    GameNotFinished,
    InvalidLeaderTarget,
    LeaderVoteTied,
    NotHost,
    NotRoomMember,
    NoVotes,
    ResolutionAlreadyApplied,
    RoomChangedConcurrently,
)
from services.tally_service import pick_mvp, tally_weighted

logger = logging.getLogger(__name__)


class LeaderElection:
    """領袖投票與最終結算"""

    @staticmethod
    def vote_leader(store: GameStore, room_id: str, voter_user_id: str, target_user_id: str) -> LeaderVote:
        """
        投出領袖票；票數達到玩家數時自動結算

        自動結算遇到加權並列時只記錄 warning，房間維持 FINAL_VOTE。

        異常：
            RoomNotFound / FinalVoteNotStarted / NotRoomMember /
            InvalidLeaderTarget / AlreadyVoted
        """
        vote = LeaderElection._cast_vote(store, room_id, voter_user_id, target_user_id)

        vote_count = store.count_leader_votes(room_id)
        player_count = store.count_players(room_id)
        if vote_count >= player_count:
            logger.info(f"All {player_count} leader votes cast in room {room_id}, resolving")
            try:
                LeaderElection._resolve_on_quorum(store, room_id)
            except (ResolutionAlreadyApplied, RoomChangedConcurrently, FinalVoteNotStarted) as e:
                logger.info(f"Room {room_id} already resolved elsewhere: {e}")
            except LeaderVoteTied as e:
                # 票已經寫入；並列時停在 FINAL_VOTE，不影響這次投票的結果
                logger.warning(f"Leader vote in room {room_id} is tied after all votes: {e}")

        return vote

    @staticmethod
    @transactional
    def _cast_vote(store: GameStore, room_id: str, voter_user_id: str, target_user_id: str) -> LeaderVote:
        room = RoomManager.load_room(store, room_id)
        if room.status != RoomStatus.FINAL_VOTE:
            raise FinalVoteNotStarted(f"Final vote has not started in room {room_id} (status: {room.status.value})")

        voter = store.get_player(room_id, voter_user_id)
        if voter is None:
            raise NotRoomMember(f"User {voter_user_id} is not a player of room {room_id}")

        if not target_user_id or store.get_player(room_id, target_user_id) is None:
            raise InvalidLeaderTarget(f"Target {target_user_id!r} is not a player of room {room_id}")

        # 投票當下的分數就是這張票的 weight
        weight = ScoreLedger.read(store, room_id, voter_user_id)

        try:
            vote = store.insert(LeaderVote(
                room_id=room_id,
                voter_user_id=voter_user_id,
                target_user_id=target_user_id,
                weight=weight,
            ))
        except StoreError as e:
            if e.kind == StoreErrorKind.UNIQUE_VIOLATION:
                raise AlreadyVoted(f"User {voter_user_id} already cast a leader vote in room {room_id}")
            raise

        def recheck(current) -> None:
            # 檢查之後房間可能已經結算；結算後的票不能留下
            if current.status != RoomStatus.FINAL_VOTE:
                raise FinalVoteNotStarted(f"Final vote closed in room {room_id} (status: {current.status.value})")

        RoomManager.guard_room(store, room_id, RoomStatus.FINAL_VOTE, recheck)

        store.log_event(room_id, "LEADER_VOTE_CAST", {
            "voter_user_id": voter_user_id,
            "target_user_id": target_user_id,
            "weight": weight,
        })
        logger.info(f"User {voter_user_id} voted for {target_user_id} with weight {weight} in room {room_id}")
        return vote

    @staticmethod
    @transactional
    def resolve_final(store: GameStore, room_id: str, caller_id: str) -> RoomResult:
        """
        Host 手動結算領袖投票

        流程：
        1. 驗證 Host 與 FINAL_VOTE 狀態
        2. 加總每位候選人的 weight；並列最高則拋出 LeaderVoteTied
        3. 計算 MVP
        4. CAS FINAL_VOTE -> RESOLVED，並寫入 RoomResult

        異常：
            RoomNotFound / NotRoomMember / NotHost / FinalVoteNotStarted /
            NoVotes / LeaderVoteTied / ResolutionAlreadyApplied /
            RoomChangedConcurrently: 讀取票之後又有新的領袖票，重新結算即可
        """
        room, is_host = RoomManager.ensure_membership(store, room_id, caller_id)
        if not is_host:
            raise NotHost("Only the host can resolve the leader vote")
        return LeaderElection._finalize(store, room)

    @staticmethod
    @transactional
    def _resolve_on_quorum(store: GameStore, room_id: str) -> RoomResult:
        room = RoomManager.load_room(store, room_id)
        return LeaderElection._finalize(store, room)

    @staticmethod
    def _finalize(store: GameStore, room) -> RoomResult:
        if room.status != RoomStatus.FINAL_VOTE:
            raise FinalVoteNotStarted(f"Final vote is not open in room {room.id} (status: {room.status.value})")
        expected_version = room.version

        votes = store.list_leader_votes(room.id)
        if not votes:
            raise NoVotes(f"No leader votes to resolve in room {room.id}")

        tally = tally_weighted(votes)
        if tally.tied:
            raise LeaderVoteTied(tally.tied_candidates, tally.top_total)

        mvp = pick_mvp(store.list_players(room.id))

        resolved_at = datetime.now(timezone.utc)
        RoomStateMachine.validate(RoomStatus.FINAL_VOTE, RoomStatus.RESOLVED)
        swapped = store.compare_and_swap_room(
            room.id,
            RoomStatus.FINAL_VOTE,
            expected_version,
            status=RoomStatus.RESOLVED,
            current_chapter_order=None,
            resolved_at=resolved_at,
        )
        if not swapped:
            current = store.reload_room(room.id)
            if current.status == RoomStatus.FINAL_VOTE:
                # 讀取票之後又有新的領袖票 commit
                raise RoomChangedConcurrently(f"New leader votes arrived in room {room.id}, resolve again")
            logger.warning(f"Room {room.id} was already resolved by another request")
            raise ResolutionAlreadyApplied(f"Room {room.id} was already resolved")

        try:
            result = store.insert(RoomResult(
                room_id=room.id,
                winner_user_id=tally.winner,
                winner_weight=tally.top_total,
                totals=tally.totals,
                mvp_user_id=mvp.user_id if mvp else None,
                mvp_score=mvp.score if mvp else None,
                resolved_at=resolved_at,
            ))
        except StoreError as e:
            if e.kind == StoreErrorKind.UNIQUE_VIOLATION:
                raise ResolutionAlreadyApplied(f"Room {room.id} already has a result")
            raise

        store.log_event(room.id, "ROOM_RESOLVED", {
            "winner_user_id": tally.winner,
            "totals": tally.totals,
            "mvp_user_id": result.mvp_user_id,
            "scores": ScoreLedger.snapshot(store, room.id),
        })
        logger.info(f"Room {room.id} resolved: leader={tally.winner} ({tally.top_total}), mvp={result.mvp_user_id}")
        return result

    @staticmethod
    def get_final_result(store: GameStore, room_id: str, caller_id: str) -> RoomResult:
        room, _ = RoomManager.ensure_membership(store, room_id, caller_id)
        result = store.get_result(room_id)
        if room.status != RoomStatus.RESOLVED or result is None:
            raise GameNotFinished(f"Room {room_id} is not resolved yet (status: {room.status.value})")
        return result

    @staticmethod
    def get_leaderboard(store: GameStore, room_id: str, caller_id: str) -> List[Player]:
        """分數由高到低；同分時先加入者在前"""
        RoomManager.ensure_membership(store, room_id, caller_id)
        return ScoreLedger.read_all(store, room_id)
