"""
Score Ledger：玩家在房間內累積的分數（影響力）

沒有自己的狀態機，只提供讀取與批次加分。
increment() 不會 commit，而是加入呼叫者的 transaction，
讓「全部加分 + 章節推進」一起成功或一起失敗。
"""
import logging
from typing import Dict, Iterable, List

from core.exceptions import PlayerNotFound, ValidationFailed
from core.store import GameStore
from models import Player

logger = logging.getLogger(__name__)


class ScoreLedger:

    @staticmethod
    def increment(store: GameStore, room_id: str, user_ids: Iterable[str], amount: float) -> int:
        """
        對一批玩家加上同樣的分數（all-or-nothing）

        參數：
            store: GameStore
            room_id: 房間 ID
            user_ids: 要加分的玩家 user_id
            amount: 加分量，不可為負（分數只增不減）

        返回：
            加分的玩家數

        異常：
            ValidationFailed: amount < 0
            PlayerNotFound: 有 user_id 不在房間內；呼叫者的 transaction 會整批 rollback
        """
        if amount < 0:
            raise ValidationFailed(f"Score increment must be non-negative, got {amount}")

        targets = sorted(set(user_ids))
        if not targets:
            return 0

        updated = store.add_to_scores(room_id, targets, amount)
        if updated != len(targets):
            existing = {p.user_id for p in store.list_players(room_id)}
            missing = [uid for uid in targets if uid not in existing]
            raise PlayerNotFound(missing[0] if missing else targets[0])

        logger.info(f"Added {amount} to {len(targets)} players in room {room_id}")
        return updated

    @staticmethod
    def read(store: GameStore, room_id: str, user_id: str) -> float:
        player = store.get_player(room_id, user_id)
        if player is None:
            raise PlayerNotFound(user_id)
        return player.score

    @staticmethod
    def read_all(store: GameStore, room_id: str) -> List[Player]:
        """依分數由高到低排序；同分時先加入的在前"""
        players = store.list_players(room_id)
        # list_players 已依加入順序排序，sorted 是 stable 的
        return sorted(players, key=lambda p: p.score, reverse=True)

    @staticmethod
    def snapshot(store: GameStore, room_id: str) -> Dict[str, float]:
        return {p.user_id: p.score for p in store.list_players(room_id)}
