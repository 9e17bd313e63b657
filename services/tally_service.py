"""
計票服務：章節多數決與領袖加權投票

純計算邏輯，不讀寫 store，也不改變狀態
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from models import Choice

# 分數是 0.1 的累加，浮點誤差會讓 0.1 + 0.2 != 0.3，比較前先取到固定位數
WEIGHT_PRECISION = 6


@dataclass
class MajorityTally:
    count_a: int
    count_b: int
    majority: Optional[Choice]
    winners: List[str] = field(default_factory=list)

    @property
    def tied(self) -> bool:
        return self.majority is None


@dataclass
class WeightedTally:
    totals: Dict[str, float]
    winner: Optional[str]
    top_total: float
    tied_candidates: List[str] = field(default_factory=list)

    @property
    def tied(self) -> bool:
        return self.winner is None


def normalize_weight(value: float) -> float:
    return round(value, WEIGHT_PRECISION)


def tally_majority(votes: Sequence) -> MajorityTally:
    """
    計算 A / B 票數與多數方

    參數：
        votes: 具有 user_id 與 choice 屬性的投票列表

    返回：
        MajorityTally；平手時 majority 為 None、winners 為空
    """
    count_a = sum(1 for v in votes if Choice(v.choice) == Choice.A)
    count_b = len(votes) - count_a

    if count_a == count_b:
        return MajorityTally(count_a=count_a, count_b=count_b, majority=None)

    majority = Choice.A if count_a > count_b else Choice.B
    winners = [v.user_id for v in votes if Choice(v.choice) == majority]
    return MajorityTally(count_a=count_a, count_b=count_b, majority=majority, winners=winners)


def tally_weighted(votes: Sequence) -> WeightedTally:
    """
    依 target_user_id 加總 weight，最高者當選

    totals 依第一次出現的順序排列。多個候選人並列最高時 winner 為 None。

    範例：
        A: 0.3 + 0.1 = 0.4, B: 0.5 -> winner B
    """
    totals: Dict[str, float] = {}
    for vote in votes:
        totals[vote.target_user_id] = totals.get(vote.target_user_id, 0.0) + vote.weight
    totals = {target: normalize_weight(total) for target, total in totals.items()}

    if not totals:
        return WeightedTally(totals={}, winner=None, top_total=0.0)

    top_total = max(totals.values())
    leaders = [target for target, total in totals.items() if total == top_total]
    if len(leaders) > 1:
        return WeightedTally(totals=totals, winner=None, top_total=top_total, tied_candidates=leaders)
    return WeightedTally(totals=totals, winner=leaders[0], top_total=top_total)


def pick_mvp(players: Sequence):
    """
    分數最高的玩家；同分時取先加入者

    參數：
        players: 依加入順序排列的 Player 列表
    """
    mvp = None
    for player in players:
        if mvp is None or normalize_weight(player.score) > normalize_weight(mvp.score):
            mvp = player
    return mvp
