"""
Pydantic request / response models
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Choice, RoomStatus


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ============ Room ============

class RoomCreate(BaseModel):
    capacity: int
    nickname: Optional[str] = Field(default=None, max_length=64)


class RoomJoin(BaseModel):
    nickname: Optional[str] = Field(default=None, max_length=64)


class RoomResponse(ORMModel):
    id: str
    host_user_id: str
    capacity: int
    status: RoomStatus
    current_chapter_order: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class RoomSummary(BaseModel):
    id: str
    status: RoomStatus
    capacity: int
    current_players: int
    created_at: datetime


class PlayerResponse(ORMModel):
    room_id: str
    user_id: str
    nickname: Optional[str] = None
    score: float
    joined_at: datetime


class RoomPlayerResponse(PlayerResponse):
    is_host: bool


# ============ Chapter ============

class ChapterResponse(ORMModel):
    id: str
    room_id: str
    order: int
    title: str
    description: Optional[str] = None
    option_a_label: str
    option_b_label: str


class ChapterVoteSubmit(BaseModel):
    # 接受任意字串，由 engine 驗證（InvalidChoice）
    choice: str


class ChapterVoteResponse(ORMModel):
    id: int
    room_id: str
    chapter_id: str
    user_id: str
    choice: Choice


class ChapterVoteResult(BaseModel):
    vote: ChapterVoteResponse
    status: RoomStatus
    current_chapter_order: Optional[int] = None


class ChapterOutcomeResponse(ORMModel):
    room_id: str
    chapter_id: str
    order: int
    majority: Choice
    count_a: int
    count_b: int
    reward: float
    rewarded_user_ids: List[str]
    status: RoomStatus
    current_chapter_order: Optional[int] = None


class GameStateResponse(ORMModel):
    room_id: str
    status: RoomStatus
    current_chapter_order: Optional[int] = None
    version: int
    player_count: int
    votes_cast: int


class ChapterHistoryEntry(BaseModel):
    chapter_id: str
    order: int
    title: str
    count_a: int
    count_b: int
    majority: Optional[Choice] = None
    rewarded_user_ids: List[str]


# ============ Leader ============

class LeaderVoteSubmit(BaseModel):
    target_user_id: str


class LeaderVoteResponse(ORMModel):
    id: int
    room_id: str
    voter_user_id: str
    target_user_id: str
    weight: float


class RoomResultResponse(ORMModel):
    room_id: str
    winner_user_id: str
    winner_weight: float
    totals: Dict[str, float]
    mvp_user_id: Optional[str] = None
    mvp_score: Optional[float] = None
    resolved_at: datetime


class LeaderboardEntry(ORMModel):
    user_id: str
    nickname: Optional[str] = None
    score: float
