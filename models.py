"""
ORM Models

一個 Room 擁有自己的 Players、Chapters、ChapterVotes、LeaderVotes、
EventLogs，以及最多一筆 RoomResult；不同 Room 之間沒有共用資料。
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RoomStatus(str, enum.Enum):
    WAITING = "WAITING"
    PLAYING = "PLAYING"
    FINAL_VOTE = "FINAL_VOTE"
    RESOLVED = "RESOLVED"


class Choice(str, enum.Enum):
    A = "A"
    B = "B"


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, default=_uuid)
    host_user_id = Column(String(128), nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    status = Column(Enum(RoomStatus), nullable=False, default=RoomStatus.WAITING)
    current_chapter_order = Column(Integer, nullable=True)
    # CAS token：每次房間層級的狀態轉換都會 +1
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    players = relationship("Player", back_populates="room", order_by="Player.joined_at")
    chapters = relationship("Chapter", back_populates="room", order_by="Chapter.order")
    result = relationship("RoomResult", back_populates="room", uselist=False)


class Player(Base):
    __tablename__ = "players"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_players_room_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    user_id = Column(String(128), nullable=False)
    nickname = Column(String(64), nullable=True)
    score = Column(Float, nullable=False, default=0.0)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    room = relationship("Room", back_populates="players")


class Chapter(Base):
    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("room_id", "order", name="uq_chapters_room_order"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    order = Column(Integer, nullable=False)
    title = Column(String(128), nullable=False)
    description = Column(String(512), nullable=True)
    option_a_label = Column(String(128), nullable=False)
    option_b_label = Column(String(128), nullable=False)

    room = relationship("Room", back_populates="chapters")


class ChapterVote(Base):
    __tablename__ = "chapter_votes"
    __table_args__ = (
        UniqueConstraint("room_id", "chapter_id", "user_id", name="uq_chapter_votes_once"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    chapter_id = Column(String(36), ForeignKey("chapters.id"), nullable=False, index=True)
    user_id = Column(String(128), nullable=False)
    choice = Column(Enum(Choice), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class LeaderVote(Base):
    __tablename__ = "leader_votes"
    __table_args__ = (
        UniqueConstraint("room_id", "voter_user_id", name="uq_leader_votes_once"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    voter_user_id = Column(String(128), nullable=False)
    target_user_id = Column(String(128), nullable=False)
    # 投票當下的 voter.score，之後不會再變動
    weight = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class RoomResult(Base):
    __tablename__ = "room_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, unique=True)
    winner_user_id = Column(String(128), nullable=False)
    winner_weight = Column(Float, nullable=False)
    totals = Column(JSON, nullable=False)
    mvp_user_id = Column(String(128), nullable=True)
    mvp_score = Column(Float, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    room = relationship("Room", back_populates="result")


class EventLog(Base):
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
