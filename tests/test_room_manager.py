import pytest

from models import RoomStatus
from core.room_manager import RoomManager
from core.chapter_engine import ChapterEngine
from core.exceptions import (
    AlreadyJoined,
    Forbidden,
    InvalidCapacity,
    InvalidPlayerCount,
    NotRoomMember,
    RoomChangedConcurrently,
    RoomFull,
    RoomNotFound,
    RoomNotJoinable,
    ValidationFailed,
)


def test_create_room_adds_host_as_player(store):
    room = RoomManager.create_room(store, "host", 3, "Captain")

    assert room.status == RoomStatus.WAITING
    assert room.capacity == 3
    assert room.current_chapter_order is None

    players = RoomManager.get_players(store, room.id, "host")
    assert [(p.user_id, p.nickname, p.score) for p in players] == [("host", "Captain", 0.0)]


@pytest.mark.parametrize("capacity", [1, 2, 4, 6, 8, 10, 11])
def test_create_room_rejects_invalid_capacity(store, capacity):
    with pytest.raises(InvalidCapacity) as exc_info:
        RoomManager.create_room(store, "host", capacity, "Captain")

    assert isinstance(exc_info.value, ValidationFailed)
    assert RoomManager.list_rooms(store) == []


def test_join_room_and_generated_nickname(store):
    room = RoomManager.create_room(store, "host", 5, "Captain")

    named = RoomManager.join_room(store, room.id, "alice", "Alice")
    unnamed = RoomManager.join_room(store, room.id, "bob", "   ")

    assert named.nickname == "Alice"
    assert unnamed.nickname == "Bear 1"
    assert [p.user_id for p in RoomManager.get_players(store, room.id, "alice")] == ["host", "alice", "bob"]


def test_join_twice_is_rejected(store):
    room = RoomManager.create_room(store, "host", 3, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")

    with pytest.raises(AlreadyJoined):
        RoomManager.join_room(store, room.id, "alice", "Alice again")
    with pytest.raises(AlreadyJoined):
        RoomManager.join_room(store, room.id, "host", "Host again")


def test_unique_index_decides_join_race(store, monkeypatch):
    room = RoomManager.create_room(store, "host", 3, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")

    # 模擬「另一個請求剛好在檢查之後寫入」：讓提示性的檢查看不到既有的玩家
    monkeypatch.setattr(store, "get_player", lambda room_id, user_id: None)

    with pytest.raises(AlreadyJoined):
        RoomManager.join_room(store, room.id, "alice", "Alice")

    monkeypatch.undo()
    assert store.count_players(room.id) == 2


def test_join_full_room(store):
    room = RoomManager.create_room(store, "host", 3, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")
    RoomManager.join_room(store, room.id, "bob", "Bob")

    with pytest.raises(RoomFull):
        RoomManager.join_room(store, room.id, "carol", "Carol")


def test_join_started_room(store, started_room):
    room_id, _ = started_room(players=3)

    with pytest.raises(RoomNotJoinable):
        RoomManager.join_room(store, room_id, "late", "Late")


def test_join_unknown_room(store):
    with pytest.raises(RoomNotFound):
        RoomManager.join_room(store, "missing", "alice", "Alice")


def test_reads_require_membership(store):
    room = RoomManager.create_room(store, "host", 3, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")

    assert RoomManager.get_room(store, room.id, "alice").id == room.id
    with pytest.raises(NotRoomMember) as exc_info:
        RoomManager.get_room(store, room.id, "stranger")
    assert isinstance(exc_info.value, Forbidden)
    with pytest.raises(NotRoomMember):
        RoomManager.get_players(store, room.id, "stranger")


def test_list_rooms_filters(store, make_room):
    full_id, _ = make_room(players=3, capacity=3)
    open_id, _ = make_room(players=1, capacity=5)
    playing_id, _ = make_room(players=3, capacity=5)
    ChapterEngine.start_game(store, playing_id, "host")

    all_ids = {room.id for room, _ in RoomManager.list_rooms(store)}
    assert all_ids == {full_id, open_id, playing_id}

    joinable = RoomManager.list_rooms(store, only_joinable=True)
    assert [(room.id, count) for room, count in joinable] == [(open_id, 1)]

    playing = RoomManager.list_rooms(store, status=RoomStatus.PLAYING)
    assert [room.id for room, _ in playing] == [playing_id]
    assert RoomManager.list_rooms(store, status=RoomStatus.RESOLVED) == []


def test_join_rechecks_capacity_after_insert(store, other_store, run_once_after):
    room = RoomManager.create_room(store, "host", 3, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")

    # 檢查人數時還有空位，但 bob 在寫入之前搶先加入
    run_once_after(
        store, "count_players",
        lambda: RoomManager.join_room(other_store, room.id, "bob", "Bob"),
    )

    with pytest.raises(RoomFull):
        RoomManager.join_room(store, room.id, "carol", "Carol")

    assert [p.user_id for p in store.list_players(room.id)] == ["host", "alice", "bob"]
    assert ChapterEngine.start_game(store, room.id, "host").status == RoomStatus.PLAYING


def test_join_rechecks_status_after_insert(store, other_store, run_once_after):
    room = RoomManager.create_room(store, "host", 5, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")
    RoomManager.join_room(store, room.id, "bob", "Bob")

    # 檢查狀態時還是 WAITING，Host 在寫入之前開始了遊戲
    run_once_after(
        store, "count_players",
        lambda: ChapterEngine.start_game(other_store, room.id, "host"),
    )

    with pytest.raises(RoomNotJoinable):
        RoomManager.join_room(store, room.id, "late", "Late")

    room = store.reload_room(room.id)
    assert room.status == RoomStatus.PLAYING
    assert store.count_players(room.id) == 3


def test_start_fails_when_player_joins_during_start(store, other_store, run_once_after):
    room = RoomManager.create_room(store, "host", 5, "Captain")
    RoomManager.join_room(store, room.id, "alice", "Alice")
    RoomManager.join_room(store, room.id, "bob", "Bob")

    # start 數到 3 人之後 carol 才加入，3 人的前提已經不成立
    run_once_after(
        store, "count_players",
        lambda: RoomManager.join_room(other_store, room.id, "carol", "Carol"),
    )

    with pytest.raises(RoomChangedConcurrently) as exc_info:
        ChapterEngine.start_game(store, room.id, "host")
    assert exc_info.value.is_race

    assert store.reload_room(room.id).status == RoomStatus.WAITING
    assert store.count_players(room.id) == 4
    with pytest.raises(InvalidPlayerCount):
        ChapterEngine.start_game(store, room.id, "host")
