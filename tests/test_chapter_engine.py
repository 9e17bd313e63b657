import pytest

from models import Choice, RoomStatus
from core.chapter_engine import ChapterEngine
from core.score_ledger import ScoreLedger
from core.exceptions import (
    AlreadyVoted,
    ChapterNotActive,
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
from services.chapter_catalog import LAST_CHAPTER_ORDER
from services.history_service import get_chapter_history


def scores(store, room_id):
    return ScoreLedger.snapshot(store, room_id)


# ============ start_game ============

def test_start_game_seeds_catalog_and_enters_first_chapter(store, make_room):
    room_id, _ = make_room(players=3)

    room = ChapterEngine.start_game(store, room_id, "host")

    assert room.status == RoomStatus.PLAYING
    assert room.current_chapter_order == 1
    chapters = ChapterEngine.list_chapters(store, room_id, "user1")
    assert [c.order for c in chapters] == list(range(1, LAST_CHAPTER_ORDER + 1))
    assert ChapterEngine.get_current_chapter(store, room_id, "user1").order == 1


def test_start_game_requires_host(store, make_room):
    room_id, _ = make_room(players=3)

    with pytest.raises(NotHost):
        ChapterEngine.start_game(store, room_id, "user1")
    assert store.get_room(room_id).status == RoomStatus.WAITING


@pytest.mark.parametrize("players", [1, 2, 4])
def test_start_game_requires_odd_player_count(store, make_room, players):
    room_id, _ = make_room(players=players)

    with pytest.raises(InvalidPlayerCount):
        ChapterEngine.start_game(store, room_id, "host")
    assert store.count_chapters(room_id) == 0


def test_start_game_twice(store, started_room):
    room_id, _ = started_room(players=3)

    with pytest.raises(GameAlreadyStarted):
        ChapterEngine.start_game(store, room_id, "host")
    assert store.count_chapters(room_id) == LAST_CHAPTER_ORDER


def test_current_chapter_before_start(store, make_room):
    room_id, _ = make_room(players=3)

    with pytest.raises(GameNotStarted):
        ChapterEngine.get_current_chapter(store, room_id, "host")


# ============ vote_chapter ============

def test_vote_is_recorded_once(store, started_room):
    room_id, _ = started_room(players=3)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")

    vote, room = ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "A")
    assert vote.choice == Choice.A
    assert room.current_chapter_order == 1

    with pytest.raises(AlreadyVoted):
        ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "B")
    assert len(store.list_chapter_votes(room_id, chapter.id)) == 1


def test_vote_validation(store, started_room):
    room_id, _ = started_room(players=3)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    second = store.get_chapter_by_order(room_id, 2)

    with pytest.raises(InvalidChoice):
        ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "C")
    with pytest.raises(NotRoomMember):
        ChapterEngine.vote_chapter(store, room_id, chapter.id, "stranger", "A")
    with pytest.raises(ChapterNotActive):
        ChapterEngine.vote_chapter(store, room_id, second.id, "user1", "A")

    assert store.list_chapter_votes(room_id) == []


def test_vote_before_start(store, make_room):
    room_id, _ = make_room(players=3)

    with pytest.raises(GameNotStarted):
        ChapterEngine.vote_chapter(store, room_id, "any", "user1", "A")


def test_quorum_resolves_and_rewards_majority(store, started_room, play_chapter):
    room_id, _ = started_room(players=3)

    chapter, room = play_chapter(room_id, {"host": "A", "user1": "A", "user2": "B"})

    assert room.status == RoomStatus.PLAYING
    assert room.current_chapter_order == chapter.order + 1
    assert scores(store, room_id) == {
        "host": pytest.approx(0.1),
        "user1": pytest.approx(0.1),
        "user2": 0.0,
    }


# ============ resolve_chapter ============

def test_host_resolves_with_majority(store, started_room):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "A")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user2", "A")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user3", "B")

    outcome = ChapterEngine.resolve_chapter(store, room_id, chapter.id, "host")

    assert outcome.majority == Choice.A
    assert (outcome.count_a, outcome.count_b) == (2, 1)
    assert sorted(outcome.rewarded_user_ids) == ["user1", "user2"]
    assert outcome.current_chapter_order == 2
    assert store.get_room(room_id).current_chapter_order == 2

    board = scores(store, room_id)
    assert board["user1"] == pytest.approx(0.1)
    assert board["user2"] == pytest.approx(0.1)
    assert board["user3"] == 0.0
    assert board["host"] == 0.0
    assert board["user4"] == 0.0


def test_tied_vote_changes_nothing(store, started_room):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "A")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user2", "B")
    version_before = store.get_room(room_id).version

    with pytest.raises(VoteTied):
        ChapterEngine.resolve_chapter(store, room_id, chapter.id, "host")

    room = store.reload_room(room_id)
    assert room.current_chapter_order == 1
    assert room.version == version_before
    assert set(scores(store, room_id).values()) == {0.0}


def test_resolve_without_votes(store, started_room):
    room_id, _ = started_room(players=3)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")

    with pytest.raises(NoVotes):
        ChapterEngine.resolve_chapter(store, room_id, chapter.id, "host")


def test_resolve_requires_host(store, started_room):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "A")

    with pytest.raises(NotHost):
        ChapterEngine.resolve_chapter(store, room_id, chapter.id, "user1")
    with pytest.raises(NotRoomMember):
        ChapterEngine.resolve_chapter(store, room_id, chapter.id, "stranger")


def test_last_chapter_moves_to_final_vote(store, started_room, play_chapter):
    room_id, user_ids = started_room(players=3)

    for order in range(1, LAST_CHAPTER_ORDER + 1):
        chapter, room = play_chapter(room_id, {uid: "B" for uid in user_ids})
        assert chapter.order == order

    assert room.status == RoomStatus.FINAL_VOTE
    assert room.current_chapter_order is None
    with pytest.raises(NoActiveChapter):
        ChapterEngine.get_current_chapter(store, room_id, "host")

    last = store.get_chapter_by_order(room_id, LAST_CHAPTER_ORDER)
    with pytest.raises(ChapterNotActive):
        ChapterEngine.vote_chapter(store, room_id, last.id, "host", "A")
    with pytest.raises(ChapterNotActive):
        ChapterEngine.resolve_chapter(store, room_id, last.id, "host")
    assert store.reload_room(room_id).status == RoomStatus.FINAL_VOTE


def test_concurrent_resolution_applies_reward_once(store, other_store, started_room):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    for user_id, choice in [("user1", "A"), ("user2", "A"), ("user3", "B")]:
        ChapterEngine.vote_chapter(store, room_id, chapter.id, user_id, choice)

    # 兩個請求都在對方 commit 之前讀到同一個章節
    first = ChapterEngine.prepare_resolution(store, room_id, chapter.id, "host")
    second = ChapterEngine.prepare_resolution(other_store, room_id, chapter.id, "host")
    assert first.expected_version == second.expected_version

    outcome = ChapterEngine.apply_resolution(store, first)
    assert outcome.current_chapter_order == 2

    with pytest.raises(ResolutionAlreadyApplied) as exc_info:
        ChapterEngine.apply_resolution(other_store, second)
    assert exc_info.value.is_race

    room = other_store.reload_room(room_id)
    assert room.current_chapter_order == 2
    board = scores(other_store, room_id)
    assert board["user1"] == pytest.approx(0.1)
    assert board["user2"] == pytest.approx(0.1)
    assert [e.event_type for e in other_store.list_events(room_id)].count("CHAPTER_RESOLVED") == 1


def test_late_quorum_after_host_resolve(store, started_room):
    room_id, _ = started_room(players=3)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "host", "A")
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user1", "A")
    ChapterEngine.resolve_chapter(store, room_id, chapter.id, "host")

    with pytest.raises(ChapterNotActive):
        ChapterEngine.vote_chapter(store, room_id, chapter.id, "user2", "B")
    assert store.reload_room(room_id).current_chapter_order == 2


def test_vote_landing_after_resolution_is_rolled_back(store, other_store, started_room, run_once_after):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    for user_id, choice in [("user1", "A"), ("user2", "A"), ("user3", "B")]:
        ChapterEngine.vote_chapter(store, room_id, chapter.id, user_id, choice)

    # user4 通過檢查之後，Host 在這張票 commit 之前結算了章節
    run_once_after(
        store, "get_chapter",
        lambda: ChapterEngine.resolve_chapter(other_store, room_id, chapter.id, "host"),
    )

    with pytest.raises(ChapterNotActive):
        ChapterEngine.vote_chapter(store, room_id, chapter.id, "user4", "B")

    assert [v.user_id for v in store.list_chapter_votes(room_id, chapter.id)] == ["user1", "user2", "user3"]
    room = store.reload_room(room_id)
    assert room.current_chapter_order == 2

    history = get_chapter_history(store, room)
    assert [
        (h["order"], h["count_a"], h["count_b"], h["majority"], h["rewarded_user_ids"]) for h in history
    ] == [(1, 2, 1, "A", ["user1", "user2"])]
    assert history[0]["title"] == chapter.title


def test_resolution_retries_when_vote_commits_after_read(store, other_store, started_room):
    room_id, _ = started_room(players=5)
    chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
    for user_id, choice in [("user1", "A"), ("user2", "A"), ("user3", "B")]:
        ChapterEngine.vote_chapter(store, room_id, chapter.id, user_id, choice)

    plan = ChapterEngine.prepare_resolution(other_store, room_id, chapter.id, "host")
    assert (plan.tally.count_a, plan.tally.count_b) == (2, 1)

    # 讀取票數之後 user4 的票才 commit，舊的計票不能套用
    ChapterEngine.vote_chapter(store, room_id, chapter.id, "user4", "B")

    with pytest.raises(RoomChangedConcurrently) as exc_info:
        ChapterEngine.apply_resolution(other_store, plan)
    assert exc_info.value.is_race

    room = other_store.reload_room(room_id)
    assert room.current_chapter_order == 1
    assert set(scores(other_store, room_id).values()) == {0.0}

    with pytest.raises(VoteTied):
        ChapterEngine.resolve_chapter(other_store, room_id, chapter.id, "host")


def test_history_follows_recorded_resolution(store, started_room, play_chapter):
    room_id, _ = started_room(players=3)
    play_chapter(room_id, {"host": "B", "user1": "B", "user2": "A"})
    chapter, _ = play_chapter(room_id, {"host": "A"})
    room = store.get_room(room_id)

    # 第 2 章還沒結算，不會出現在歷史裡
    history = get_chapter_history(store, room)
    assert [(h["order"], h["majority"], h["rewarded_user_ids"]) for h in history] == [(1, "B", ["host", "user1"])]
    assert store.count_chapter_votes(room_id, chapter.id) == 1
