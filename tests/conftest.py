import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from models import RoomStatus
from database import Base, build_engine, get_db
from core.store import GameStore
from core.room_manager import RoomManager
from core.chapter_engine import ChapterEngine
from main import create_app


@pytest.fixture()
def db_engine(tmp_path):
    # 每個測試一個檔案型 SQLite，讓多個 session 可以各自持有連線來模擬並發
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def store(session_factory):
    game_store = GameStore(session_factory())
    yield game_store
    game_store.close()


@pytest.fixture()
def other_store(session_factory):
    """第二個獨立的 store，用來模擬另一個同時進來的請求"""
    game_store = GameStore(session_factory())
    yield game_store
    game_store.close()


@pytest.fixture()
def make_room(store):
    """建立房間並加入玩家，返回 (room_id, user_ids)；user_ids[0] 是 Host"""
    def _make(players=3, capacity=None):
        user_ids = ["host"] + [f"user{i}" for i in range(1, players)]
        if capacity is None:
            capacity = max(3, players + (players + 1) % 2)
        room = RoomManager.create_room(store, "host", capacity, "Host")
        for user_id in user_ids[1:]:
            RoomManager.join_room(store, room.id, user_id, user_id.title())
        return room.id, user_ids
    return _make


@pytest.fixture()
def started_room(store, make_room):
    """已開始遊戲的房間"""
    def _start(players=3):
        room_id, user_ids = make_room(players=players)
        ChapterEngine.start_game(store, room_id, "host")
        return room_id, user_ids
    return _start


@pytest.fixture()
def play_chapter(store):
    """對目前章節依 {user_id: choice} 投票，返回最後一次投票後的 Room"""
    def _play(room_id, choices):
        chapter = ChapterEngine.get_current_chapter(store, room_id, "host")
        room = None
        for user_id, choice in choices.items():
            _, room = ChapterEngine.vote_chapter(store, room_id, chapter.id, user_id, choice)
        return chapter, room
    return _play


@pytest.fixture()
def final_vote_room(store, started_room, play_chapter):
    """所有章節都已結算、進入 FINAL_VOTE 的房間（每章全員投 A）"""
    def _final(players=3):
        room_id, user_ids = started_room(players=players)
        room = store.get_room(room_id)
        while room.status == RoomStatus.PLAYING:
            _, room = play_chapter(room_id, {uid: "A" for uid in user_ids})
        return room_id, user_ids
    return _final


@pytest.fixture()
def client(session_factory):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture()
def run_once_after(monkeypatch):
    """
    store.<method_name> 第一次讀完之後執行 action，
    模擬另一個請求剛好在檢查之後、寫入之前 commit
    """
    def _install(target_store, method_name, action):
        original = getattr(target_store, method_name)
        state = {"done": False}

        def wrapper(*args, **kwargs):
            result = original(*args, **kwargs)
            if not state["done"]:
                state["done"] = True
                action()
            return result

        monkeypatch.setattr(target_store, method_name, wrapper)
    return _install
