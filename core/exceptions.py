"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類（API 層依分類對應 HTTP status）：
- NotFound：Room / Chapter / Player 不存在
- Forbidden：呼叫者不是 Host 或不是房間成員
- Conflict：狀態不允許此操作（包含並發結算競爭）
- ValidationFailed：輸入不合法，不會造成任何狀態變更
"""


class SurvivalVoteException(Exception):
    """所有遊戲異常的基類"""
    pass


class NotFound(SurvivalVoteException):
    pass


class Forbidden(SurvivalVoteException):
    pass


class Conflict(SurvivalVoteException):
    # True 表示「別的請求已經完成同一件事」，呼叫者應重新讀取狀態，而不是當成事故
    is_race = False


class ValidationFailed(SurvivalVoteException):
    pass


# ============ NotFound ============

class RoomNotFound(NotFound):
    """房間不存在"""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class ChapterNotFound(NotFound):
    """章節不存在（或不屬於此房間）"""
    def __init__(self, chapter_id):
        self.chapter_id = chapter_id
        super().__init__(f"Chapter {chapter_id} not found")


class PlayerNotFound(NotFound):
    """玩家不存在"""
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Player {user_id} not found")


# ============ Forbidden ============

class NotHost(Forbidden):
    """只有 Host 可以執行"""
    pass


class NotRoomMember(Forbidden):
    """呼叫者不是房間成員"""
    pass


# ============ Room 相關 Conflict ============

class AlreadyJoined(Conflict):
    pass


class RoomFull(Conflict):
    pass


class RoomNotJoinable(Conflict):
    """房間不接受新玩家加入（已經開始遊戲）"""
    pass


class GameAlreadyStarted(Conflict):
    pass


class InvalidPlayerCount(Conflict):
    """玩家數量不符合要求（必須是奇數且 >= 3）"""
    pass


# ============ 投票 / 結算 Conflict ============

class GameNotStarted(Conflict):
    pass


class NoActiveChapter(Conflict):
    pass


class ChapterNotActive(Conflict):
    pass


class AlreadyVoted(Conflict):
    pass


class NoVotes(Conflict):
    pass


class VoteTied(Conflict):
    def __init__(self, count_a: int, count_b: int):
        self.count_a = count_a
        self.count_b = count_b
        super().__init__(f"Vote is tied ({count_a} : {count_b})")


class LeaderVoteTied(Conflict):
    def __init__(self, candidates: list, total: float):
        self.candidates = candidates
        self.total = total
        super().__init__(f"Leader vote is tied between {candidates} at {total}")


class FinalVoteNotStarted(Conflict):
    pass


class GameNotFinished(Conflict):
    pass


class InvalidStateTransition(Conflict):
    """非法的狀態轉換"""
    pass


class ResolutionAlreadyApplied(Conflict):
    """CAS 失敗：另一個請求已經推進了章節或完成了最終結算"""
    is_race = True


class RoomChangedConcurrently(Conflict):
    """CAS 失敗：房間在讀取之後被其他寫入改變（新玩家 / 新投票），重新讀取後再試一次即可"""
    is_race = True


# ============ ValidationFailed ============

class InvalidCapacity(ValidationFailed):
    def __init__(self, capacity):
        self.capacity = capacity
        super().__init__(f"Invalid capacity {capacity}, expected one of 3, 5, 7, 9")


class InvalidChoice(ValidationFailed):
    def __init__(self, choice):
        self.choice = choice
        super().__init__(f"Invalid choice {choice!r}, expected 'A' or 'B'")


class InvalidLeaderTarget(ValidationFailed):
    """被投票的對象不在房間內"""
    pass
