"""
章節目錄：每個房間在開始遊戲時複製一份

純資料，不涉及狀態轉換
"""
from typing import List

from models import Chapter


STORY_CHAPTERS = [
    {
        "order": 1,
        "title": "Expedition Selection",
        "description": "Should the same scout be sent out with the expedition again?",
        "option_a_label": "Send the most capable scout again",
        "option_b_label": "Draw lots and rotate the duty",
    },
    {
        "order": 2,
        "title": "Distribution of Food",
        "description": "How should the remaining food be shared?",
        "option_a_label": "Share by contribution",
        "option_b_label": "Share equally",
    },
    {
        "order": 3,
        "title": "Outsiders and Rules",
        "description": "Should outsiders be let into the shelter?",
        "option_a_label": "Turn outsiders away",
        "option_b_label": "Quarantine, then accept",
    },
    {
        "order": 4,
        "title": "Escape vs Stay",
        "description": "Hold the current position, or attempt a group escape?",
        "option_a_label": "Hold the position",
        "option_b_label": "Attempt the escape",
    },
]

LAST_CHAPTER_ORDER = len(STORY_CHAPTERS)


def build_chapters(room_id: str) -> List[Chapter]:
    """為房間建立一份完整的章節目錄（尚未寫入 store）"""
    return [Chapter(room_id=room_id, **entry) for entry in STORY_CHAPTERS]


def next_chapter_order(order: int):
    """
    回傳下一個章節的 order；已經是最後一章時回傳 None

    範例：
        next_chapter_order(1) -> 2
        next_chapter_order(4) -> None
    """
    if order >= LAST_CHAPTER_ORDER:
        return None
    return order + 1
