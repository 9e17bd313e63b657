"""
命名服務：為沒有提供暱稱的玩家生成顯示名稱

純計算邏輯，不涉及狀態轉換
"""
from typing import Optional

ANIMALS = ["Fox", "Eagle", "Bear", "Tiger", "Wolf", "Deer", "Leopard", "Lion", "Rabbit", "Snake"]

MAX_NICKNAME_LENGTH = 64


def generate_display_name(existing_count: int) -> str:
    """
    依房間內現有玩家數量生成顯示名稱

    格式：「動物 N」
    範例：第 1 位玩家: Fox 1，第 2 位玩家: Eagle 1，...，第 11 位玩家: Fox 2

    參數：
        existing_count: 房間內現有玩家數量（含 Host）
    """
    animal = ANIMALS[existing_count % len(ANIMALS)]
    number = (existing_count // len(ANIMALS)) + 1
    return f"{animal} {number}"


def resolve_nickname(nickname: Optional[str], existing_count: int) -> str:
    """去除空白；空字串或 None 時改用生成的名稱"""
    if nickname is not None:
        nickname = nickname.strip()[:MAX_NICKNAME_LENGTH]
    if not nickname:
        return generate_display_name(existing_count)
    return nickname
