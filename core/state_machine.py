"""
Room 狀態機：集中定義合法的狀態轉換

WAITING → PLAYING → FINAL_VOTE → RESOLVED

狀態只能往前走；RESOLVED 是終態。
PLAYING → PLAYING 代表推進到下一個章節（同狀態，version +1）。
實際寫入由 GameStore.compare_and_swap_room() 完成，這裡只負責驗證。
"""
from models import RoomStatus
from core.exceptions import InvalidStateTransition


class RoomStateMachine:
    """Room 狀態轉換規則"""

    TRANSITIONS = {
        RoomStatus.WAITING: {RoomStatus.PLAYING},
        RoomStatus.PLAYING: {RoomStatus.PLAYING, RoomStatus.FINAL_VOTE},
        RoomStatus.FINAL_VOTE: {RoomStatus.RESOLVED},
        RoomStatus.RESOLVED: set(),
    }

    @classmethod
    def can_transition(cls, current: RoomStatus, target: RoomStatus) -> bool:
        return target in cls.TRANSITIONS.get(current, set())

    @classmethod
    def validate(cls, current: RoomStatus, target: RoomStatus) -> None:
        """
        驗證狀態轉換是否合法

        異常：
            InvalidStateTransition: 轉換不在表內（例如往回走或離開 RESOLVED）
        """
        if not cls.can_transition(current, target):
            raise InvalidStateTransition(
                f"Cannot transition room from {current.value} to {target.value}"
            )

    @classmethod
    def is_terminal(cls, status: RoomStatus) -> bool:
        return not cls.TRANSITIONS.get(status)
