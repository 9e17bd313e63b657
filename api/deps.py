"""
API 共用的 dependency 與錯誤對應

- 呼叫者身分由上游的 auth gateway 驗證後放在 X-User-Id header，這裡不做驗證
- 每個 request 一個 GameStore，request 結束時關閉
"""
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
import logging

from database import get_db
from core.store import GameStore
from core.exceptions import (
    SurvivalVoteException,
    NotFound,
    Forbidden,
    Conflict,
    ValidationFailed,
)
from services.notify_service import RoomEventHub

logger = logging.getLogger(__name__)


def get_store(db: Session = Depends(get_db)) -> GameStore:
    return GameStore(db)


def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def get_event_hub(request: Request) -> RoomEventHub:
    return request.app.state.event_hub


def to_http_error(e: SurvivalVoteException) -> HTTPException:
    """
    業務異常 -> HTTPException

    NotFound 404 / Forbidden 403 / Conflict 409 / ValidationFailed 422
    race conflict 會帶 race: true，前端應重新讀取房間狀態
    """
    detail = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=detail)
    if isinstance(e, Forbidden):
        return HTTPException(status_code=403, detail=detail)
    if isinstance(e, Conflict):
        detail["race"] = e.is_race
        return HTTPException(status_code=409, detail=detail)
    if isinstance(e, ValidationFailed):
        return HTTPException(status_code=422, detail=detail)

    logger.error(f"Unmapped game exception {type(e).__name__}: {e}")
    return HTTPException(status_code=500, detail="Internal error")


def internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal error")
