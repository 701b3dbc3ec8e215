"""
Session API Endpoints

職責：
1. 建立場次（主持人）
2. 加入 / 下注（玩家）
3. 強制開始、取消、延長時間（主持人）
4. 唯讀快照（呈現層以 state_version 判斷是否需要重繪）

所有業務邏輯集中在 SessionManager，這裡只做參數轉換與錯誤對應
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from core.exceptions import (
    AlreadyActive,
    AlreadyStaked,
    CapacityReached,
    CasinoException,
    InsufficientFunds,
    InvalidAmount,
    InvalidSelection,
    InvalidStateTransition,
    NotEnoughParticipants,
    SessionNotFound,
    SessionNotForming,
    Unauthorized,
    UnknownGame,
)
from core.session_manager import SessionManager
from games import build_config
from schemas import (
    ActionResponse,
    HostAction,
    JoinRequest,
    SessionCreate,
    SessionCreated,
    SessionView,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)

STATUS_CODES = {
    SessionNotFound: 404,
    Unauthorized: 403,
    AlreadyActive: 409,
    AlreadyStaked: 409,
    CapacityReached: 409,
    SessionNotForming: 409,
    InvalidStateTransition: 409,
    InvalidAmount: 400,
    InvalidSelection: 400,
    NotEnoughParticipants: 400,
    UnknownGame: 400,
    InsufficientFunds: 402,
}


def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager


def to_http_error(e: CasinoException) -> HTTPException:
    for exc_type, status_code in STATUS_CODES.items():
        if isinstance(e, exc_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.post("/{scope_key}", response_model=SessionCreated)
async def create_session(
    scope_key: str,
    data: SessionCreate,
    manager: SessionManager = Depends(get_manager),
):
    """
    建立場次（主持人 endpoint）

    流程：
    1. 依遊戲種類組出場次設定（Heist 需要 entry_fee）
    2. SessionManager 建立場次並排程截止計時器

    返回：
        - session_id
        - remaining_seconds: 報名剩餘秒數
    """
    params = data.model_dump(
        exclude={"owner_id", "game_kind"},
        exclude_none=True,
    )
    try:
        config = build_config(data.game_kind, manager.random, **params)
        session_id = await manager.create_session(scope_key, data.owner_id, config)
        view = manager.get_snapshot(scope_key)

        return SessionCreated(
            session_id=session_id,
            scope_key=scope_key,
            phase=view.phase,
            remaining_seconds=view.remaining_seconds,
        )

    except CasinoException as e:
        raise to_http_error(e)
    except (TypeError, ValueError) as e:
        # 該遊戲不支援的參數、設定值不合理
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{scope_key}/join", response_model=ActionResponse)
async def join_session(
    scope_key: str,
    data: JoinRequest,
    manager: SessionManager = Depends(get_manager),
):
    """
    加入場次並下注

    注意：
    - 同一玩家重複加入 -> 409
    - 餘額不足 -> 402，場次其他狀態不變
    - 人數剛好額滿時會直接開始回合，返回時 phase 已是終態
    """
    try:
        await manager.join_session(scope_key, data.participant_id, data.amount, data.selection)
        view = manager.get_snapshot(scope_key, include_finished=True)
        return ActionResponse(status="ok", phase=view.phase if view else None)

    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to join session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{scope_key}/start", response_model=ActionResponse)
async def force_start(
    scope_key: str,
    data: HostAction,
    manager: SessionManager = Depends(get_manager),
):
    """主持人提前開始（人數必須達到最低門檻）"""
    try:
        session = await manager.force_start(scope_key, data.requester_id)
        return ActionResponse(status="ok", phase=session.phase)

    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to start session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{scope_key}/cancel", response_model=ActionResponse)
async def cancel_session(
    scope_key: str,
    data: HostAction,
    manager: SessionManager = Depends(get_manager),
):
    """主持人取消，所有下注全額退款"""
    try:
        session = await manager.cancel_session(scope_key, data.requester_id)
        return ActionResponse(status="ok", phase=session.phase)

    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to cancel session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{scope_key}/extend", response_model=ActionResponse)
async def extend_deadline(
    scope_key: str,
    data: HostAction,
    seconds: float = Query(30, gt=0, le=300),
    manager: SessionManager = Depends(get_manager),
):
    """主持人延長報名時間"""
    try:
        await manager.extend_deadline(scope_key, data.requester_id, seconds)
        return ActionResponse(status="ok")

    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to extend session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{scope_key}", response_model=SessionView)
async def get_snapshot(
    scope_key: str,
    include_finished: bool = Query(False),
    manager: SessionManager = Depends(get_manager),
):
    """
    取得場次快照

    參數：
        include_finished: 沒有進行中的場次時，返回這個 scope 最近一個已結束的場次
    """
    view = manager.get_snapshot(scope_key, include_finished=include_finished)
    if view is None:
        raise HTTPException(status_code=404, detail="No session in this scope")
    return view
