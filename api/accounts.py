"""
Account & Settlement API Endpoints

職責：
1. 查詢玩家餘額（第一次查詢時自動開戶）
2. 管理員發放籌碼
3. 管理員對帳：列出部分派彩失敗的場次、重試、查詢場次稽核紀錄
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from api.sessions import get_manager, to_http_error
from core.exceptions import CasinoException
from core.session_manager import SessionManager
from database import get_db
from schemas import AccountResponse, FlaggedSettlement, GrantRequest, PayoutView
from services.history_service import get_session_history
from services.ledger_service import SqlLedger

router = APIRouter(prefix="/api", tags=["accounts"])
logger = logging.getLogger(__name__)


def get_ledger(request: Request) -> SqlLedger:
    return request.app.state.ledger


@router.get("/accounts/{user_id}", response_model=AccountResponse)
def get_account(user_id: str, ledger: SqlLedger = Depends(get_ledger)):
    try:
        return AccountResponse(user_id=user_id, balance=ledger.balance_sync(user_id))
    except Exception as e:
        logger.error(f"Failed to load account {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/accounts/{user_id}/grant", response_model=AccountResponse)
def grant_chips(user_id: str, data: GrantRequest, ledger: SqlLedger = Depends(get_ledger)):
    """管理員發放籌碼"""
    try:
        balance = ledger.grant(user_id, data.amount, data.description)
        logger.info(f"Granted {data.amount} chips to {user_id}")
        return AccountResponse(user_id=user_id, balance=balance)
    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to grant chips to {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


def _flagged_view(session) -> FlaggedSettlement:
    state = session.settlement
    return FlaggedSettlement(
        session_id=session.id,
        scope_key=session.scope_key,
        game_kind=session.config.game_kind,
        next_index=state.next_index if state else 0,
        failed_entries=[
            PayoutView(
                participant_id=p.participant_id,
                selection=p.selection,
                stake=p.stake,
                amount=p.amount,
            )
            for p in (state.failed_entries if state else ())
        ],
    )


@router.get("/settlements/flagged", response_model=list[FlaggedSettlement])
async def list_flagged(manager: SessionManager = Depends(get_manager)):
    """列出需要管理員對帳的場次"""
    return [_flagged_view(s) for s in manager.flagged_sessions()]


@router.post("/settlements/{session_id}/retry", response_model=FlaggedSettlement)
async def retry_settlement(session_id: str, manager: SessionManager = Depends(get_manager)):
    """
    重試未完成的派彩

    只處理尚未入帳的項目；已入帳的不會重複發放
    返回的 failed_entries 為空表示已全部入帳
    """
    try:
        session = manager.flagged.get(session_id)
        await manager.retry_settlement(session_id)
        return _flagged_view(session)
    except CasinoException as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Failed to retry settlement {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/history/{session_id}")
def session_history(session_id: str, db: Session = Depends(get_db)):
    """場次的稽核紀錄（每次狀態轉換一筆）"""
    history = get_session_history(session_id, db)
    if not history:
        raise HTTPException(status_code=404, detail="No history for this session")
    return history
