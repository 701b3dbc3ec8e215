from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models import GameKind, SessionPhase


# ============ Session ============

class SessionCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    game_kind: GameKind
    lobby_seconds: Optional[float] = Field(None, gt=0, le=600)
    min_participants: Optional[int] = Field(None, ge=1)
    capacity: Optional[int] = Field(None, ge=1)
    # Heist 專用
    entry_fee: Optional[int] = None
    target: Optional[str] = None
    risk: Optional[str] = None
    approach: Optional[str] = None
    # Team Shift 專用
    shift: Optional[str] = None


class SessionCreated(BaseModel):
    session_id: str
    scope_key: str
    phase: SessionPhase
    remaining_seconds: float


class JoinRequest(BaseModel):
    participant_id: str = Field(..., min_length=1)
    amount: int
    selection: int = 0


class HostAction(BaseModel):
    requester_id: str = Field(..., min_length=1)


class ActionResponse(BaseModel):
    status: str = "ok"
    phase: Optional[SessionPhase] = None


class StakeView(BaseModel):
    participant_id: str
    selection: int
    amount: int


class PayoutView(BaseModel):
    participant_id: str
    selection: int
    stake: int
    amount: int


class OutcomeView(BaseModel):
    odds: Dict[str, str]
    detail: Dict[str, Any]


class SessionView(BaseModel):
    """呈現層用的唯讀快照：不需要回頭存取任何內部物件就能重繪"""
    session_id: str
    scope_key: str
    owner_id: str
    game_kind: GameKind
    phase: SessionPhase
    participants: List[StakeView]
    min_participants: int
    capacity: int
    remaining_seconds: float
    total_staked: int
    options: Dict[str, Any]
    outcome: Optional[OutcomeView] = None
    payouts: Optional[List[PayoutView]] = None
    total_disbursed: Optional[int] = None
    partial_failure: bool = False
    state_version: int


# ============ Accounts / Settlements ============

class AccountResponse(BaseModel):
    user_id: str
    balance: int


class GrantRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: Optional[str] = None


class FlaggedSettlement(BaseModel):
    session_id: str
    scope_key: str
    game_kind: GameKind
    next_index: int
    failed_entries: List[PayoutView]
