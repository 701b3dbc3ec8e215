"""
記憶體內的場次資料結構

Session 是短命的遊戲物件，只存在 SessionStore 中，不寫入資料庫。
Stake / Outcome / Payout 都是不可變的值物件（frozen dataclass）。
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from models import GameKind, SessionPhase, TransactionType
from core.exceptions import InvalidStateTransition

Odds = Union[Decimal, str, int, float]


@dataclass(frozen=True)
class SessionConfig:
    """
    一個場次的規則

    參數：
        game_kind: 遊戲種類（決定使用哪個模擬器）
        min_participants: 開始所需的最少人數
        capacity: 人數上限（達到即立刻鎖定）
        lobby_seconds: 報名時間（秒）
        min_stake / max_stake: 下注金額範圍
        fixed_stake: 固定參加費（例如 Heist），設定後只接受這個金額
        selections: 可選項目數量，selection 必須落在 [0, selections)
        options: 遊戲專屬設定（馬匹列表、Heist 目標等），會出現在 snapshot 中
    """
    game_kind: GameKind
    min_participants: int
    capacity: int
    lobby_seconds: float
    min_stake: int = 1
    max_stake: Optional[int] = None
    fixed_stake: Optional[int] = None
    selections: int = 1
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.min_participants < 1:
            raise ValueError("min_participants must be >= 1")
        if self.capacity < self.min_participants:
            raise ValueError("capacity must be >= min_participants")
        if self.lobby_seconds <= 0:
            raise ValueError("lobby_seconds must be positive")
        if self.selections < 1:
            raise ValueError("selections must be >= 1")


@dataclass(frozen=True)
class Stake:
    participant_id: str
    amount: int
    selection: int
    timestamp: float


@dataclass(frozen=True)
class Outcome:
    """
    模擬結果

    odds: selection -> 賠率。不在 odds 裡的 selection 一律視為輸（派彩 0）
    detail: 給呈現層用的額外資訊（名次、Heist 各階段結果等），不參與派彩計算
    """
    odds: Dict[int, Odds]
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Payout:
    participant_id: str
    selection: int
    stake: int
    amount: int


@dataclass(frozen=True)
class SettlementResult:
    payouts: Tuple[Payout, ...]

    @property
    def total_disbursed(self) -> int:
        return sum(p.amount for p in self.payouts)


@dataclass
class SettlementState:
    """派彩進度：next_index 之前的項目都已成功入帳（或金額為 0）"""
    result: SettlementResult
    kind: TransactionType = TransactionType.PAYOUT
    next_index: int = 0
    attempts: int = 0  # 目前這一筆的失敗次數，入帳成功後歸零
    failed_entries: Tuple[Payout, ...] = ()

    @property
    def complete(self) -> bool:
        return self.next_index >= len(self.result.payouts)


@dataclass
class Session:
    id: str
    scope_key: str
    owner_id: str
    config: SessionConfig
    created_at: float
    deadline_at: float
    phase: SessionPhase = SessionPhase.FORMING
    # dict 保留插入順序 = 加入順序
    participants: Dict[str, Stake] = field(default_factory=dict)
    outcome: Optional[Outcome] = None
    settlement: Optional[SettlementState] = None
    partial_failure: bool = False
    state_version: int = 0

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.config.capacity

    @property
    def meets_minimum(self) -> bool:
        return len(self.participants) >= self.config.min_participants

    @property
    def total_staked(self) -> int:
        return sum(s.amount for s in self.participants.values())

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.deadline_at - now)

    def record_outcome(self, outcome: Outcome) -> None:
        if self.outcome is not None:
            raise InvalidStateTransition(f"Session {self.id} already has an outcome")
        self.outcome = outcome

    def bump_version(self) -> int:
        self.state_version += 1
        return self.state_version
