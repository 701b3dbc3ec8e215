"""
Participant Staging：報名階段的下注登記

規則：
- 每位玩家在同一場次只能有一筆 Stake
- 人數上限到了就不再接受
- 金額必須是正整數，且落在遊戲設定的範圍內
- 驗證全部通過後才呼叫 ledger.debit（即時餘額檢查 + 扣款是同一個原子操作），
  扣款成功才把 Stake 加入場次；餘額不足時場次完全不受影響

退款由 SettlementEngine.refund 處理（與派彩共用同一套重試機制）
"""
import logging

from models import SessionPhase
from core.entities import Session, Stake
from core.exceptions import (
    AlreadyStaked,
    CapacityReached,
    InvalidAmount,
    InvalidSelection,
    SessionNotForming,
)
from services.ledger_service import Ledger

logger = logging.getLogger(__name__)


class ParticipantStaging:

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    @staticmethod
    def validate(session: Session, participant_id: str, amount, selection, now: float) -> None:
        """
        檢查下注是否合法（不碰帳本）

        檢查順序：
        1. 場次必須在 FORMING 且還沒過報名時間
        2. 玩家不能重複下注
        3. 人數未滿
        4. 金額合法
        5. 選項合法

        異常：
            SessionNotForming, AlreadyStaked, CapacityReached, InvalidAmount, InvalidSelection
        """
        if session.phase != SessionPhase.FORMING:
            raise SessionNotForming(
                f"Session {session.id} is {session.phase.value}, not accepting stakes"
            )
        if now >= session.deadline_at:
            raise SessionNotForming(f"Session {session.id} betting window has closed")

        if participant_id in session.participants:
            raise AlreadyStaked(participant_id)

        if session.is_full:
            raise CapacityReached(
                f"Session {session.id} is full ({session.config.capacity} participants)"
            )

        config = session.config
        # bool 是 int 的子類別，要先排除
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Stake must be a positive integer, got {amount!r}")
        if config.fixed_stake is not None and amount != config.fixed_stake:
            raise InvalidAmount(f"This session requires an entry fee of exactly {config.fixed_stake}")
        if amount < config.min_stake:
            raise InvalidAmount(f"Minimum stake is {config.min_stake}, got {amount}")
        if config.max_stake is not None and amount > config.max_stake:
            raise InvalidAmount(f"Maximum stake is {config.max_stake}, got {amount}")

        if isinstance(selection, bool) or not isinstance(selection, int):
            raise InvalidSelection(f"Selection must be an integer, got {selection!r}")
        if not 0 <= selection < config.selections:
            raise InvalidSelection(
                f"Selection {selection} out of range (0..{config.selections - 1})"
            )

    async def stage(
        self,
        session: Session,
        participant_id: str,
        amount: int,
        selection: int,
        now: float,
    ) -> Stake:
        """
        登記下注

        流程：
        1. 驗證（見 validate）
        2. ledger.debit 扣款（InsufficientFunds 會直接往上拋，場次不變）
        3. 加入 participants

        注意：
            呼叫者必須持有該場次的鎖，debit 期間不能有其他操作改動同一場次
        """
        self.validate(session, participant_id, amount, selection, now)

        await self.ledger.debit(participant_id, amount, game=session.config.game_kind.value)

        stake = Stake(
            participant_id=participant_id,
            amount=amount,
            selection=selection,
            timestamp=now,
        )
        session.participants[participant_id] = stake
        session.bump_version()

        logger.info(
            f"Participant {participant_id} staked {amount} on {selection} "
            f"in session {session.id} ({len(session.participants)}/{session.config.capacity})"
        )
        return stake
