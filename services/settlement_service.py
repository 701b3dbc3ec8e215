"""
結算服務：計算派彩並透過帳本入帳，每個場次只做一次

冪等性：
- session.settlement 就是冪等記錄（以場次 id 為單位）
- 第二次呼叫 settle() 直接返回第一次的結果，不會再碰帳本

部分失敗：
- next_index 之前的項目都已入帳，失敗後只從 next_index 繼續
- 單一項目最多重試 max_attempts 次（指數退避），仍失敗就把剩下的項目記到
  failed_entries，並設定 session.partial_failure，交給管理員處理
- 已入帳的項目永遠不會被沖銷或重複入帳
"""
import asyncio
import logging
from typing import Awaitable, Callable

from models import TransactionType
from core.entities import Session, SettlementResult, SettlementState
from core.exceptions import DisbursementFailure, InvalidStateTransition
from services.ledger_service import Ledger
from services.payoff_service import calculate_payouts, calculate_refunds

logger = logging.getLogger(__name__)


class SettlementEngine:

    def __init__(
        self,
        ledger: Ledger,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @staticmethod
    def compute(session: Session) -> SettlementResult:
        """
        純計算：只依賴 participants 與 outcome

        異常：
            InvalidStateTransition: 還沒有模擬結果
        """
        if session.outcome is None:
            raise InvalidStateTransition(f"Session {session.id} has no outcome to settle")
        return calculate_payouts(session.participants.values(), session.outcome)

    async def settle(self, session: Session) -> SettlementState:
        """
        計算並發放派彩（冪等）

        流程：
        1. 已經結算過 -> 直接返回記錄
        2. 計算派彩，寫入 session.settlement
        3. 依序入帳（金額 0 的項目跳過）

        返回：
            SettlementState（complete=False 表示有項目在重試上限後仍失敗）
        """
        if session.settlement is not None:
            logger.warning(f"Session {session.id} already settled, returning recorded result")
            return session.settlement

        result = self.compute(session)
        session.settlement = SettlementState(result=result, kind=TransactionType.PAYOUT)

        logger.info(
            f"Settling session {session.id}: {len(result.payouts)} entries, "
            f"total {result.total_disbursed} (pool {session.total_staked})"
        )
        return await self._disburse(session)

    async def refund(self, session: Session) -> SettlementState:
        """
        取消時全額退款（冪等，每筆 Stake 只退一次）

        與派彩共用同一套進度記錄與重試規則
        """
        if session.settlement is not None:
            logger.warning(f"Session {session.id} already refunded/settled, skipping refund")
            return session.settlement

        result = calculate_refunds(session.participants.values())
        session.settlement = SettlementState(result=result, kind=TransactionType.REFUND)

        logger.info(
            f"Refunding session {session.id}: {len(result.payouts)} stakes, "
            f"total {result.total_disbursed}"
        )
        return await self._disburse(session)

    async def resume(self, session: Session) -> SettlementState:
        """
        管理員重試：只處理 next_index 之後尚未入帳的項目

        異常：
            InvalidStateTransition: 場次從未開始結算
        """
        state = session.settlement
        if state is None:
            raise InvalidStateTransition(f"Session {session.id} has no settlement to resume")
        if state.complete:
            return state

        state.attempts = 0
        logger.info(f"Resuming settlement of session {session.id} from entry #{state.next_index}")
        await self._disburse(session)
        if state.complete:
            session.partial_failure = False
        return state

    async def _disburse(self, session: Session) -> SettlementState:
        state = session.settlement
        payouts = state.result.payouts
        game = session.config.game_kind.value

        while state.next_index < len(payouts):
            payout = payouts[state.next_index]
            if payout.amount == 0:
                state.next_index += 1
                continue

            try:
                await self.ledger.credit(payout.participant_id, payout.amount, game=game, kind=state.kind)
            except Exception as e:
                state.attempts += 1
                failure = DisbursementFailure(session.id, state.next_index, payout.participant_id)

                if state.attempts >= self.max_attempts:
                    state.failed_entries = tuple(p for p in payouts[state.next_index:] if p.amount > 0)
                    session.partial_failure = True
                    logger.error(
                        f"{failure}: giving up after {state.attempts} attempts, "
                        f"{len(state.failed_entries)} entries left for operator reconciliation",
                        exc_info=True
                    )
                    return state

                delay = self.backoff_seconds * (2 ** (state.attempts - 1))
                logger.warning(f"{failure}: {e}; retrying in {delay:.2f}s (attempt {state.attempts})")
                await self._sleep(delay)
                continue

            state.next_index += 1
            state.attempts = 0

        state.failed_entries = ()
        return state
