"""
Session Manager：管理多人場次的完整生命週期

職責：
1. 建立場次（Store 佔用 scope + 排程報名截止計時器）
2. 玩家加入（Staging 驗證 + 扣款）
3. 開始回合（截止 / 主持人強制開始 / 人數滿）：LOCKED -> 模擬 -> RESOLVING -> 結算 -> SETTLED
4. 取消（主持人取消 / 人數不足）：全額退款 -> CANCELLED
5. 清道夫：回收卡住的場次
6. 提供唯讀快照給呈現層

原則：
- 所有狀態變更經過 StateMachine
- 同一場次的所有操作都持有該場次的鎖（SessionLocks），包含等待帳本 I/O 的期間
- 計時器是報名截止的唯一觸發來源；任何提前結束場次的路徑都要取消計時器
- 進入終態後立刻從 Store 移除，scope 馬上可以開新場次
"""
import inspect
import logging
import time
from typing import Callable, Dict, List, Optional

from models import SessionPhase
from schemas import OutcomeView, PayoutView, SessionView, StakeView
from core.entities import Session, SessionConfig, SettlementState, Stake
from core.exceptions import (
    NotEnoughParticipants,
    SessionNotFound,
    SessionNotForming,
    Unauthorized,
)
from core.locks import SessionLocks
from core.scheduler import DeadlineScheduler
from core.session_store import SessionStore
from core.staging import ParticipantStaging
from core.state_machine import PhaseListener, SessionStateMachine
from games import get_simulator
from services.ledger_service import Ledger
from services.random_service import RandomSource
from services.settlement_service import SettlementEngine

logger = logging.getLogger(__name__)


class SessionManager:
    """場次生命週期管理器（由應用程式建立並持有）"""

    def __init__(
        self,
        ledger: Ledger,
        random: Optional[RandomSource] = None,
        settlement: Optional[SettlementEngine] = None,
        clock: Callable[[], float] = time.time,
        max_age: float = 600.0,
    ):
        self.clock = clock
        self.max_age = max_age
        self.random = random or RandomSource()
        self.store = SessionStore(clock)
        self.scheduler = DeadlineScheduler(clock)
        self.state_machine = SessionStateMachine()
        self.locks = SessionLocks()
        self.staging = ParticipantStaging(ledger)
        self.settlement = settlement or SettlementEngine(ledger)

        # 派彩 / 退款在重試上限後仍有未入帳項目的場次，等待管理員處理
        self.flagged: Dict[str, Session] = {}
        # 每個 scope 最近一個已結束的場次（讓呈現層顯示結果）
        self._finished: Dict[str, Session] = {}

    def add_listener(self, listener: PhaseListener) -> None:
        """註冊 on_phase_change(session, previous, new) 監聽者"""
        self.state_machine.add_listener(listener)

    # ============ 對外操作 ============

    async def create_session(self, scope_key: str, owner_id: str, config: SessionConfig) -> str:
        """
        建立場次

        流程：
        1. 確認遊戲有對應的模擬器（提早失敗）
        2. Store 佔用 scope（已有進行中的場次 -> AlreadyActive）
        3. 排程報名截止計時器

        返回：
            session id

        異常：
            AlreadyActive, UnknownGame
        """
        get_simulator(config)
        session = self.store.create(scope_key, owner_id, config)
        self.scheduler.schedule(session.id, session.deadline_at, self.handle_deadline)
        return session.id

    async def join_session(
        self,
        scope_key: str,
        participant_id: str,
        amount: int,
        selection: int = 0,
    ) -> Stake:
        """
        加入場次並下注

        人數達到上限時會立刻鎖定並執行整個回合（呼叫會等到結算完成才返回）

        異常：
            SessionNotFound, SessionNotForming, AlreadyStaked, CapacityReached,
            InvalidAmount, InvalidSelection, InsufficientFunds
        """
        session = self._require(scope_key)
        async with self.locks.hold(session.id):
            stake = await self.staging.stage(session, participant_id, amount, selection, self.clock())

            if session.is_full:
                logger.info(f"Session {session.id} reached capacity, starting early")
                self.scheduler.cancel(session.id)
                await self._run_round(session)

        self._release(session)
        return stake

    async def force_start(self, scope_key: str, requester_id: str) -> Session:
        """
        主持人提前開始

        異常：
            SessionNotFound, Unauthorized, SessionNotForming, NotEnoughParticipants
        """
        session = self._require(scope_key)
        async with self.locks.hold(session.id):
            self._check_host(session, requester_id)
            if session.phase != SessionPhase.FORMING:
                raise SessionNotForming(f"Session {session.id} already {session.phase.value}")
            if not session.meets_minimum:
                raise NotEnoughParticipants(
                    f"Need at least {session.config.min_participants} participants, "
                    f"got {len(session.participants)}"
                )

            logger.info(f"Host {requester_id} force-started session {session.id}")
            self.scheduler.cancel(session.id)
            await self._run_round(session)

        self._release(session)
        return session

    async def cancel_session(self, scope_key: str, requester_id: str) -> Session:
        """
        主持人取消：返回前所有下注都已退款（或已排入重試）

        異常：
            SessionNotFound, Unauthorized, SessionNotForming
        """
        session = self._require(scope_key)
        async with self.locks.hold(session.id):
            self._check_host(session, requester_id)
            if session.phase != SessionPhase.FORMING:
                raise SessionNotForming(f"Session {session.id} already {session.phase.value}")

            logger.info(f"Host {requester_id} cancelled session {session.id}")
            self.scheduler.cancel(session.id)
            await self._cancel(session)

        self._release(session)
        return session

    async def extend_deadline(self, scope_key: str, requester_id: str, seconds: float) -> float:
        """主持人延長報名時間，重新排程計時器；返回新的 deadline"""
        if seconds <= 0:
            raise ValueError("seconds must be positive")

        session = self._require(scope_key)
        async with self.locks.hold(session.id):
            self._check_host(session, requester_id)
            if session.phase != SessionPhase.FORMING:
                raise SessionNotForming(f"Session {session.id} already {session.phase.value}")

            session.deadline_at += seconds
            session.bump_version()
            if not self.scheduler.reschedule(session.id, session.deadline_at):
                self.scheduler.schedule(session.id, session.deadline_at, self.handle_deadline)

        logger.info(f"Session {session.id} deadline extended by {seconds}s")
        return session.deadline_at

    def get_snapshot(self, scope_key: str, include_finished: bool = False) -> Optional[SessionView]:
        session = self.store.get(scope_key)
        if session is None and include_finished:
            session = self._finished.get(scope_key)
        if session is None:
            return None
        return self.build_view(session)

    def build_view(self, session: Session) -> SessionView:
        outcome = None
        if session.outcome is not None:
            outcome = OutcomeView(
                odds={str(k): str(v) for k, v in session.outcome.odds.items()},
                detail=session.outcome.detail,
            )

        payouts = None
        total_disbursed = None
        if session.settlement is not None:
            result = session.settlement.result
            payouts = [
                PayoutView(
                    participant_id=p.participant_id,
                    selection=p.selection,
                    stake=p.stake,
                    amount=p.amount,
                )
                for p in result.payouts
            ]
            total_disbursed = result.total_disbursed

        remaining = session.remaining_seconds(self.clock()) if session.phase == SessionPhase.FORMING else 0.0

        return SessionView(
            session_id=session.id,
            scope_key=session.scope_key,
            owner_id=session.owner_id,
            game_kind=session.config.game_kind,
            phase=session.phase,
            participants=[
                StakeView(participant_id=s.participant_id, selection=s.selection, amount=s.amount)
                for s in session.participants.values()
            ],
            min_participants=session.config.min_participants,
            capacity=session.config.capacity,
            remaining_seconds=remaining,
            total_staked=session.total_staked,
            options=session.config.options,
            outcome=outcome,
            payouts=payouts,
            total_disbursed=total_disbursed,
            partial_failure=session.partial_failure,
            state_version=session.state_version,
        )

    # ============ 清道夫 / 管理員 ============

    async def sweep_stale(self, max_age: Optional[float] = None) -> int:
        """
        回收存活超過 max_age 的場次

        - FORMING / LOCKED：全額退款 -> CANCELLED
        - RESOLVING：不退款（可能已有派彩入帳），標記 partial_failure -> SETTLED，交給管理員

        場次鎖被佔用（回合正在結算或有操作進行中）的場次留到下一輪再檢查；
        收尾與移出 Store 都在持有鎖的期間完成，scope 在收尾前不會被釋放

        返回：
            回收的場次數量
        """
        max_age = self.max_age if max_age is None else max_age
        cutoff = self.clock() - max_age
        for scope_key, session in list(self._finished.items()):
            if session.created_at <= cutoff:
                del self._finished[scope_key]

        removed = 0
        for session in self.store.find_stale(max_age):
            if self.locks.get(session.id).locked():
                logger.warning(
                    f"Stale session {session.id} in {session.scope_key} is busy "
                    f"({session.phase.value}), retrying on next sweep"
                )
                continue

            async with self.locks.hold(session.id):
                # 等鎖期間可能已經正常結束或被新場次取代
                if self.store.get(session.scope_key) is session and not session.phase.is_terminal:
                    logger.warning(
                        f"Sweeping stale session {session.id} in {session.scope_key} "
                        f"(phase={session.phase.value}, age={self.clock() - session.created_at:.0f}s)"
                    )
                    self.scheduler.cancel(session.id)
                    await self._reconcile_stale(session)
                    removed += 1
            self._release(session)

        return removed

    async def retry_settlement(self, session_id: str) -> SettlementState:
        """管理員重試：只處理尚未入帳的項目"""
        session = self.flagged.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)

        async with self.locks.hold(session.id):
            state = await self.settlement.resume(session)

        if state.complete:
            del self.flagged[session_id]
            logger.info(f"Settlement of session {session_id} reconciled")
        self.locks.discard(session.id)
        return state

    def flagged_sessions(self) -> List[Session]:
        return list(self.flagged.values())

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()

    # ============ 內部流程（呼叫者必須持有場次鎖） ============

    async def handle_deadline(self, session_id: str) -> None:
        session = self.store.find(session_id)
        if session is None:
            logger.debug(f"Deadline fired for unknown session {session_id}, ignoring")
            return

        async with self.locks.hold(session.id):
            # 等鎖期間可能已經被強制開始或取消
            if session.phase != SessionPhase.FORMING or self.store.get(session.scope_key) is not session:
                logger.debug(f"Deadline for session {session_id} no longer applies ({session.phase.value})")
                return

            if session.meets_minimum:
                logger.info(f"Deadline reached for session {session.id}, starting round")
                await self._run_round(session)
            else:
                # 人數不足：退款取消優先於開一個不完整的回合
                logger.info(
                    f"Deadline reached for session {session.id} with "
                    f"{len(session.participants)}/{session.config.min_participants} participants, cancelling"
                )
                await self._cancel(session)

        self._release(session)

    async def _run_round(self, session: Session) -> None:
        """
        LOCKED -> 模擬 -> RESOLVING -> 結算 -> SETTLED

        模擬失敗時全額退款並取消，場次不會卡在非終態
        """
        self.state_machine.transition(session, SessionPhase.LOCKED)

        simulate = get_simulator(session.config)
        try:
            outcome = simulate(list(session.participants.values()), self.random)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            logger.error(f"Simulation failed for session {session.id}: {e}", exc_info=True)
            await self._cancel(session)
            return

        session.record_outcome(outcome)
        self.state_machine.transition(session, SessionPhase.RESOLVING)

        state = await self.settlement.settle(session)
        if not state.complete:
            self.flagged[session.id] = session

        self.state_machine.transition(session, SessionPhase.SETTLED)
        self._evict(session)

    async def _cancel(self, session: Session) -> None:
        state = await self.settlement.refund(session)
        if not state.complete:
            self.flagged[session.id] = session

        self.state_machine.transition(session, SessionPhase.CANCELLED)
        self._evict(session)

    async def _reconcile_stale(self, session: Session) -> None:
        if session.phase in (SessionPhase.FORMING, SessionPhase.LOCKED):
            await self._cancel(session)
        elif session.phase == SessionPhase.RESOLVING:
            session.partial_failure = True
            self.flagged[session.id] = session
            logger.error(f"Session {session.id} stuck in RESOLVING, forcing SETTLED for reconciliation")
            self.state_machine.transition(session, SessionPhase.SETTLED)
            self._evict(session)

    def _evict(self, session: Session) -> None:
        self.scheduler.cancel(session.id)
        self.store.remove(session.scope_key, session.id)
        self._finished[session.scope_key] = session

    def _release(self, session: Session) -> None:
        # 鎖已釋放後才能丟棄
        if session.phase.is_terminal and session.id not in self.flagged:
            self.locks.discard(session.id)

    def _require(self, scope_key: str) -> Session:
        session = self.store.get(scope_key)
        if session is None or session.phase.is_terminal:
            raise SessionNotFound(scope_key)
        return session

    @staticmethod
    def _check_host(session: Session, requester_id: str) -> None:
        if requester_id != session.owner_id:
            logger.warning(f"{requester_id} is not the host of session {session.id}")
            raise Unauthorized(f"Only the host ({session.owner_id}) can do this")
