"""
狀態機：集中管理場次的所有狀態轉換

FORMING ──> LOCKED ──> RESOLVING ──> SETTLED
   │           │
   └───────────┴──────> CANCELLED

原則：
- 只能往前走，不能倒退
- 每次轉換都會提升 state_version，並通知 on_phase_change 監聽者
- 監聽者失敗只記 log，不影響狀態轉換本身
"""
import logging
from typing import Callable, Dict, FrozenSet, List

from models import SessionPhase
from core.entities import Session
from core.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)

PhaseListener = Callable[[Session, SessionPhase, SessionPhase], None]

TRANSITIONS: Dict[SessionPhase, FrozenSet[SessionPhase]] = {
    SessionPhase.FORMING: frozenset({SessionPhase.LOCKED, SessionPhase.CANCELLED}),
    # LOCKED -> CANCELLED 只在模擬失敗時使用（會全額退款）
    SessionPhase.LOCKED: frozenset({SessionPhase.RESOLVING, SessionPhase.CANCELLED}),
    SessionPhase.RESOLVING: frozenset({SessionPhase.SETTLED}),
    SessionPhase.SETTLED: frozenset(),
    SessionPhase.CANCELLED: frozenset(),
}


class SessionStateMachine:
    """場次狀態機（持有 on_phase_change 監聽者列表）"""

    def __init__(self):
        self._listeners: List[PhaseListener] = []

    def add_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PhaseListener) -> None:
        self._listeners.remove(listener)

    @staticmethod
    def can_transition(current: SessionPhase, target: SessionPhase) -> bool:
        return target in TRANSITIONS[current]

    def transition(self, session: Session, target: SessionPhase) -> Session:
        """
        轉換場次狀態

        流程：
        1. 檢查轉換是否合法
        2. 更新 phase 與 state_version
        3. 通知監聽者

        異常：
            InvalidStateTransition: 轉換不合法（例如 SETTLED -> FORMING）
        """
        previous = session.phase
        if not self.can_transition(previous, target):
            raise InvalidStateTransition(
                f"Session {session.id}: cannot transition {previous.value} -> {target.value}"
            )

        session.phase = target
        session.bump_version()
        logger.info(f"Session {session.id} ({session.scope_key}): {previous.value} -> {target.value}")

        self._notify(session, previous, target)
        return session

    def _notify(self, session: Session, previous: SessionPhase, current: SessionPhase) -> None:
        for listener in list(self._listeners):
            try:
                listener(session, previous, current)
            except Exception as e:
                logger.error(
                    f"Phase listener {getattr(listener, '__name__', listener)!r} failed "
                    f"for session {session.id}: {e}",
                    exc_info=True
                )
