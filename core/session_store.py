"""
Session Store：scope key -> 場次的記憶體登記表

職責：
1. 保證同一個 scope key（例如頻道）同時只有一個未結束的場次
2. 查詢 / 移除場次
3. 清道夫：找出存活過久的場次，避免計時器遺失時永久佔用 scope

不做的事：
- 不負責退款或狀態轉換（由 SessionManager 處理）
- 不寫入資料庫（場次本來就是短命物件）
"""
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from core.entities import Session, SessionConfig
from core.exceptions import AlreadyActive

logger = logging.getLogger(__name__)


class SessionStore:
    """場次登記表（由呼叫者建立並持有，不是全域單例）"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, scope_key: str) -> bool:
        return scope_key in self._sessions

    def create(self, scope_key: str, owner_id: str, config: SessionConfig) -> Session:
        """
        在 scope key 下建立新場次

        規則：
        - 已有未結束（FORMING / LOCKED / RESOLVING）的場次 -> AlreadyActive，既有場次不受影響
        - 殘留的已結束場次直接被取代

        返回：
            新建立的 Session（phase = FORMING）
        """
        existing = self._sessions.get(scope_key)
        if existing is not None and not existing.phase.is_terminal:
            logger.warning(
                f"Refusing to create session in {scope_key}: "
                f"{existing.id} is still {existing.phase.value}"
            )
            raise AlreadyActive(scope_key, existing.id)

        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            scope_key=scope_key,
            owner_id=owner_id,
            config=config,
            created_at=now,
            deadline_at=now + config.lobby_seconds,
        )
        self._sessions[scope_key] = session

        logger.info(
            f"Created {config.game_kind.value} session {session.id} in {scope_key} "
            f"(owner={owner_id}, deadline in {config.lobby_seconds}s)"
        )
        return session

    def get(self, scope_key: str) -> Optional[Session]:
        return self._sessions.get(scope_key)

    def find(self, session_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.id == session_id:
                return session
        return None

    def remove(self, scope_key: str, session_id: Optional[str] = None) -> Optional[Session]:
        """
        移除 scope key 下的場次

        若指定 session_id，只有目前登記的正是該場次時才移除，
        避免舊場次的收尾流程誤刪同一個 scope 的新場次
        """
        session = self._sessions.get(scope_key)
        if session is None:
            return None
        if session_id is not None and session.id != session_id:
            return None
        del self._sessions[scope_key]
        logger.info(f"Removed session {session.id} from {scope_key} ({session.phase.value})")
        return session

    def find_stale(self, max_age: float) -> List[Session]:
        """
        找出 created_at 超過 max_age 秒的場次（不看 deadline）

        只挑選不移除：呼叫者必須先取得場次鎖、確認場次仍登記在 scope 上，
        收尾完成後再透過 remove() 釋放 scope，
        否則進行中的回合會在 scope 被新場次佔用後才結算

        返回：
            過期場次列表（依建立順序）
        """
        cutoff = self._clock() - max_age
        return [s for s in self._sessions.values() if s.created_at <= cutoff]
