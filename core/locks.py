"""
並發控制工具

兩層鎖：
1. 場次鎖（記憶體）：每個場次一把 asyncio.Lock，
   加入、強制開始、取消、截止處理、整個結算流程都要持有，
   確保同一場次同時只有一個操作在進行（包含等待帳本 I/O 的期間）
2. 帳戶鎖（資料庫）：使用 SELECT ... FOR UPDATE 鎖定 User row，
   防止同一玩家在多個場次同時下注時超扣
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy.orm import Session, Query

from models import User


class SessionLocks:
    """
    場次鎖登記表（以 session id 為 key）

    範例：
        async with locks.hold(session.id):
            # 驗證 + 扣款 + 加入，整段不會被截止計時器插隊
            ...

    注意：
        - asyncio.Lock 依照等待順序放行，所以加入請求會依收到的順序套用
        - 場次結束後呼叫 discard() 釋放記憶體
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self.get(session_id)
        async with lock:
            yield

    def discard(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        # 還有人在等的鎖不能丟，否則等待者與新請求會拿到不同的鎖
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._locks


def with_user_lock(user_id: str, db: Session) -> Query:
    """
    鎖定一個 User（行級鎖）

    使用場景：
    - 扣款 / 入帳時讀取即時餘額並更新

    範例：
        user = with_user_lock(user_id, db).first()
        if user.balance < amount:
            ...
        user.balance -= amount
        db.commit()

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - SQLite 會忽略 FOR UPDATE（單一寫入者），PostgreSQL 才有實際效果
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(User).filter(
        User.id == user_id
    ).with_for_update(nowait=False)
