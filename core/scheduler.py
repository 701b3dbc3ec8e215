"""
Deadline Scheduler：每個場次一個只觸發一次、可取消的計時器

建立在 asyncio event loop 的 call_later 之上：
- schedule(session_id, fire_at, handler)：fire_at 是絕對時間（與 clock 同一時間軸）
- cancel(session_id)：提前開始、主持人取消、清道夫移除時都必須呼叫
- 觸發時先把計時器從表中移除，再執行 handler，保證只觸發一次

沒有輪詢迴圈：計時器是報名截止的唯一觸發來源
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

DeadlineHandler = Callable[[str], Awaitable[None]]


@dataclass
class _Timer:
    fire_at: float
    handler: DeadlineHandler
    handle: asyncio.TimerHandle


class DeadlineScheduler:

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._timers: Dict[str, _Timer] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(self, session_id: str, fire_at: float, handler: DeadlineHandler) -> None:
        """
        排程一個計時器（同一個 session_id 重複排程會取代舊的）

        注意：必須在 event loop 內呼叫
        """
        self.cancel(session_id)

        loop = asyncio.get_running_loop()
        delay = max(0.0, fire_at - self._clock())
        handle = loop.call_later(delay, self._fire, session_id)
        self._timers[session_id] = _Timer(fire_at=fire_at, handler=handler, handle=handle)

        logger.debug(f"Scheduled deadline for session {session_id} in {delay:.2f}s")

    def reschedule(self, session_id: str, fire_at: float) -> bool:
        """延長（或提前）已排程的計時器；沒有計時器時返回 False"""
        timer = self._timers.get(session_id)
        if timer is None:
            return False
        self.schedule(session_id, fire_at, timer.handler)
        return True

    def cancel(self, session_id: str) -> bool:
        timer = self._timers.pop(session_id, None)
        if timer is None:
            return False
        timer.handle.cancel()
        logger.debug(f"Cancelled deadline for session {session_id}")
        return True

    def pending(self, session_id: str) -> bool:
        return session_id in self._timers

    def fire_at(self, session_id: str) -> Optional[float]:
        timer = self._timers.get(session_id)
        return timer.fire_at if timer else None

    def _fire(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is None:
            return

        task = asyncio.get_running_loop().create_task(timer.handler(session_id))
        self._running.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Deadline handler failed: {exc}", exc_info=exc)

    async def shutdown(self) -> None:
        """取消所有計時器，並等待正在執行的 handler 結束"""
        for session_id in list(self._timers):
            self.cancel(session_id)
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
