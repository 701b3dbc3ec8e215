"""
Session history service.

Writes an ``EventLog`` row for every phase change so operators get an audit
trail of what each session did (who staked, what the outcome was, what was
paid and what is still owed after a partial failure). Sessions themselves stay
in memory; this is the durable record.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session as DbSession

from database import transactional
from models import EventLog, SessionPhase
from core.entities import Session

logger = logging.getLogger(__name__)


def build_event_data(session: Session, previous: SessionPhase, current: SessionPhase) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "game_kind": session.config.game_kind.value,
        "from": previous.value,
        "to": current.value,
        "participants": [
            {"participant_id": s.participant_id, "selection": s.selection, "amount": s.amount}
            for s in session.participants.values()
        ],
        "total_staked": session.total_staked,
    }

    if session.outcome is not None and current.is_terminal:
        data["outcome"] = {str(k): str(v) for k, v in session.outcome.odds.items()}

    if session.settlement is not None and current.is_terminal:
        state = session.settlement
        data["settlement"] = {
            "kind": state.kind.value,
            "payouts": [
                {"participant_id": p.participant_id, "amount": p.amount}
                for p in state.result.payouts
            ],
            "total_disbursed": state.result.total_disbursed,
            "next_index": state.next_index,
            "failed_entries": [
                {"participant_id": p.participant_id, "amount": p.amount}
                for p in state.failed_entries
            ],
        }
        data["partial_failure"] = session.partial_failure

    return data


@transactional
def record_event(db: DbSession, session_id: str, scope_key: str, event_type: str, data: Dict[str, Any]) -> EventLog:
    event = EventLog(session_id=session_id, scope_key=scope_key, event_type=event_type, data=data)
    db.add(event)
    return event


def get_session_history(session_id: str, db: DbSession) -> List[Dict[str, Any]]:
    """Return the ordered audit trail of one session."""
    events = (
        db.query(EventLog)
        .filter(EventLog.session_id == session_id)
        .order_by(EventLog.id)
        .all()
    )
    return [
        {
            "event_type": e.event_type,
            "data": e.data,
            "created_at": e.created_at.isoformat(),
        }
        for e in events
    ]


class EventRecorder:
    """
    ``on_phase_change`` listener persisting each transition.

    Listeners run synchronously inside the state machine, on the event loop,
    so the recorder only snapshots the event there and queues it. A single
    worker task drains the queue and does the database write in the thread
    pool, which keeps rows in transition order. A failed write is logged and
    dropped; it never reaches the session flow.
    """

    def __init__(self, session_factory: Callable[[], DbSession]):
        self.session_factory = session_factory
        self._queue: "asyncio.Queue[Tuple[str, str, str, Dict[str, Any]]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def __call__(self, session: Session, previous: SessionPhase, current: SessionPhase) -> None:
        event_type = f"SESSION_{current.value}"
        if current == SessionPhase.SETTLED and session.partial_failure:
            event_type = "SESSION_SETTLED_PARTIAL_FAILURE"

        data = build_event_data(session, previous, current)
        self._queue.put_nowait((session.id, session.scope_key, event_type, data))
        self._ensure_worker()

        if session.partial_failure and current.is_terminal:
            logger.error(
                f"Session {session.id} ({session.scope_key}) ended {current.value} with "
                f"unpaid entries; operator reconciliation required"
            )

    async def flush(self) -> None:
        """Wait until every queued event has been written (or logged as failed)."""
        if not self._queue.empty():
            self._ensure_worker()
        await self._queue.join()

    async def stop(self) -> None:
        """Write what is still queued, then stop the worker."""
        await self.flush()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            session_id, scope_key, event_type, data = await self._queue.get()
            try:
                await run_in_threadpool(self._write, session_id, scope_key, event_type, data)
            except Exception as e:
                logger.error(f"Failed to record {event_type} for session {session_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def _write(self, session_id: str, scope_key: str, event_type: str, data: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            record_event(db, session_id, scope_key, event_type, data)
        finally:
            db.close()
