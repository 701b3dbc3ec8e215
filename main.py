import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import Base, SessionLocal, engine, get_settings
from api import accounts, sessions
from core.session_manager import SessionManager
from services.history_service import EventRecorder
from services.ledger_service import SqlLedger
from services.settlement_service import SettlementEngine

logger = logging.getLogger(__name__)


async def sweep_forever(manager: SessionManager, interval: float):
    """定期回收卡住的場次（計時器遺失時的最後保障）"""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await manager.sweep_stale()
            if removed:
                logger.warning(f"Sweeper reclaimed {removed} stale session(s)")
        except Exception as e:
            logger.error(f"Sweeper failed: {e}", exc_info=True)


def create_app(session_factory=SessionLocal, bind=engine, settings=None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: 建立資料表、組裝場次管理器、啟動清道夫
        Base.metadata.create_all(bind=bind)

        ledger = SqlLedger(session_factory, starting_balance=settings.starting_balance)
        manager = SessionManager(
            ledger,
            settlement=SettlementEngine(
                ledger,
                max_attempts=settings.settlement_max_attempts,
                backoff_seconds=settings.settlement_backoff_seconds,
            ),
            max_age=settings.session_max_age_seconds,
        )
        recorder = EventRecorder(session_factory)
        manager.add_listener(recorder)

        app.state.ledger = ledger
        app.state.recorder = recorder
        app.state.manager = manager
        sweeper = asyncio.create_task(sweep_forever(manager, settings.sweep_interval_seconds))

        yield

        # Shutdown: 停止清道夫與所有計時器，寫完排隊中的事件紀錄
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await manager.shutdown()
        await recorder.stop()

    app = FastAPI(
        title="Casino Session API",
        description="Time-boxed multiplayer casino sessions (horse racing, heists, team shifts) on a shared chip economy",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure this properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(sessions.router)
    app.include_router(accounts.router)

    @app.get("/")
    def root():
        return {"message": "Casino Session API", "status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
