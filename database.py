from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache, wraps
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./casino.db"
    log_level: str = "INFO"

    # 清道夫：多久掃一次、場次最長可以活多久（秒）
    sweep_interval_seconds: float = 30.0
    session_max_age_seconds: float = 600.0

    # 派彩失敗的重試上限與退避（秒，指數成長）
    settlement_max_attempts: int = 3
    settlement_backoff_seconds: float = 0.5

    # 新帳戶的初始籌碼
    starting_balance: int = 10_000

    model_config = SettingsConfigDict(env_file=".env")


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要特殊設定：connect_args={"check_same_thread": False}
# 帳本操作會在 threadpool 中執行，需要跨執行緒使用連線
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency：每個請求一個 Session（稽核紀錄查詢用），請求結束即關閉"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    帳本寫入的交易邊界：函式正常返回就 commit，拋出異常就 rollback 再往上拋

    範例：
        @transactional
        def apply_credit(db: Session, user_id, amount, ...):
            user = with_user_lock(user_id, db).first()
            user.balance += amount
            db.add(Transaction(...))

    注意：
        - 第一個參數（或 db= 關鍵字）必須是 Session
        - 函式內不要自己 commit；row lock 會一直持有到這裡 commit / rollback
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = args[0] if args and isinstance(args[0], Session) else kwargs.get("db")
        if db is None:
            raise ValueError(f"@transactional function {func.__name__} needs a db Session as first argument")

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Ledger transaction {func.__name__} rolled back: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
