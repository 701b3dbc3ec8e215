"""
資料模型

- Enum：場次階段、遊戲種類、交易類型
- ORM：User（籌碼餘額）、Transaction（每一筆進出帳）、EventLog（稽核紀錄）

注意：場次本身只存在記憶體中（見 core.session_store），資料庫只保存經濟帳本與稽核軌跡
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from database import Base


class SessionPhase(str, enum.Enum):
    FORMING = "FORMING"
    LOCKED = "LOCKED"
    RESOLVING = "RESOLVING"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.SETTLED, SessionPhase.CANCELLED)


class GameKind(str, enum.Enum):
    HORSE_RACE = "HORSE_RACE"
    HEIST = "HEIST"
    TEAM_SHIFT = "TEAM_SHIFT"


class TransactionType(str, enum.Enum):
    STAKE = "STAKE"
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    GRANT = "GRANT"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    transactions = relationship("Transaction", back_populates="user")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Enum(TransactionType), nullable=False)
    game = Column(String, nullable=True)
    amount = Column(BigInteger, nullable=False)
    before_balance = Column(BigInteger, nullable=False)
    after_balance = Column(BigInteger, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="transactions")


class EventLog(Base):
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, index=True)
    scope_key = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
