"""
Ledger service: the persistent chip balance behind every stake and payout.

The orchestrator only sees the async ``Ledger`` protocol (``debit`` / ``credit``).
``SqlLedger`` implements it on top of SQLAlchemy: each call is one
``@transactional`` unit that locks the user row, updates the balance and
writes a ``Transaction`` row with before/after balances. Blocking DB work runs
in the threadpool so the event loop keeps serving timers and other sessions.
"""
import logging
from typing import Callable, Optional, Protocol

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.exceptions import InsufficientFunds, InvalidAmount
from core.locks import with_user_lock
from database import transactional
from models import Transaction, TransactionType, User

logger = logging.getLogger(__name__)


class Ledger(Protocol):
    async def debit(self, user_id: str, amount: int, game: Optional[str] = None) -> None:
        """Take ``amount`` from the live balance or raise InsufficientFunds."""

    async def credit(
        self,
        user_id: str,
        amount: int,
        game: Optional[str] = None,
        kind: TransactionType = TransactionType.PAYOUT,
    ) -> None:
        """Add ``amount`` to the balance."""


def _locked_user(db: Session, user_id: str, starting_balance: int) -> User:
    user = with_user_lock(user_id, db).first()
    if user is None:
        user = User(id=user_id, balance=starting_balance)
        db.add(user)
        db.flush()
        logger.info(f"Opened account {user_id} with {starting_balance} chips")
    return user


@transactional
def ensure_account(db: Session, user_id: str, starting_balance: int) -> User:
    return _locked_user(db, user_id, starting_balance)


@transactional
def apply_debit(
    db: Session,
    user_id: str,
    amount: int,
    game: Optional[str],
    starting_balance: int,
) -> Optional[Transaction]:
    """
    Debit against the live balance.

    Returns None (and changes nothing) when the balance cannot cover it, so
    the caller decides how to report it instead of rolling back.
    """
    user = _locked_user(db, user_id, starting_balance)
    if user.balance < amount:
        return None

    before = user.balance
    user.balance = before - amount
    tx = Transaction(
        user_id=user_id,
        type=TransactionType.STAKE,
        game=game,
        amount=-amount,
        before_balance=before,
        after_balance=user.balance,
    )
    db.add(tx)
    return tx


@transactional
def apply_credit(
    db: Session,
    user_id: str,
    amount: int,
    kind: TransactionType,
    game: Optional[str],
    starting_balance: int,
    description: Optional[str] = None,
) -> Transaction:
    user = _locked_user(db, user_id, starting_balance)
    before = user.balance
    user.balance = before + amount
    tx = Transaction(
        user_id=user_id,
        type=kind,
        game=game,
        amount=amount,
        before_balance=before,
        after_balance=user.balance,
        description=description,
    )
    db.add(tx)
    return tx


class SqlLedger:
    """Ledger backed by the ``users`` / ``transactions`` tables."""

    def __init__(self, session_factory: Callable[[], Session], starting_balance: int = 0):
        self.session_factory = session_factory
        self.starting_balance = starting_balance

    async def debit(self, user_id: str, amount: int, game: Optional[str] = None) -> None:
        if amount <= 0:
            raise InvalidAmount(f"Debit amount must be positive, got {amount}")
        tx = await run_in_threadpool(self._run, apply_debit, user_id, amount, game, self.starting_balance)
        if tx is None:
            balance = await self.balance(user_id)
            logger.warning(f"Insufficient funds: {user_id} tried to stake {amount} (balance {balance})")
            raise InsufficientFunds(user_id, amount, balance)

    async def credit(
        self,
        user_id: str,
        amount: int,
        game: Optional[str] = None,
        kind: TransactionType = TransactionType.PAYOUT,
    ) -> None:
        if amount <= 0:
            raise InvalidAmount(f"Credit amount must be positive, got {amount}")
        await run_in_threadpool(
            self._run, apply_credit, user_id, amount, kind, game, self.starting_balance
        )

    async def balance(self, user_id: str) -> int:
        return await run_in_threadpool(self.balance_sync, user_id)

    def balance_sync(self, user_id: str) -> int:
        db = self.session_factory()
        try:
            return ensure_account(db, user_id, self.starting_balance).balance
        finally:
            db.close()

    def grant(self, user_id: str, amount: int, description: Optional[str] = None) -> int:
        """Admin grant (synchronous; used by the accounts API)."""
        if amount <= 0:
            raise InvalidAmount(f"Grant amount must be positive, got {amount}")
        db = self.session_factory()
        try:
            tx = apply_credit(
                db, user_id, amount, TransactionType.GRANT, None, self.starting_balance, description
            )
            return tx.after_balance
        finally:
            db.close()

    def _run(self, func, *args):
        db = self.session_factory()
        try:
            return func(db, *args)
        finally:
            db.close()
