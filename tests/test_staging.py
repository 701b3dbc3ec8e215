"""Tests for stake validation and the debit-then-commit join path."""
import pytest

from models import GameKind, SessionPhase
from core.entities import Session
from core.exceptions import (
    AlreadyStaked,
    CapacityReached,
    InsufficientFunds,
    InvalidAmount,
    InvalidSelection,
    SessionNotForming,
)
from core.staging import ParticipantStaging
from tests.helpers import make_config


def new_session(**config_kwargs) -> Session:
    return Session(
        id="s1",
        scope_key="table-1",
        owner_id="host",
        config=make_config(**config_kwargs),
        created_at=0.0,
        deadline_at=60.0,
    )


@pytest.fixture
def staging(ledger):
    return ParticipantStaging(ledger)


class TestStage:
    async def test_stage_debits_and_records_stake(self, staging, ledger):
        session = new_session()

        stake = await staging.stage(session, "alice", 1_000, 0, now=5.0)

        assert stake.amount == 1_000
        assert stake.timestamp == 5.0
        assert session.participants == {"alice": stake}
        assert ledger.debits == [("alice", 1_000)]
        assert ledger.balance("alice") == 99_000
        assert session.state_version == 1

    async def test_join_order_is_preserved(self, staging):
        session = new_session()

        for i, pid in enumerate(["carol", "alice", "bob"]):
            await staging.stage(session, pid, 100, 0, now=float(i))

        assert list(session.participants) == ["carol", "alice", "bob"]

    async def test_duplicate_stake_rejected_without_debit(self, staging, ledger):
        session = new_session()
        await staging.stage(session, "alice", 1_000, 0, now=1.0)

        with pytest.raises(AlreadyStaked):
            await staging.stage(session, "alice", 500, 1, now=2.0)

        assert ledger.debits == [("alice", 1_000)]
        assert session.participants["alice"].amount == 1_000

    async def test_insufficient_funds_leaves_session_untouched(self, staging, ledger):
        session = new_session()
        ledger.balances["broke"] = 50

        with pytest.raises(InsufficientFunds):
            await staging.stage(session, "broke", 100, 0, now=1.0)

        assert session.participants == {}
        assert session.state_version == 0
        assert ledger.balance("broke") == 50

    async def test_capacity_reached(self, staging):
        session = new_session(min_participants=1, capacity=2)
        await staging.stage(session, "a", 100, 0, now=1.0)
        await staging.stage(session, "b", 100, 0, now=1.0)

        with pytest.raises(CapacityReached):
            await staging.stage(session, "c", 100, 0, now=1.0)


class TestValidate:
    def test_rejects_when_not_forming(self):
        session = new_session()
        session.phase = SessionPhase.LOCKED

        with pytest.raises(SessionNotForming):
            ParticipantStaging.validate(session, "alice", 100, 0, now=1.0)

    def test_rejects_after_deadline(self):
        session = new_session()

        with pytest.raises(SessionNotForming):
            ParticipantStaging.validate(session, "alice", 100, 0, now=60.0)

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "100", True, None])
    def test_rejects_bad_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            ParticipantStaging.validate(new_session(), "alice", amount, 0, now=1.0)

    def test_stake_range(self):
        session = new_session(min_stake=100, max_stake=1_000)

        with pytest.raises(InvalidAmount):
            ParticipantStaging.validate(session, "alice", 99, 0, now=1.0)
        with pytest.raises(InvalidAmount):
            ParticipantStaging.validate(session, "alice", 1_001, 0, now=1.0)
        ParticipantStaging.validate(session, "alice", 1_000, 0, now=1.0)

    def test_fixed_entry_fee(self):
        session = new_session(game_kind=GameKind.HEIST, fixed_stake=5_000, selections=1)

        with pytest.raises(InvalidAmount):
            ParticipantStaging.validate(session, "alice", 4_999, 0, now=1.0)
        ParticipantStaging.validate(session, "alice", 5_000, 0, now=1.0)

    @pytest.mark.parametrize("selection", [-1, 5, "1", False])
    def test_rejects_bad_selection(self, selection):
        with pytest.raises(InvalidSelection):
            ParticipantStaging.validate(new_session(), "alice", 100, selection, now=1.0)
