"""
Session lifecycle tests: create -> join -> deadline / force start / cancel -> settle.

Deadlines are driven by ManualClock and handle_deadline(); TestRealTimers
checks the same path end-to-end with the event loop's own timers.
"""
import asyncio
import time

import pytest

import games
from models import GameKind, SessionPhase, TransactionType
from core.entities import Outcome
from core.exceptions import (
    AlreadyActive,
    AlreadyStaked,
    InsufficientFunds,
    NotEnoughParticipants,
    SessionNotFound,
    SessionNotForming,
    Unauthorized,
    UnknownGame,
)
from core.session_manager import SessionManager
from services.settlement_service import SettlementEngine
from tests.helpers import ScriptedSimulator, make_config


@pytest.fixture
def winner_one(monkeypatch):
    """Pin the horse race so selection 1 (odds 2.5) always wins."""
    simulator = ScriptedSimulator(Outcome(odds={1: "2.5"}, detail={"winner": 1}))
    monkeypatch.setitem(games.SIMULATORS, GameKind.HORSE_RACE, simulator)
    return simulator


def phase_of(manager, scope_key):
    view = manager.get_snapshot(scope_key, include_finished=True)
    return view.phase if view else None


class TestScenarios:
    async def test_table_1_deadline_settles_with_winner(self, manager, ledger, clock, winner_one):
        session_id = await manager.create_session("table-1", "host", make_config(2, 5, 60))

        await manager.join_session("table-1", "A", 1_000, 0)
        clock.advance(10)
        await manager.join_session("table-1", "B", 2_000, 1)
        clock.advance(50)
        await manager.handle_deadline(session_id)

        view = manager.get_snapshot("table-1", include_finished=True)
        assert view.phase == SessionPhase.SETTLED
        assert [(p.participant_id, p.amount) for p in view.payouts] == [("A", 0), ("B", 5_000)]
        assert view.total_disbursed == 5_000
        assert ledger.balance("A") == 99_000
        assert ledger.balance("B") == 103_000
        assert winner_one.calls == 1
        assert manager.get_snapshot("table-1") is None

    async def test_table_2_under_minimum_cancels_and_refunds(self, manager, ledger, clock):
        session_id = await manager.create_session("table-2", "host", make_config(3, 5, 60))
        await manager.join_session("table-2", "A", 1_500, 2)
        assert ledger.balance("A") == 98_500

        clock.advance(60)
        await manager.handle_deadline(session_id)

        assert phase_of(manager, "table-2") == SessionPhase.CANCELLED
        assert ledger.credited(TransactionType.REFUND) == [("A", 1_500)]
        assert ledger.balance("A") == 100_000

        # scope 立刻可以開新場次
        new_id = await manager.create_session("table-2", "host", make_config(3, 5, 60))
        assert new_id != session_id

    async def test_create_in_occupied_scope_is_rejected(self, manager):
        await manager.create_session("table-1", "host", make_config())
        await manager.join_session("table-1", "A", 100, 0)
        before = manager.get_snapshot("table-1")

        with pytest.raises(AlreadyActive):
            await manager.create_session("table-1", "intruder", make_config())

        after = manager.get_snapshot("table-1")
        assert after.session_id == before.session_id
        assert after.owner_id == "host"
        assert after.state_version == before.state_version


class TestJoin:
    async def test_duplicate_join_rejected(self, manager, ledger):
        await manager.create_session("table-1", "host", make_config())
        await manager.join_session("table-1", "A", 100, 0)

        with pytest.raises(AlreadyStaked):
            await manager.join_session("table-1", "A", 100, 1)

        assert ledger.debits == [("A", 100)]

    async def test_join_unknown_scope(self, manager):
        with pytest.raises(SessionNotFound):
            await manager.join_session("nowhere", "A", 100, 0)

    async def test_join_after_deadline_before_timer_fires(self, manager, clock):
        await manager.create_session("table-1", "host", make_config())
        clock.advance(60)

        with pytest.raises(SessionNotForming):
            await manager.join_session("table-1", "late", 100, 0)

    async def test_insufficient_funds_keeps_session_unchanged(self, manager, ledger):
        await manager.create_session("table-1", "host", make_config())
        ledger.balances["broke"] = 10

        with pytest.raises(InsufficientFunds):
            await manager.join_session("table-1", "broke", 100, 0)

        view = manager.get_snapshot("table-1")
        assert view.participants == []
        assert view.phase == SessionPhase.FORMING

    async def test_capacity_starts_round_immediately(self, manager, winner_one):
        session_id = await manager.create_session("table-1", "host", make_config(2, 2, 60))

        await manager.join_session("table-1", "A", 100, 0)
        await manager.join_session("table-1", "B", 100, 1)

        assert phase_of(manager, "table-1") == SessionPhase.SETTLED
        assert not manager.scheduler.pending(session_id)
        assert session_id not in manager.locks

    async def test_concurrent_joins_respect_capacity(self, manager, ledger, winner_one):
        await manager.create_session("table-1", "host", make_config(2, 5, 60))

        results = await asyncio.gather(
            *(manager.join_session("table-1", f"p{i}", 100, i % 5) for i in range(8)),
            return_exceptions=True,
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(accepted) == 5
        assert all(isinstance(r, (SessionNotFound, SessionNotForming)) for r in rejected)
        assert len(ledger.debits) == 5

        view = manager.get_snapshot("table-1", include_finished=True)
        assert [p.participant_id for p in view.participants] == ["p0", "p1", "p2", "p3", "p4"]

    async def test_join_racing_deadline_is_included(self, manager, clock, winner_one):
        session_id = await manager.create_session("table-1", "host", make_config(2, 5, 60))
        await manager.join_session("table-1", "A", 100, 0)
        clock.advance(59)

        await asyncio.gather(
            manager.join_session("table-1", "B", 100, 1),
            manager.handle_deadline(session_id),
        )

        view = manager.get_snapshot("table-1", include_finished=True)
        assert view.phase == SessionPhase.SETTLED
        assert len(view.participants) == 2


class TestHostActions:
    async def test_force_start_requires_host(self, manager):
        await manager.create_session("table-1", "host", make_config())

        with pytest.raises(Unauthorized):
            await manager.force_start("table-1", "A")

    async def test_force_start_requires_minimum(self, manager):
        await manager.create_session("table-1", "host", make_config(2, 5, 60))
        await manager.join_session("table-1", "A", 100, 0)

        with pytest.raises(NotEnoughParticipants):
            await manager.force_start("table-1", "host")

        assert phase_of(manager, "table-1") == SessionPhase.FORMING

    async def test_force_start_runs_round_and_cancels_timer(self, manager, winner_one):
        session_id = await manager.create_session("table-1", "host", make_config(2, 5, 60))
        await manager.join_session("table-1", "A", 100, 0)
        await manager.join_session("table-1", "B", 100, 1)

        session = await manager.force_start("table-1", "host")

        assert session.phase == SessionPhase.SETTLED
        assert not manager.scheduler.pending(session_id)

        # 晚到的截止事件不會再動到已結束的場次
        await manager.handle_deadline(session_id)
        assert winner_one.calls == 1

    async def test_cancel_refunds_everyone(self, manager, ledger):
        await manager.create_session("table-1", "host", make_config())
        await manager.join_session("table-1", "A", 300, 0)
        await manager.join_session("table-1", "B", 700, 1)

        session = await manager.cancel_session("table-1", "host")

        assert session.phase == SessionPhase.CANCELLED
        assert sorted(ledger.credited(TransactionType.REFUND)) == [("A", 300), ("B", 700)]
        assert ledger.balance("A") == ledger.balance("B") == 100_000
        with pytest.raises(SessionNotFound):
            await manager.join_session("table-1", "C", 100, 0)

    async def test_cancel_requires_host(self, manager):
        await manager.create_session("table-1", "host", make_config())

        with pytest.raises(Unauthorized):
            await manager.cancel_session("table-1", "A")

        assert phase_of(manager, "table-1") == SessionPhase.FORMING

    async def test_extend_deadline_reschedules_timer(self, manager, clock):
        session_id = await manager.create_session("table-1", "host", make_config(lobby_seconds=60))

        deadline = await manager.extend_deadline("table-1", "host", 30)

        assert deadline == clock.now + 90
        assert manager.scheduler.fire_at(session_id) == deadline
        clock.advance(70)
        await manager.join_session("table-1", "A", 100, 0)

    async def test_extend_deadline_rejects_non_positive(self, manager):
        await manager.create_session("table-1", "host", make_config())

        with pytest.raises(ValueError):
            await manager.extend_deadline("table-1", "host", 0)


class TestFailures:
    async def test_simulation_failure_cancels_with_refund(self, manager, ledger, monkeypatch):
        def broken(options, participants, rng):
            raise RuntimeError("simulator crashed")

        monkeypatch.setitem(games.SIMULATORS, GameKind.HORSE_RACE, broken)
        session_id = await manager.create_session("table-1", "host", make_config(2, 5, 60))
        await manager.join_session("table-1", "A", 100, 0)
        await manager.join_session("table-1", "B", 200, 1)

        await manager.handle_deadline(session_id)

        assert phase_of(manager, "table-1") == SessionPhase.CANCELLED
        assert ledger.credited(TransactionType.REFUND) == [("A", 100), ("B", 200)]

    async def test_partial_failure_is_flagged_then_reconciled(self, manager, ledger, winner_one):
        session_id = await manager.create_session("table-1", "host", make_config(2, 5, 60))
        await manager.join_session("table-1", "A", 100, 1)
        await manager.join_session("table-1", "B", 200, 1)
        ledger.credit_failures["B"] = 3

        await manager.force_start("table-1", "host")

        view = manager.get_snapshot("table-1", include_finished=True)
        assert view.phase == SessionPhase.SETTLED
        assert view.partial_failure is True
        assert [s.id for s in manager.flagged_sessions()] == [session_id]
        assert ledger.credited(TransactionType.PAYOUT) == [("A", 250)]

        state = await manager.retry_settlement(session_id)

        assert state.complete
        assert manager.flagged_sessions() == []
        assert ledger.credited(TransactionType.PAYOUT) == [("A", 250), ("B", 500)]
        assert manager.get_snapshot("table-1", include_finished=True).partial_failure is False

    async def test_retry_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            await manager.retry_settlement("missing")

    async def test_unknown_game_rejected_on_create(self, manager, monkeypatch):
        monkeypatch.delitem(games.SIMULATORS, GameKind.HEIST)

        with pytest.raises(UnknownGame):
            await manager.create_session("table-1", "host", make_config(game_kind=GameKind.HEIST))

        assert manager.get_snapshot("table-1") is None


class TestSweep:
    async def test_sweep_cancels_stale_forming_session(self, manager, ledger, clock):
        session_id = await manager.create_session("table-1", "host", make_config(lobby_seconds=10_000))
        await manager.join_session("table-1", "A", 100, 0)
        clock.advance(601)

        removed = await manager.sweep_stale()

        assert removed == 1
        assert phase_of(manager, "table-1") == SessionPhase.CANCELLED
        assert ledger.credited(TransactionType.REFUND) == [("A", 100)]
        assert not manager.scheduler.pending(session_id)
        await manager.create_session("table-1", "host", make_config())

    async def test_sweep_flags_stuck_resolving_session(self, manager, ledger, clock):
        await manager.create_session("table-1", "host", make_config())
        await manager.join_session("table-1", "A", 100, 0)
        session = manager.store.get("table-1")
        session.phase = SessionPhase.RESOLVING
        clock.advance(601)

        assert await manager.sweep_stale() == 1

        assert session.phase == SessionPhase.SETTLED
        assert session.partial_failure is True
        assert manager.flagged_sessions() == [session]
        assert ledger.credits == []

    async def test_sweep_skips_round_blocked_in_payout(self, manager, ledger, clock, winner_one):
        await manager.create_session("table-1", "host", make_config())
        await manager.join_session("table-1", "A", 100, 0)
        await manager.join_session("table-1", "B", 100, 1)
        ledger.credit_gate = asyncio.Event()

        round_task = asyncio.create_task(manager.force_start("table-1", "host"))
        for _ in range(20):
            await asyncio.sleep(0)
            if phase_of(manager, "table-1") == SessionPhase.RESOLVING:
                break
        assert phase_of(manager, "table-1") == SessionPhase.RESOLVING

        clock.advance(601)
        assert await manager.sweep_stale() == 0

        # 回合還沒結算完，scope 不能被新場次佔用
        with pytest.raises(AlreadyActive):
            await manager.create_session("table-1", "host", make_config())

        ledger.credit_gate.set()
        session = await round_task

        assert session.phase == SessionPhase.SETTLED
        assert session.partial_failure is False
        assert ledger.credited(TransactionType.PAYOUT) == [("B", 250)]
        assert manager.flagged_sessions() == []
        await manager.create_session("table-1", "host", make_config())

    async def test_sweep_leaves_young_sessions(self, manager, clock):
        await manager.create_session("table-1", "host", make_config())
        clock.advance(100)

        assert await manager.sweep_stale() == 0
        assert phase_of(manager, "table-1") == SessionPhase.FORMING


class TestSnapshot:
    async def test_snapshot_tracks_versions_and_countdown(self, manager, clock):
        await manager.create_session("table-1", "host", make_config(lobby_seconds=60))
        first = manager.get_snapshot("table-1")

        clock.advance(15)
        await manager.join_session("table-1", "A", 250, 3)
        second = manager.get_snapshot("table-1")

        assert first.remaining_seconds == 60
        assert second.remaining_seconds == 45
        assert second.state_version > first.state_version
        assert second.total_staked == 250
        assert second.participants[0].selection == 3
        assert second.options["horses"][3]["odds"] == "7.0"

    async def test_listener_sees_each_transition(self, manager, winner_one):
        seen = []
        manager.add_listener(lambda s, prev, new: seen.append((prev, new)))
        await manager.create_session("table-1", "host", make_config(2, 2, 60))

        await manager.join_session("table-1", "A", 100, 0)
        await manager.join_session("table-1", "B", 100, 1)

        assert seen == [
            (SessionPhase.FORMING, SessionPhase.LOCKED),
            (SessionPhase.LOCKED, SessionPhase.RESOLVING),
            (SessionPhase.RESOLVING, SessionPhase.SETTLED),
        ]


class TestRealTimers:
    async def test_deadline_fires_on_event_loop(self, ledger, rng, winner_one):
        manager = SessionManager(
            ledger,
            random=rng,
            settlement=SettlementEngine(ledger, backoff_seconds=0),
            clock=time.time,
        )
        try:
            await manager.create_session("table-1", "host", make_config(2, 5, 0.05))
            await manager.join_session("table-1", "A", 100, 0)
            await manager.join_session("table-1", "B", 100, 1)

            await asyncio.sleep(0.3)

            assert phase_of(manager, "table-1") == SessionPhase.SETTLED
            assert ledger.credited(TransactionType.PAYOUT) == [("B", 250)]
        finally:
            await manager.shutdown()
