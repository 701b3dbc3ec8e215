"""Test helpers for the casino session tests.

Helpers:
    FakeLedger: In-memory ledger with credit failure injection
    ManualClock: Controllable clock shared by store, scheduler and manager
    ScriptedSimulator: Simulator returning a fixed outcome
    make_config: SessionConfig factory with five fixed horses

Usage:
    from tests.helpers import FakeLedger, make_config
"""

from tests.helpers.fakes import (
    HORSES,
    FakeLedger,
    ManualClock,
    ScriptedSimulator,
    make_config,
)

__all__ = ["HORSES", "FakeLedger", "ManualClock", "ScriptedSimulator", "make_config"]
