"""
Heist：固定參加費的團隊任務

- 主持人選擇目標、風險、手法，參加費固定（每個人付一樣多）
- 成功率 = 基本 30% + 每多一人 10%（上限 80%），再加上目標 / 風險 / 手法修正，限制在 5% ~ 80%
- 成功：每個人拿回 參加費 × 倍率；失敗：全員 0
- 所有人都押同一個選項（selection = 0）
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

from models import GameKind
from core.entities import Outcome, SessionConfig, Stake
from core.exceptions import InvalidAmount, UnknownGame
from services.random_service import RandomSource

LOBBY_SECONDS = 60
MIN_PLAYERS = 2
CAPACITY = 8
MIN_ENTRY_FEE = 1_000

BASE_SUCCESS_RATE = 30
PER_PLAYER_BONUS = 10
MAX_SUCCESS_RATE = 80
MIN_SUCCESS_RATE = 5
MIN_MULTIPLIER = Decimal("1.2")


class Target(NamedTuple):
    name: str
    success_modifier: int
    multiplier_min: Decimal
    multiplier_max: Decimal
    max_entry_fee: int
    phases: Tuple[Tuple[str, str], ...]


class Risk(NamedTuple):
    name: str
    success_modifier: int
    multiplier_scale: Decimal
    entry_fee_scale: Decimal


class Approach(NamedTuple):
    name: str
    success_modifier: int
    multiplier_scale: Decimal


TARGETS: Dict[str, Target] = {
    "convenience_store": Target(
        "Convenience Store", 15, Decimal("1.5"), Decimal("2.5"), 25_000,
        (("planning", "Planning"), ("entry", "Entry"), ("robbery", "Register Grab"), ("escape", "Escape")),
    ),
    "bank": Target(
        "Bank", 0, Decimal("2.0"), Decimal("4.0"), 100_000,
        (("planning", "Planning"), ("infiltration", "Infiltration"), ("vault", "Vault"), ("escape", "Escape")),
    ),
    "casino": Target(
        "Casino", -10, Decimal("3.0"), Decimal("6.0"), 200_000,
        (("planning", "Planning"), ("disguise", "Disguise"), ("floor", "Floor"),
         ("vault", "Vault"), ("extraction", "Extraction")),
    ),
}

RISKS: Dict[str, Risk] = {
    "low": Risk("Low Risk", 10, Decimal("0.7"), Decimal("0.5")),
    "mid": Risk("Mid Risk", 0, Decimal("1.0"), Decimal("1.0")),
    "high": Risk("High Risk", -15, Decimal("1.5"), Decimal("1.5")),
}

APPROACHES: Dict[str, Approach] = {
    "stealth": Approach("Stealth", 10, Decimal("0.8")),
    "aggressive": Approach("Aggressive", -10, Decimal("1.3")),
}


def _lookup(table, key, label):
    try:
        return table[key]
    except KeyError:
        raise UnknownGame(f"Unknown heist {label}: {key!r}")


def max_entry_fee(target: str, risk: str) -> int:
    t = _lookup(TARGETS, target, "target")
    r = _lookup(RISKS, risk, "risk")
    return int(t.max_entry_fee * r.entry_fee_scale)


def calculate_success_rate(player_count: int, target: str, risk: str, approach: str) -> int:
    """
    計算成功率（百分比整數）

    範例：
        4 人、bank / mid / stealth -> min(30 + 30, 80) + 0 + 0 + 10 = 70
    """
    t = _lookup(TARGETS, target, "target")
    r = _lookup(RISKS, risk, "risk")
    a = _lookup(APPROACHES, approach, "approach")

    rate = min(BASE_SUCCESS_RATE + (player_count - 1) * PER_PLAYER_BONUS, MAX_SUCCESS_RATE)
    rate += t.success_modifier + r.success_modifier + a.success_modifier
    return max(MIN_SUCCESS_RATE, min(rate, MAX_SUCCESS_RATE))


def calculate_multiplier(random: RandomSource, target: str, risk: str, approach: str) -> Decimal:
    """倍率 = 目標區間內隨機（0.1 刻度）× 風險 × 手法，四捨五入到小數 1 位，最低 1.2"""
    t = _lookup(TARGETS, target, "target")
    r = _lookup(RISKS, risk, "risk")
    a = _lookup(APPROACHES, approach, "approach")

    step = Decimal(random.uniform_int(0, 10)) / 10
    raw = t.multiplier_min + step * (t.multiplier_max - t.multiplier_min)
    scaled = (raw * r.multiplier_scale * a.multiplier_scale).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return max(scaled, MIN_MULTIPLIER)


def build_config(
    entry_fee: int,
    target: str = "bank",
    risk: str = "mid",
    approach: str = "stealth",
    lobby_seconds: Optional[float] = None,
    min_participants: Optional[int] = None,
    capacity: Optional[int] = None,
) -> SessionConfig:
    """
    建立 Heist 場次設定

    異常：
        UnknownGame: 目標 / 風險 / 手法不存在
        InvalidAmount: 參加費低於最低值或超過目標上限
    """
    cap = max_entry_fee(target, risk)
    _lookup(APPROACHES, approach, "approach")

    if isinstance(entry_fee, bool) or not isinstance(entry_fee, int):
        raise InvalidAmount(f"Entry fee must be an integer, got {entry_fee!r}")
    if entry_fee < MIN_ENTRY_FEE:
        raise InvalidAmount(f"Minimum entry fee is {MIN_ENTRY_FEE}, got {entry_fee}")
    if entry_fee > cap:
        raise InvalidAmount(f"Maximum entry fee for {target}/{risk} is {cap}, got {entry_fee}")

    return SessionConfig(
        game_kind=GameKind.HEIST,
        min_participants=min_participants or MIN_PLAYERS,
        capacity=capacity or CAPACITY,
        lobby_seconds=lobby_seconds or LOBBY_SECONDS,
        min_stake=MIN_ENTRY_FEE,
        fixed_stake=entry_fee,
        selections=1,
        options={
            "target": target,
            "risk": risk,
            "approach": approach,
            "entry_fee": entry_fee,
            "max_entry_fee": cap,
        },
    )


def simulate(options: Dict[str, Any], participants: Sequence[Stake], random: RandomSource) -> Outcome:
    """
    模擬一次 Heist

    流程：
    1. 依人數與設定算出成功率，擲 1..100
    2. 抽倍率
    3. 產生各階段結果：成功則全部階段成功；失敗則隨機一個階段失敗，之後的階段不會發生
    """
    target, risk, approach = options["target"], options["risk"], options["approach"]
    phases = TARGETS[target].phases

    success_rate = calculate_success_rate(len(participants), target, risk, approach)
    roll = random.uniform_int(1, 100)
    success = roll <= success_rate
    multiplier = calculate_multiplier(random, target, risk, approach)

    if success:
        phase_results = [{"phase": pid, "name": name, "success": True} for pid, name in phases]
    else:
        fail_at = random.uniform_int(0, len(phases) - 1)
        phase_results = [
            {"phase": pid, "name": name, "success": i < fail_at}
            for i, (pid, name) in enumerate(phases[:fail_at + 1])
        ]

    return Outcome(
        odds={0: multiplier} if success else {},
        detail={
            "success": success,
            "success_rate": success_rate,
            "roll": roll,
            "multiplier": str(multiplier),
            "phases": phase_results,
        },
    )
