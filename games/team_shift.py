"""
Team Shift：2 ~ 4 人一起上班的團隊打工

- 主持人選擇班別（short / normal / long），玩家以 selection 選擇職種
- 每人付相同的押金（SHIFT_DEPOSIT），下班後押金連同薪水一起發回
- 同一個職種的人是同一組，共用一次工作事件與底薪
- 薪水 = 底薪 × 班別倍率 × 事件倍率，再加上團隊加成（每多一人 +15%）與小費
- 出事故（accident）薪水為 0，但押金照退，打工不會虧錢

派彩換算：odds[職種] = (押金 + 薪水) / 押金，押金固定 100，所以賠率剛好是兩位小數
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from models import GameKind
from core.entities import Outcome, SessionConfig, Stake
from core.exceptions import UnknownGame
from services.random_service import RandomSource

LOBBY_SECONDS = 60
MIN_PLAYERS = 2
MAX_PLAYERS = 4
SHIFT_DEPOSIT = 100

TEAM_BONUS_PERCENT = 15
TIP_MIN = 200
TIP_MAX = 500
TIP_WEIGHT = 15


class Job(NamedTuple):
    id: str
    name: str
    pay_min: int
    pay_max: int
    risk_rate: int


class Shift(NamedTuple):
    name: str
    pay_multiplier: Decimal


JOBS: List[Job] = [
    Job("janitor", "Janitor", 500, 800, 5),
    Job("bartender", "Bartender", 800, 1_200, 8),
    Job("dealer", "Dealer", 1_200, 1_800, 12),
    Job("security", "Security", 1_800, 2_500, 18),
    Job("floor_manager", "Floor Manager", 2_500, 3_500, 15),
    Job("vip_host", "VIP Host", 3_500, 5_000, 20),
]

SHIFTS: Dict[str, Shift] = {
    "short": Shift("Short Shift", Decimal("0.6")),
    "normal": Shift("Normal Shift", Decimal("1.0")),
    "long": Shift("Long Shift", Decimal("1.8")),
}

EVENT_MULTIPLIERS: Dict[str, Decimal] = {
    "great_success": Decimal("1.5"),
    "success": Decimal("1.0"),
    "tip": Decimal("1.0"),
    "trouble": Decimal("0.5"),
    "accident": Decimal("0"),
}


def _round(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def event_weights(job: Job) -> List[tuple]:
    """
    工作事件的權重（總和 100）

    - 風險率的 30% 是事故，其餘是麻煩
    - 大成功 = 10 + 風險率 / 4（風險越高報酬越高）
    - 小費固定 15，剩下的是普通成功

    範例：
        dealer（風險 12）-> 大成功 13、成功 60、小費 15、麻煩 8、事故 4
    """
    accident = _round(Decimal(job.risk_rate) * Decimal("0.3"))
    trouble = job.risk_rate - accident
    great = _round(10 + Decimal(job.risk_rate) / 4)
    success = 100 - job.risk_rate - great - TIP_WEIGHT
    return [
        ("great_success", max(great, 1)),
        ("success", max(success, 1)),
        ("tip", TIP_WEIGHT),
        ("trouble", trouble),
        ("accident", accident),
    ]


def calculate_pay(base_pay: int, shift: str, event: str, team_size: int, tip: int = 0) -> int:
    """
    計算一組人的薪水（不含押金）

    範例：
        底薪 1000、long、success、3 人 -> 1800 + 1800 × 30% = 2340
    """
    after_shift = _round(base_pay * SHIFTS[shift].pay_multiplier)
    after_event = _round(after_shift * EVENT_MULTIPLIERS[event])
    team_bonus = after_event * (team_size - 1) * TEAM_BONUS_PERCENT // 100
    return after_event + team_bonus + tip


def build_config(
    shift: str = "normal",
    lobby_seconds: Optional[float] = None,
    min_participants: Optional[int] = None,
    capacity: Optional[int] = None,
) -> SessionConfig:
    """
    建立 Team Shift 場次設定

    異常：
        UnknownGame: 班別不存在
    """
    if shift not in SHIFTS:
        raise UnknownGame(f"Unknown shift: {shift!r}")

    return SessionConfig(
        game_kind=GameKind.TEAM_SHIFT,
        min_participants=min_participants or MIN_PLAYERS,
        capacity=capacity or MAX_PLAYERS,
        lobby_seconds=lobby_seconds or LOBBY_SECONDS,
        min_stake=SHIFT_DEPOSIT,
        fixed_stake=SHIFT_DEPOSIT,
        selections=len(JOBS),
        options={
            "shift": shift,
            "deposit": SHIFT_DEPOSIT,
            "team_bonus_percent": TEAM_BONUS_PERCENT,
            "jobs": [
                {"index": i, "id": j.id, "name": j.name, "pay_min": j.pay_min, "pay_max": j.pay_max}
                for i, j in enumerate(JOBS)
            ],
        },
    )


def simulate(options: Dict[str, Any], participants: Sequence[Stake], random: RandomSource) -> Outcome:
    """
    模擬一次團隊打工

    流程：
    1. 團隊人數 = 所有參加者（不分職種）
    2. 每個有人選的職種各擲一次事件與底薪，同組的人拿一樣的薪水
    3. odds[職種] = (押金 + 薪水) / 押金
    """
    shift = options["shift"]
    deposit = options["deposit"]
    team_size = len(participants)

    crews: Dict[int, List[str]] = {}
    for stake in participants:
        crews.setdefault(stake.selection, []).append(stake.participant_id)

    odds: Dict[int, Decimal] = {}
    results = []
    for index in sorted(crews):
        job = JOBS[index]
        event = random.weighted_choice(event_weights(job))
        base_pay = random.uniform_int(job.pay_min, job.pay_max)
        tip = random.uniform_int(TIP_MIN, TIP_MAX) if event == "tip" else 0
        pay = calculate_pay(base_pay, shift, event, team_size, tip)

        odds[index] = Decimal(deposit + pay) / Decimal(deposit)
        results.append({
            "job": job.id,
            "name": job.name,
            "event": event,
            "base_pay": base_pay,
            "tip": tip,
            "pay": pay,
            "crew": crews[index],
        })

    return Outcome(
        odds=odds,
        detail={
            "shift": shift,
            "team_size": team_size,
            "team_bonus_percent": (team_size - 1) * TEAM_BONUS_PERCENT,
            "jobs": results,
        },
    )
