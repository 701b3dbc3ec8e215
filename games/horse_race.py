"""
競馬：固定賠率的多人下注

- 每場 5 匹馬，星等 / 賠率 / 勝率固定，馬名每場隨機
- 玩家下注一匹馬（selection = 馬匹編號）
- 勝者依 win_chance 加權抽選，其他名次依模擬的跑道位置排序
- 押中勝者：下注 × 賠率；其餘為 0
"""
from typing import Any, Dict, List, Optional, Sequence

from models import GameKind
from core.entities import Outcome, SessionConfig, Stake
from services.naming_service import generate_horse_names
from services.random_service import RandomSource

# (stars, odds, win_chance)，賠率用字串以便精確轉成 Decimal
HORSE_TABLE = (
    (5, "1.5", 0.40),
    (4, "2.5", 0.25),
    (3, "4.0", 0.17),
    (2, "7.0", 0.12),
    (1, "15.0", 0.06),
)

BETTING_SECONDS = 60
MIN_PLAYERS = 2
CAPACITY = 20
MIN_STAKE = 100
MAX_STAKE = 1_000_000

TRACK_LENGTH = 20
ANIMATION_FRAMES = 8


def generate_horses(random: RandomSource) -> List[Dict[str, Any]]:
    names = generate_horse_names(random, len(HORSE_TABLE))
    return [
        {
            "index": i,
            "name": names[i],
            "stars": stars,
            "odds": odds,
            "win_chance": win_chance,
        }
        for i, (stars, odds, win_chance) in enumerate(HORSE_TABLE)
    ]


def build_config(
    random: RandomSource,
    lobby_seconds: Optional[float] = None,
    min_participants: Optional[int] = None,
    capacity: Optional[int] = None,
    horses: Optional[List[Dict[str, Any]]] = None,
) -> SessionConfig:
    horses = horses if horses is not None else generate_horses(random)
    return SessionConfig(
        game_kind=GameKind.HORSE_RACE,
        min_participants=min_participants or MIN_PLAYERS,
        capacity=capacity or CAPACITY,
        lobby_seconds=lobby_seconds or BETTING_SECONDS,
        min_stake=MIN_STAKE,
        max_stake=MAX_STAKE,
        selections=len(horses),
        options={"horses": horses},
    )


def simulate(options: Dict[str, Any], participants: Sequence[Stake], random: RandomSource) -> Outcome:
    """
    模擬一場比賽

    流程：
    1. 依 win_chance 加權抽出勝者（權重 = round(win_chance × 1000)）
    2. 逐格推進：勝者每格 +1 加成，最後一格勝者衝線，其他馬停在終點前
    3. 名次：勝者第一，其他依最終位置由遠到近（同位置依編號）

    返回：
        Outcome（odds 只包含勝者）
    """
    horses = options["horses"]
    winner = random.weighted_choice(
        [(h["index"], round(h["win_chance"] * 1000)) for h in horses]
    )

    positions = [0] * len(horses)
    frames = [list(positions)]
    base_speed = -(-TRACK_LENGTH // ANIMATION_FRAMES)  # ceil

    for frame in range(ANIMATION_FRAMES):
        last = frame == ANIMATION_FRAMES - 1
        for i in range(len(horses)):
            if last:
                if i == winner:
                    positions[i] = TRACK_LENGTH
                else:
                    positions[i] = min(positions[i] + random.uniform_int(1, 2), TRACK_LENGTH - 1)
            else:
                bonus = 1 if i == winner else 0
                advance = max(1, base_speed + bonus + random.uniform_int(0, 1))
                # 不能提早衝線
                positions[i] = min(positions[i] + advance, TRACK_LENGTH - 2)
        frames.append(list(positions))

    others = sorted(
        (h["index"] for h in horses if h["index"] != winner),
        key=lambda idx: -positions[idx],
    )
    placements = [winner] + others

    return Outcome(
        odds={winner: horses[winner]["odds"]},
        detail={
            "winner": winner,
            "winner_name": horses[winner]["name"],
            "placements": placements,
            "frames": frames,
        },
    )
