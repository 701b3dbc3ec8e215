"""
遊戲模擬器登記表

每種遊戲（GameKind）對應一個 simulate(options, participants, random) 函式；
get_simulator() 會綁定場次的 options，返回 simulate(participants, random)，
讓 SessionManager 不需要知道任何遊戲細節。
"""
from functools import partial
from typing import Any, Callable, Dict, Sequence

from models import GameKind
from core.entities import Outcome, SessionConfig, Stake
from core.exceptions import UnknownGame
from games import heist, horse_race, team_shift
from services.random_service import RandomSource

Simulator = Callable[[Sequence[Stake], RandomSource], Outcome]

SIMULATORS: Dict[GameKind, Callable[[Dict[str, Any], Sequence[Stake], RandomSource], Outcome]] = {
    GameKind.HORSE_RACE: horse_race.simulate,
    GameKind.HEIST: heist.simulate,
    GameKind.TEAM_SHIFT: team_shift.simulate,
}


def get_simulator(config: SessionConfig) -> Simulator:
    try:
        simulate = SIMULATORS[config.game_kind]
    except KeyError:
        raise UnknownGame(f"No simulator registered for {config.game_kind}")
    return partial(simulate, config.options)


def build_config(game_kind: GameKind, random: RandomSource, **params: Any) -> SessionConfig:
    """
    依遊戲種類建立場次設定

    範例：
        build_config(GameKind.HORSE_RACE, random, lobby_seconds=30)
        build_config(GameKind.HEIST, random, entry_fee=5000, target="casino")
        build_config(GameKind.TEAM_SHIFT, random, shift="long")
    """
    if game_kind == GameKind.HORSE_RACE:
        return horse_race.build_config(random, **params)
    if game_kind == GameKind.HEIST:
        return heist.build_config(**params)
    if game_kind == GameKind.TEAM_SHIFT:
        return team_shift.build_config(**params)
    raise UnknownGame(f"Unknown game kind: {game_kind}")
