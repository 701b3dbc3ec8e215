"""
命名服務：產生場次中顯示用的名稱

純計算邏輯，不涉及狀態轉換
"""
from typing import List

from services.random_service import RandomSource

HORSE_NAMES = [
    "Thunder Bolt", "Lucky Strike", "Dark Shadow", "Golden Dream", "Long Shot",
    "Silver Bullet", "Night Rider", "Blazing Sun", "Iron Will", "Wild Card",
    "Fast Eddie", "Diamond Dust", "Phantom Ace", "Royal Flush", "Neon Flash",
    "Storm Chaser", "Velvet Thunder", "Chrome Horse", "Desert Eagle", "Black Mamba",
    "Quick Silver", "High Roller", "Lucky Seven", "Gold Rush", "Turbo Charge",
    "Midnight Run", "Star Gazer", "Blaze Runner", "Cash Money", "Hot Streak",
]


def generate_horse_names(random: RandomSource, count: int) -> List[str]:
    """
    為一場比賽抽出 count 個不重複的馬名

    範例：["Night Rider", "Gold Rush", "Iron Will", ...]

    異常：
        ValueError: count 超過名稱庫大小（30）
    """
    return random.sample(HORSE_NAMES, count)

