"""
亂數服務：遊戲模擬使用的亂數來源

預設使用 random.SystemRandom（作業系統的密碼學亂數），
測試時可以注入 random.Random(seed) 取得可重現的結果
"""
import random
from typing import List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")


class RandomSource:

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.SystemRandom()

    def uniform_int(self, low: int, high: int) -> int:
        """
        均勻分布的整數，包含兩端

        範例：uniform_int(1, 100) 可能返回 1 ~ 100
        """
        if high < low:
            raise ValueError(f"Empty range: {low}..{high}")
        return self._rng.randint(low, high)

    def weighted_choice(self, items: Sequence[Tuple[T, int]]) -> T:
        """
        依權重抽選

        參數：
            items: (value, weight) 列表，weight 為非負整數

        邏輯：
            在 1..總權重 之間抽一個數，依序扣掉每個項目的權重，
            扣到 <= 0 的項目就是結果（權重 0 的項目永遠不會被選中）
        """
        total = sum(weight for _, weight in items)
        if total <= 0:
            raise ValueError("weighted_choice requires a positive total weight")

        roll = self.uniform_int(1, total)
        for value, weight in items:
            roll -= weight
            if roll <= 0:
                return value
        return items[-1][0]

    def shuffle(self, items: Sequence[T]) -> List[T]:
        """返回打亂後的新列表（不修改傳入的序列）"""
        shuffled = list(items)
        self._rng.shuffle(shuffled)
        return shuffled

    def sample(self, items: Sequence[T], k: int) -> List[T]:
        """不重複抽取 k 個"""
        if k > len(items):
            raise ValueError(f"Cannot sample {k} items from {len(items)}")
        return self._rng.sample(list(items), k)
