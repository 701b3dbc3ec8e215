"""
計分服務：派彩計算（純計算，不碰帳本、不用亂數）

定點數運算：
- 賠率先轉成放大 10^6 倍的整數（Decimal 轉換，第 6 位小數四捨五入）
- 下注金額 × 放大後賠率，再整除 10^6（無條件捨去）
- 全程整數，不會有浮點誤差

範例：
    1000 × 2.5 -> 1000 × 2_500_000 // 1_000_000 = 2500
    333 × 1.5  -> 333 × 1_500_000 // 1_000_000 = 499（499.5 捨去）
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from core.entities import Odds, Outcome, Payout, SettlementResult, Stake

ODDS_SCALE = 1_000_000


def scale_odds(odds: Odds) -> int:
    """
    把賠率轉成放大 ODDS_SCALE 倍的整數

    float 先轉成字串再進 Decimal，避免 2.675 這類二進位誤差被放大

    異常：
        ValueError: 賠率為負數
    """
    value = odds if isinstance(odds, Decimal) else Decimal(str(odds))
    if value < 0:
        raise ValueError(f"Odds must be non-negative, got {odds}")
    return int((value * ODDS_SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def calculate_payout(amount: int, odds: Odds) -> int:
    return amount * scale_odds(odds) // ODDS_SCALE


def calculate_payouts(participants: Iterable[Stake], outcome: Outcome) -> SettlementResult:
    """
    計算一個場次所有玩家的派彩

    規則：
    - selection 在 outcome.odds 中 -> 下注金額 × 賠率
    - 否則 -> 0（輸的玩家也會出現在結果中，方便稽核）
    - 順序與 participants 相同（加入順序）

    參數：
        participants: 玩家的 Stake（依加入順序）
        outcome: 模擬結果

    返回：
        SettlementResult
    """
    payouts = []
    for stake in participants:
        odds = outcome.odds.get(stake.selection)
        amount = calculate_payout(stake.amount, odds) if odds is not None else 0
        payouts.append(
            Payout(
                participant_id=stake.participant_id,
                selection=stake.selection,
                stake=stake.amount,
                amount=amount,
            )
        )
    return SettlementResult(payouts=tuple(payouts))


def calculate_refunds(participants: Iterable[Stake]) -> SettlementResult:
    """取消時的退款：每個人拿回自己的下注金額"""
    return SettlementResult(
        payouts=tuple(
            Payout(
                participant_id=stake.participant_id,
                selection=stake.selection,
                stake=stake.amount,
                amount=stake.amount,
            )
            for stake in participants
        )
    )


def total_pool(participants: Iterable[Stake]) -> int:
    return sum(stake.amount for stake in participants)
