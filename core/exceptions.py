"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類：
- 驗證錯誤（AlreadyStaked、InvalidAmount、CapacityReached、Unauthorized、SessionNotForming ...）
  直接回報給呼叫者，不重試
- InsufficientFunds：只中止該次加入，場次其他狀態不變
- DisbursementFailure：派彩暫時性失敗，由結算引擎在本地重試
"""


class CasinoException(Exception):
    """所有遊戲異常的基類"""
    pass


# ============ Session 相關異常 ============

class AlreadyActive(CasinoException):
    """同一個 scope 已經有進行中的場次"""
    def __init__(self, scope_key, session_id=None):
        self.scope_key = scope_key
        self.session_id = session_id
        super().__init__(f"Scope {scope_key} already has an active session")


class SessionNotFound(CasinoException):
    """場次不存在"""
    def __init__(self, key):
        self.key = key
        super().__init__(f"Session {key} not found")


class SessionNotForming(CasinoException):
    """場次已經不在報名階段（已鎖定、結束，或報名時間已過）"""
    pass


class Unauthorized(CasinoException):
    """非主持人嘗試執行主持人專屬操作"""
    pass


class NotEnoughParticipants(CasinoException):
    """人數未達開始門檻（強制開始時）"""
    pass


class UnknownGame(CasinoException):
    """不支援的遊戲種類或選項"""
    pass


# ============ Stake 相關異常 ============

class AlreadyStaked(CasinoException):
    """玩家已經在這個場次下注過了"""
    def __init__(self, participant_id):
        self.participant_id = participant_id
        super().__init__(f"Participant {participant_id} already staked in this session")


class CapacityReached(CasinoException):
    """場次人數已滿"""
    pass


class InvalidAmount(CasinoException):
    """下注金額不合法（非整數、非正數、超出範圍）"""
    pass


class InvalidSelection(CasinoException):
    """下注選項不存在（例如馬匹編號超出範圍）"""
    pass


# ============ Ledger 相關異常 ============

class InsufficientFunds(CasinoException):
    """餘額不足"""
    def __init__(self, user_id, amount, balance=None):
        self.user_id = user_id
        self.amount = amount
        self.balance = balance
        super().__init__(f"User {user_id} cannot afford {amount} (balance: {balance})")


class DisbursementFailure(CasinoException):
    """派彩寫入帳本失敗（暫時性，會重試）"""
    def __init__(self, session_id, index, participant_id):
        self.session_id = session_id
        self.index = index
        self.participant_id = participant_id
        super().__init__(
            f"Failed to credit payout #{index} ({participant_id}) for session {session_id}"
        )


# ============ 狀態轉換異常 ============

class InvalidStateTransition(CasinoException):
    """非法的狀態轉換"""
    pass
