"""
服務層

這個 package 包含計算邏輯與外部協作者，不負責狀態轉換：
- PayoffService：定點數派彩計算
- SettlementEngine：派彩入帳與重試
- Ledger：籌碼帳本
- RandomSource：亂數來源
- NamingService：名稱生成
- HistoryService：稽核紀錄
"""
