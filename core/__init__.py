"""
核心業務邏輯層

這個 package 包含場次編排的所有核心邏輯，包括：
- SessionStore：scope -> 場次的登記表
- StateMachine：集中管理所有狀態轉換
- Staging：報名階段的下注登記
- Scheduler：報名截止計時器
- SessionManager：管理場次的生命週期
- Locks：並發控制工具
"""
