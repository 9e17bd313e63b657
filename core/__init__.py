"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- Store：唯一的資料存取介面（含 CAS 與錯誤分類）
- 狀態機：集中管理所有狀態轉換
- Manager / Engine：Room、Chapter、Leader Election 的生命週期
- Score Ledger：玩家分數
"""
