"""
服務層

這個 package 包含純計算邏輯與周邊服務，不負責狀態轉換：
- ChapterCatalog：章節目錄
- TallyService：多數決與加權計票
- NamingService：名稱生成邏輯
- HistoryService：章節結果歷史
- NotifyService：WebSocket 通知
"""
