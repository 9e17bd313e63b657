"""
API 層

FastAPI routers，只做 request 解析、權限 header 與錯誤對應，業務邏輯都在 core。
"""
