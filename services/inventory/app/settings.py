"""
Inventory Service — 設定

環境変数から読み込む。各サービスと同じく import 時に確定する。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./inventory.db")
DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
# 未設定なら exp を付けない
JWT_EXPIRES_MINUTES = (
    int(os.environ["JWT_EXPIRES_MINUTES"]) if os.environ.get("JWT_EXPIRES_MINUTES") else None
)
BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "10"))

# ストア呼び出し 1 回あたりの上限 (秒)
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5.0"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")]

EVENT_CHANNEL = "inventory_events"
