"""Pytest configuration shared by the memory bank tests."""

import os
import tempfile

# Provide a deterministic yet secure-length session secret for tests to satisfy
# 起動時バリデーション。実運用では `.env` で個別に乱数値を設定すること。
os.environ.setdefault("SESSION_SECRET_KEY", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")
# テストでは実 Firestore へ接続しない（必要なテストはフェイクを明示的に注入する）
os.environ.setdefault("DISABLE_CLOUD_STORE", "true")
os.environ.setdefault("LOCAL_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="memorybank-"), "memory.sqlite3"))
