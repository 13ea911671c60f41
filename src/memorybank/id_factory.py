"""ID 生成ユーティリティ。

- 仮 ID（楽観的追加中）: ``tmp:<uuid>``
- ローカル保存の確定 ID: ``local:<ns タイムスタンプ16進>``（プロセス内で単調増加）
- クラウド保存の確定 ID: ``mem:<uuid>``（Firestore のパス制約に抵触しない文字のみ）
"""

from __future__ import annotations

import threading
import time
import uuid


_local_id_lock = threading.Lock()
_last_local_ns = 0


def generate_provisional_id() -> str:
    return f"tmp:{uuid.uuid4().hex}"


def is_provisional_id(item_id: str) -> bool:
    return str(item_id or "").startswith("tmp:")


def generate_local_item_id() -> str:
    """Timestamp-derived id, strictly increasing within this process.

    同一ナノ秒に複数件採番されても衝突しないよう、直前値以下なら +1 する。
    """

    global _last_local_ns
    with _local_id_lock:
        candidate = time.time_ns()
        if candidate <= _last_local_ns:
            candidate = _last_local_ns + 1
        _last_local_ns = candidate
    return f"local:{candidate:x}"


def generate_cloud_item_id() -> str:
    return f"mem:{uuid.uuid4().hex}"
