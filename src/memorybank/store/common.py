from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from ..srs import RetentionSchedule, default_schedule


def normalize_stage(value: Any, schedule: RetentionSchedule = default_schedule) -> int:
    """保存値の stage を有効範囲 [0, S-1] に矯正する。

    ストアに範囲外の値が残っていても、読み出した MemoryItem の stage は
    常に間隔テーブルの有効な添字になる。
    """

    return schedule.clamp_stage(value)


def normalize_epoch_ms(value: Any, fallback: int = 0) -> int:
    """数値/数値文字列/ISO 日時のいずれかをエポックミリ秒へ正規化する。"""

    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        return _datetime_to_ms(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return _datetime_to_ms(datetime.fromisoformat(str(value)))
    except ValueError:
        return fallback


def _datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)
