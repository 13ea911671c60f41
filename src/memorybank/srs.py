from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable

DEFAULT_INTERVALS_DAYS: tuple[int, ...] = (1, 2, 4, 7, 15)


DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(frozen=True)
class RetentionSchedule:
    """Fixed-interval retention schedule (Ebbinghaus style).

    - stage は intervals_days の添字。0 = 覚えたて/忘れた直後
    - remembered=True: stage を 1 つ上げる（最大 stage で頭打ち）
    - remembered=False: stage を 0 に戻す（部分点なし）
    - 次回出題時刻は常に「レビュー時刻 + intervals_days[新stage] 日」
    """

    intervals_days: tuple[int, ...] = DEFAULT_INTERVALS_DAYS

    def __post_init__(self) -> None:
        if not self.intervals_days:
            raise ValueError("retention schedule needs at least one interval")
        if any(int(days) <= 0 for days in self.intervals_days):
            raise ValueError("retention intervals must be positive")

    @classmethod
    def from_days(cls, intervals: Iterable[int]) -> "RetentionSchedule":
        return cls(tuple(int(days) for days in intervals))

    @property
    def max_stage(self) -> int:
        return len(self.intervals_days) - 1

    def clamp_stage(self, stage: int) -> int:
        """Coerce an arbitrary stage into ``[0, max_stage]``."""

        try:
            value = int(stage)
        except (TypeError, ValueError):
            return 0
        return min(max(value, 0), self.max_stage)

    def interval_ms(self, stage: int) -> int:
        return self.intervals_days[self.clamp_stage(stage)] * DAY_MS

    def next_stage(self, stage: int, remembered: bool) -> int:
        if not remembered:
            return 0
        return min(self.clamp_stage(stage) + 1, self.max_stage)

    def initial_review_at(self, created_at_ms: int) -> int:
        """First review time of a freshly captured item (stage 0)."""

        return created_at_ms + self.interval_ms(0)

    def review(self, stage: int, remembered: bool, reviewed_at_ms: int) -> tuple[int, int]:
        """Return ``(next_stage, next_review_at)`` for one review outcome."""

        new_stage = self.next_stage(stage, remembered)
        return new_stage, reviewed_at_ms + self.interval_ms(new_stage)


def is_due(next_review_at: int, at_ms: int) -> bool:
    return at_ms >= next_review_at


default_schedule = RetentionSchedule()
