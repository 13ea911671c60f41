import pytest

from memorybank.srs import DAY_MS, DEFAULT_INTERVALS_DAYS, RetentionSchedule, default_schedule, is_due

NOW = 1_700_000_000_000


@pytest.mark.parametrize("stage", range(5))
def test_remembered_moves_up_one_stage_with_cap(stage: int) -> None:
    new_stage, _ = default_schedule.review(stage, True, NOW)

    assert new_stage == min(stage + 1, 4)


def test_max_stage_is_a_plateau() -> None:
    stage = 4
    for _ in range(3):
        stage, next_review_at = default_schedule.review(stage, True, NOW)
        assert stage == 4
        assert next_review_at == NOW + 15 * DAY_MS


@pytest.mark.parametrize("stage", range(5))
def test_forgotten_resets_to_stage_zero_due_in_one_day(stage: int) -> None:
    new_stage, next_review_at = default_schedule.review(stage, False, NOW)

    assert new_stage == 0
    assert next_review_at == NOW + DAY_MS


@pytest.mark.parametrize("stage", range(5))
def test_interval_matches_table_after_success(stage: int) -> None:
    new_stage, next_review_at = default_schedule.review(stage, True, NOW)

    assert next_review_at - NOW == DEFAULT_INTERVALS_DAYS[min(stage + 1, 4)] * DAY_MS
    assert new_stage == min(stage + 1, 4)


def test_initial_review_is_one_day_after_creation() -> None:
    assert default_schedule.initial_review_at(NOW) == NOW + DAY_MS


def test_out_of_range_stage_is_clamped() -> None:
    """保存値が壊れていても添字は常に有効範囲に収まる。"""

    assert default_schedule.clamp_stage(-3) == 0
    assert default_schedule.clamp_stage(99) == 4
    assert default_schedule.clamp_stage("2") == 2
    assert default_schedule.clamp_stage(None) == 0
    assert default_schedule.review(99, True, NOW)[0] == 4


def test_custom_schedule_uses_its_own_table() -> None:
    schedule = RetentionSchedule.from_days([1, 3])

    assert schedule.max_stage == 1
    assert schedule.review(0, True, NOW) == (1, NOW + 3 * DAY_MS)
    assert schedule.review(1, True, NOW) == (1, NOW + 3 * DAY_MS)


@pytest.mark.parametrize("intervals", [(), (1, 0), (2, -1)])
def test_schedule_rejects_invalid_tables(intervals: tuple[int, ...]) -> None:
    with pytest.raises(ValueError):
        RetentionSchedule(intervals)


def test_due_predicate_is_inclusive() -> None:
    assert is_due(NOW, NOW)
    assert is_due(NOW - 1000, NOW)
    assert not is_due(NOW + 1000, NOW)
