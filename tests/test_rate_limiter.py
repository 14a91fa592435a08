import pytest

from verification_bot.core.rate_limiter import FixedWindowBudget


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_budget_allows_limit_per_window():
    clock = FakeClock()
    budget = FixedWindowBudget(3, 60.0, clock=clock)

    assert [budget.try_consume() for _ in range(4)] == [True, True, True, False]
    assert budget.remaining == 0

    clock.now += 30
    assert budget.retry_after() == pytest.approx(30.0)
    assert budget.try_consume() is False

    clock.now += 30
    assert budget.try_consume() is True
    assert budget.remaining == 2


def test_retry_after_is_zero_with_tokens_left():
    budget = FixedWindowBudget(2, clock=FakeClock())
    assert budget.retry_after() == 0.0
    budget.try_consume()
    assert budget.retry_after() == 0.0


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        FixedWindowBudget(0)
