"""Tests for the allocation policies.

Covers:
- equal-weight split, residue to idle, over-lock pinning
- winner-take-all redirection of free capital
- deterministic equal-weight fallback when no winner is nominated
- over-committed inputs are clamped and logged
- allocation shape/conservation checks
- property checks over random consistent portfolios
"""

import logging

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings
from hypothesis import strategies as st

from yieldkeeper.allocation.engine import (
    check_allocation,
    create_equal_weight_allocation,
    create_initial_allocation,
    create_target_allocation,
    create_winner_take_all_allocation,
    locked_amount,
)
from yieldkeeper.allocation.models import Allocation, StrategyInput
from yieldkeeper.errors import AllocationInvariantError
from yieldkeeper.registry import IDLE_ADDRESS, IDLE_ID


def _values(allocations) -> dict[str, int]:
    return {a.strategy_id: a.position_value for a in allocations}


class TestLockedAmount:
    def test_unbounded_liquidity_locks_nothing(self, make_input):
        assert locked_amount(make_input("a", 1_000_000, None)) == 0

    def test_zero_liquidity_locks_everything(self, make_input):
        assert locked_amount(make_input("a", 1_000_000, 0)) == 1_000_000

    def test_liquidity_above_position_locks_nothing(self, make_input):
        assert locked_amount(make_input("a", 100, 5_000)) == 0

    def test_partial_liquidity(self, make_input):
        assert locked_amount(make_input("a", 1_000, 400)) == 600

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            StrategyInput("a", "kaminoVault", "addr", -1)
        with pytest.raises(ValueError):
            StrategyInput("a", "kaminoVault", "addr", 10, -5)


class TestEqualWeight:
    def test_even_split_with_unbounded_liquidity(self, make_input):
        inputs = [make_input("a"), make_input("b"), make_input("c")]
        result = create_equal_weight_allocation(9_000_000, inputs)

        assert _values(result) == {"a": 3_000_000, "b": 3_000_000, "c": 3_000_000, IDLE_ID: 0}

    def test_residue_goes_to_idle(self, make_input):
        inputs = [make_input("a"), make_input("b"), make_input("c")]
        result = create_equal_weight_allocation(100, inputs)

        assert _values(result) == {"a": 33, "b": 33, "c": 33, IDLE_ID: 1}

    def test_idle_row_is_last_and_uses_reserved_identity(self, make_input):
        result = create_equal_weight_allocation(10, [make_input("a"), make_input("b")])

        idle = result[-1]
        assert idle.is_idle
        assert idle.strategy_type == "idle"
        assert idle.strategy_address == IDLE_ADDRESS

    def test_rows_keep_registry_order(self, make_input):
        inputs = [make_input("z"), make_input("a"), make_input("m")]
        result = create_equal_weight_allocation(30, inputs)

        assert [a.strategy_id for a in result] == ["z", "a", "m", IDLE_ID]

    def test_over_locked_strategy_is_pinned(self, make_input):
        inputs = [
            make_input("locked", 1_000_000, 0),
            make_input("b"),
            make_input("c"),
            make_input("d"),
        ]
        result = create_equal_weight_allocation(2_000_000, inputs)

        values = _values(result)
        assert values["locked"] == 1_000_000
        assert values["b"] == values["c"] == values["d"] == 333_333
        assert values[IDLE_ID] == 1
        check_allocation(result, 2_000_000)

    def test_pinning_cascades_until_stable(self, make_input):
        # Share starts at 33; pinning A drops it to 25, which then pins B.
        inputs = [make_input("a", 50, 0), make_input("b", 30, 0), make_input("c")]
        result = create_equal_weight_allocation(100, inputs)

        assert _values(result) == {"a": 50, "b": 30, "c": 20, IDLE_ID: 0}

    def test_lock_below_share_gets_share(self, make_input):
        inputs = [make_input("a", 100, 80), make_input("b")]
        result = create_equal_weight_allocation(1_000, inputs)

        assert _values(result) == {"a": 500, "b": 500, IDLE_ID: 0}

    def test_no_strategies_is_all_idle(self):
        result = create_equal_weight_allocation(12_345, [])

        assert result == (Allocation.idle(12_345),)

    def test_zero_total(self, make_input):
        result = create_equal_weight_allocation(0, [make_input("a"), make_input("b")])

        assert _values(result) == {"a": 0, "b": 0, IDLE_ID: 0}


class TestWinnerTakeAll:
    def test_free_capital_moves_to_winner(self, make_input):
        inputs = [make_input("a", 500_000, None), make_input("b", 300_000, 0)]
        result = create_winner_take_all_allocation(1_000_000, inputs, "a")

        assert _values(result) == {"a": 700_000, "b": 300_000, IDLE_ID: 0}

    def test_unlocked_losers_are_emptied(self, make_input):
        inputs = [make_input("a", 100), make_input("b", 200), make_input("c", 300)]
        result = create_winner_take_all_allocation(700, inputs, "c")

        assert _values(result) == {"a": 0, "b": 0, "c": 700, IDLE_ID: 0}

    def test_winner_keeps_at_least_its_lock(self, make_input):
        inputs = [make_input("a", 600, 100), make_input("b", 400, 0)]
        result = create_winner_take_all_allocation(1_000, inputs, "a")

        assert _values(result) == {"a": 600, "b": 400, IDLE_ID: 0}

    def test_unknown_winner_raises(self, make_input):
        with pytest.raises(ValueError, match="not a registered strategy"):
            create_winner_take_all_allocation(100, [make_input("a")], "nope")

    def test_winner_floor_when_over_committed(self, make_input, caplog):
        inputs = [make_input("a", 80, 0), make_input("b", 80, 0)]
        with caplog.at_level(logging.WARNING):
            result = create_winner_take_all_allocation(100, inputs, "a")

        assert _values(result) == {"a": 80, "b": 80, IDLE_ID: 0}
        assert "Locked capital exceeds total value" in caplog.text
        assert "flooring at the lock" in caplog.text


class TestTargetAllocation:
    def test_no_winner_falls_back_to_equal_weight(self, make_input, caplog):
        inputs = [make_input("a", 300), make_input("b", 100)]
        with caplog.at_level(logging.WARNING):
            target = create_target_allocation(400, inputs, None)

        assert target == create_equal_weight_allocation(400, inputs)
        fallback = [r for r in caplog.records if getattr(r, "event", None) == "allocation_fallback"]
        assert len(fallback) == 1

    def test_fallback_is_deterministic(self, make_input):
        inputs = [make_input("a", 10, 2), make_input("b", 20), make_input("c", 5, 0)]

        first = create_target_allocation(101, inputs, None)
        second = create_target_allocation(101, inputs, None)

        assert first == second

    def test_winner_uses_winner_take_all(self, make_input):
        inputs = [make_input("a", 300), make_input("b", 100)]
        target = create_target_allocation(400, inputs, "b")

        assert _values(target) == {"a": 0, "b": 400, IDLE_ID: 0}


class TestInitialAllocation:
    def test_locks_only_remainder_idle(self, make_input):
        inputs = [make_input("a", 500, 100), make_input("b", 200)]
        result = create_initial_allocation(1_000, inputs)

        assert _values(result) == {"a": 400, "b": 0, IDLE_ID: 600}


class TestOverCommitted:
    def test_rows_clamped_to_locks_and_idle_floored(self, make_input, caplog):
        inputs = [make_input("a", 100, 0), make_input("b", 100, 0)]
        with caplog.at_level(logging.WARNING):
            result = create_equal_weight_allocation(150, inputs)

        assert _values(result) == {"a": 100, "b": 100, IDLE_ID: 0}
        assert "Locked capital exceeds total value" in caplog.text


class TestCheckAllocation:
    def test_valid_allocation_passes(self, make_input):
        check_allocation(create_equal_weight_allocation(99, [make_input("a"), make_input("b")]), 99)

    def test_sum_mismatch(self, make_input):
        rows = create_equal_weight_allocation(99, [make_input("a")])
        with pytest.raises(AllocationInvariantError, match="does not match"):
            check_allocation(rows, 100)

    def test_missing_idle_row(self, make_input):
        rows = create_equal_weight_allocation(99, [make_input("a")])[:-1]
        with pytest.raises(AllocationInvariantError, match="idle"):
            check_allocation(rows, 99)

    def test_idle_not_last(self, make_input):
        a, idle = create_equal_weight_allocation(10, [make_input("a")])
        with pytest.raises(AllocationInvariantError, match="idle"):
            check_allocation((idle, a), 10)

    def test_duplicate_strategy(self, make_input):
        a, idle = create_equal_weight_allocation(10, [make_input("a")])
        with pytest.raises(AllocationInvariantError, match="duplicated"):
            check_allocation((a, a, idle), 20)

    def test_negative_row(self):
        rows = (Allocation("a", "kaminoVault", "addr", -5), Allocation.idle(15))
        with pytest.raises(AllocationInvariantError, match="Negative"):
            check_allocation(rows, 10)


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

_position = st.integers(min_value=0, max_value=10**12)
_liquidity = st.one_of(st.none(), st.integers(min_value=0, max_value=10**12))


@st.composite
def _portfolios(draw):
    """Consistent portfolios: total = sum of positions + idle."""
    rows = draw(st.lists(st.tuples(_position, _liquidity), min_size=0, max_size=8))
    idle = draw(_position)
    inputs = [
        StrategyInput(f"s{i}", "kaminoVault", f"addr{i}", position, liquidity)
        for i, (position, liquidity) in enumerate(rows)
    ]
    total = sum(i.position_value for i in inputs) + idle
    return total, inputs


@hypothesis_settings(
    max_examples=200, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture]
)
@given(_portfolios())
def test_equal_weight_conserves_and_respects_locks(portfolio):
    total, inputs = portfolio
    result = create_equal_weight_allocation(total, inputs)

    check_allocation(result, total)
    for strategy_input, row in zip(inputs, result):
        assert row.strategy_id == strategy_input.strategy_id
        assert row.position_value >= strategy_input.locked
    assert result[-1].position_value >= 0


@hypothesis_settings(
    max_examples=200, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture]
)
@given(_portfolios(), st.data())
def test_winner_take_all_conserves_and_respects_locks(portfolio, data):
    total, inputs = portfolio
    if not inputs:
        return
    winner = data.draw(st.sampled_from([i.strategy_id for i in inputs]))
    result = create_winner_take_all_allocation(total, inputs, winner)

    check_allocation(result, total)
    for strategy_input, row in zip(inputs, result):
        assert row.position_value >= strategy_input.locked
        if strategy_input.strategy_id != winner:
            assert row.position_value == strategy_input.locked
    assert result[-1].position_value == 0
