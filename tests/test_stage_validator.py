"""
Tests for start-stage validation, range conversion and range totals.
"""

import itertools

import pytest

from run_control.errors import ValidationError
from run_control.models import LayerInfo, LayerRange, PlanInfo, StageRange, StageStatus
from run_control.stage_validator import (
    StageValidationContext,
    compute_range_totals,
    describe_stage_range,
    get_valid_start_stages,
    is_valid_start_stage,
    layer_range_to_stage_range,
    resolve_layer_range,
    stage_range_to_layer_range,
    validate_stage_range,
)

OK = StageStatus.SUCCEEDED
FAIL = StageStatus.FAILED
NOT = StageStatus.NOT_RUN


# ============================================================================
# Start stages
# ============================================================================

def test_stage_zero_always_valid():
    for total in range(1, 5):
        assert is_valid_start_stage(0, StageValidationContext(total, None))
        for statuses in itertools.product([OK, FAIL, NOT], repeat=total):
            assert is_valid_start_stage(0, StageValidationContext(total, list(statuses)))


def test_failed_layer_blocks_skip_forward():
    ctx = StageValidationContext(5, [OK, OK, FAIL, NOT, NOT])
    assert get_valid_start_stages(ctx) == {0, 1, 2}
    assert not is_valid_start_stage(3, ctx)
    assert not is_valid_start_stage(4, ctx)


def test_clean_run_only_allows_zero():
    ctx = StageValidationContext(4, None)
    assert get_valid_start_stages(ctx) == {0}


def test_out_of_bounds_is_invalid():
    ctx = StageValidationContext(3, [OK, OK, OK])
    assert not is_valid_start_stage(-1, ctx)
    assert not is_valid_start_stage(3, ctx)
    assert get_valid_start_stages(ctx) == {0, 1, 2}


def test_immediate_predecessor_decides():
    ctx = StageValidationContext(3, [FAIL, OK, OK])
    assert get_valid_start_stages(ctx) == {0, 2}


@pytest.mark.parametrize("start,end,statuses,kinds", [
    (0, 2, None, []),
    (1, 2, None, ["clean-run"]),
    (2, 2, [OK, FAIL, NOT], ["predecessor-not-succeeded"]),
    (1, 2, [OK, FAIL, NOT], []),
    (0, 3, [OK, OK, OK], ["bounds"]),
    (2, 1, [OK, OK, OK], ["non-contiguous"]),
])
def test_validate_stage_range_issue_kinds(start, end, statuses, kinds):
    result = validate_stage_range(StageRange(start, end), StageValidationContext(3, statuses))
    assert [i.kind for i in result.issues] == kinds
    assert result.valid is (not kinds)


# ============================================================================
# Range conversion
# ============================================================================

def test_layer_stage_round_trip_for_all_valid_ranges():
    for total in range(1, 6):
        for start in range(total):
            for end in range(start, total):
                r = StageRange(start, end)
                assert layer_range_to_stage_range(stage_range_to_layer_range(r, total), total) == r


def test_open_ends_map_to_none():
    assert stage_range_to_layer_range(StageRange(0, 4), 5) == LayerRange(None, None)
    assert stage_range_to_layer_range(StageRange(2, 3), 5) == LayerRange(2, 3)
    assert layer_range_to_stage_range(LayerRange(None, None), 5) == StageRange(0, 4)


def test_resolve_layer_range_invariant():
    total = 4
    for rf in [None, 0, 1, 2, 3]:
        for up in [None, 0, 1, 2, 3]:
            r = LayerRange(rf, up)
            s = (rf or 0)
            e = up if up is not None else total - 1
            if s <= e:
                start, end = resolve_layer_range(r, total)
                assert 0 <= start <= end <= total - 1
            else:
                with pytest.raises(ValidationError):
                    resolve_layer_range(r, total)


def test_resolve_layer_range_rejects_out_of_bounds():
    with pytest.raises(ValidationError):
        resolve_layer_range(LayerRange(None, 7), 3)
    with pytest.raises(ValidationError):
        resolve_layer_range(LayerRange(5, None), 3)
    with pytest.raises(ValidationError):
        resolve_layer_range(LayerRange(), 0)


# ============================================================================
# Totals and messaging
# ============================================================================

def _plan_with_totals():
    layers = [
        LayerInfo(index=0, cost=0.41, min_cost=0.41, max_cost=0.41),
        LayerInfo(index=1, cost=0.41, min_cost=0.30, max_cost=0.60),
        LayerInfo(index=2, cost=0.41, min_cost=0.41, max_cost=0.41),
    ]
    return PlanInfo(plan_id="p", layers=3, total_jobs=9, total_cost=1.23, min_cost=1.12,
                    max_cost=1.42, layer_breakdown=layers)


def test_unrestricted_range_totals_equal_plan_totals():
    plan = _plan_with_totals()
    totals = compute_range_totals(plan, LayerRange(None, None))
    assert totals.layers == 3
    assert totals.jobs == 9
    assert totals.cost == 1.23
    assert totals.min_cost == 1.12
    assert totals.max_cost == 1.42


def test_restricted_range_totals_sum_layers():
    plan = _plan_with_totals()
    totals = compute_range_totals(plan, LayerRange(1, 1))
    assert totals.layers == 1
    assert totals.cost == pytest.approx(0.41)
    assert totals.min_cost == pytest.approx(0.30)
    assert totals.max_cost == pytest.approx(0.60)


@pytest.mark.parametrize("start,end,expected", [
    (0, 4, "Running all stages (0-4)"),
    (2, 2, "Running stage 2 only (skipping 0-1; stopping before 3)"),
    (1, 4, "Running stages 1-4 (skipping 0)"),
    (0, 2, "Running stages 0-2 (stopping before 3)"),
    (2, 3, "Running stages 2-3 (skipping 0-1; stopping before 4)"),
])
def test_describe_stage_range(start, end, expected):
    assert describe_stage_range(start, end, 5) == expected
