"""Start-stage validation and layer/stage range conversion.

A stage is the range picker's name for a layer index. Skipping stages reuses
their artifacts, so a stage is a legal start for a partial re-run only when
the stage immediately before it succeeded. Stage 0 is always legal, and a
clean run (no status history at all) can only start at 0.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from .errors import ValidationError
from .models import LayerRange, PlanInfo, StageRange, StageStatus


@dataclass
class StageValidationContext:
    total_stages: int
    # None means a clean run
    stage_statuses: Optional[Sequence[StageStatus]] = None


@dataclass
class StageRangeIssue:
    kind: str  # bounds | non-contiguous | clean-run | predecessor-not-succeeded
    message: str
    stage: Optional[int] = None


@dataclass
class StageValidationResult:
    valid: bool
    issues: List[StageRangeIssue] = field(default_factory=list)


@dataclass
class RangeTotals:
    layers: int
    jobs: int
    cost: float
    min_cost: float
    max_cost: float
    has_placeholders: bool = False


def is_valid_start_stage(index: int, ctx: StageValidationContext) -> bool:
    if index < 0 or index >= ctx.total_stages:
        return False
    if index == 0:
        return True
    if ctx.stage_statuses is None:
        return False
    if index - 1 >= len(ctx.stage_statuses):
        return False
    return ctx.stage_statuses[index - 1] == StageStatus.SUCCEEDED


def get_valid_start_stages(ctx: StageValidationContext) -> Set[int]:
    return {i for i in range(ctx.total_stages) if is_valid_start_stage(i, ctx)}


def validate_stage_range(stage_range: StageRange, ctx: StageValidationContext) -> StageValidationResult:
    issues: List[StageRangeIssue] = []
    start, end = stage_range.start_stage, stage_range.end_stage
    last = ctx.total_stages - 1
    if start < 0 or start > last:
        issues.append(StageRangeIssue("bounds", f"Start stage {start} is outside 0-{last}", start))
    if end < 0 or end > last:
        issues.append(StageRangeIssue("bounds", f"End stage {end} is outside 0-{last}", end))
    if end < start:
        issues.append(StageRangeIssue("non-contiguous", f"End stage {end} is before start stage {start}", end))
    if not issues and start > 0:
        if ctx.stage_statuses is None:
            issues.append(StageRangeIssue("clean-run", "A clean run must start at stage 0", start))
        elif not is_valid_start_stage(start, ctx):
            issues.append(StageRangeIssue(
                "predecessor-not-succeeded",
                f"Stage {start - 1} has not succeeded, so stage {start} cannot be a start stage",
                start,
            ))
    return StageValidationResult(valid=not issues, issues=issues)


# ==========================================================================
# Layer range <-> stage range
# ==========================================================================

def layer_range_to_stage_range(layer_range: LayerRange, total: int) -> StageRange:
    start = layer_range.re_run_from if layer_range.re_run_from is not None else 0
    end = layer_range.up_to_layer if layer_range.up_to_layer is not None else total - 1
    return StageRange(start_stage=start, end_stage=end)


def stage_range_to_layer_range(stage_range: StageRange, total: int) -> LayerRange:
    return LayerRange(
        re_run_from=None if stage_range.start_stage == 0 else stage_range.start_stage,
        up_to_layer=None if stage_range.end_stage == total - 1 else stage_range.end_stage,
    )


def resolve_layer_range(layer_range: LayerRange, total: int) -> Tuple[int, int]:
    """Resolve open ends and enforce 0 <= start <= end <= total-1."""
    if total < 1:
        raise ValidationError("Plan has no layers")
    stage_range = layer_range_to_stage_range(layer_range, total)
    start, end = stage_range.start_stage, stage_range.end_stage
    if not 0 <= start <= total - 1:
        raise ValidationError(f"reRunFrom {start} is outside layers 0-{total - 1}")
    if not 0 <= end <= total - 1:
        raise ValidationError(f"upToLayer {end} is outside layers 0-{total - 1}")
    if end < start:
        raise ValidationError(f"upToLayer {end} is before reRunFrom {start}")
    return start, end


def compute_range_totals(plan_info: PlanInfo, layer_range: LayerRange) -> RangeTotals:
    """Layer/job/cost totals for the selected range.

    The unrestricted range reports the plan's own totals unchanged.
    """
    if layer_range.re_run_from in (None, 0) and layer_range.up_to_layer in (None, plan_info.layers - 1):
        return RangeTotals(
            layers=plan_info.layers,
            jobs=plan_info.total_jobs,
            cost=plan_info.total_cost,
            min_cost=plan_info.min_cost,
            max_cost=plan_info.max_cost,
            has_placeholders=plan_info.has_placeholders,
        )
    start, end = resolve_layer_range(layer_range, plan_info.layers)
    selected = [l for l in plan_info.layer_breakdown if start <= l.index <= end]
    return RangeTotals(
        layers=end - start + 1,
        jobs=sum(l.job_count for l in selected),
        cost=sum(l.cost for l in selected),
        min_cost=sum(l.min_cost for l in selected),
        max_cost=sum(l.max_cost for l in selected),
        has_placeholders=any(l.has_placeholders for l in selected),
    )


def describe_stage_range(start: int, end: int, total: int) -> str:
    last = total - 1
    if start == 0 and end == last:
        return f"Running all stages (0-{last})"
    head = f"Running stage {start} only" if start == end else f"Running stages {start}-{end}"
    notes = []
    if start > 0:
        notes.append("skipping 0" if start == 1 else f"skipping 0-{start - 1}")
    if end < last:
        notes.append(f"stopping before {end + 1}")
    return f"{head} ({'; '.join(notes)})" if notes else head
