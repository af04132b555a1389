"""
Tests for layered plan computation: layering, job selection, costing.
"""

import copy

import pytest

from run_control.errors import PlanningError
from run_control.models import BlueprintEdge, BlueprintGraph, BlueprintNode, CostEstimate, NodeKind
from run_control.planner import (
    PricingCostEstimator,
    compute_layer_assignments,
    compute_plan,
    count_layers,
)
from pipeline_fixtures import AUDIO, IMAGE, PRICING, SCRIPT, VIDEO, all_succeeded, build_pipeline_graph


class FlatEstimator:
    def __init__(self, cost=1.0):
        self.cost = cost
        self.seen = []

    def estimate(self, job, context):
        self.seen.append((job.producer, context.pending_upstream))
        return CostEstimate(cost=self.cost)


class BrokenEstimator:
    def estimate(self, job, context):
        raise RuntimeError("pricing table unavailable")


# ============================================================================
# Layering
# ============================================================================

def test_longest_path_layering(pipeline_graph):
    layers = compute_layer_assignments(pipeline_graph)
    assert layers == {
        "ScriptProducer": 0,
        "ImageProducer": 1,
        "AudioProducer": 1,
        "VideoProducer": 2,
    }
    assert count_layers(pipeline_graph) == 3


def test_longest_path_uses_deepest_dependency():
    # A -> B -> C and A -> C: C must sit above B, not beside it
    g = BlueprintGraph(
        nodes=[BlueprintNode(n, NodeKind.PRODUCER) for n in ("A", "B", "C")],
        edges=[BlueprintEdge("A", "B"), BlueprintEdge("B", "C"), BlueprintEdge("A", "C")],
    )
    assert compute_layer_assignments(g) == {"A": 0, "B": 1, "C": 2}


def test_conditional_edges_count_for_layering():
    graph = build_pipeline_graph(conditional_audio=True)
    plan = compute_plan(graph, {}, cost_estimator=FlatEstimator())
    audio = [j for j in plan.layer_breakdown[1].jobs if j.producer == "AudioProducer"][0]
    assert audio.layer_index == 1
    assert audio.conditional is True
    assert plan.layer_breakdown[2].jobs[0].producer == "VideoProducer"


def test_cycle_raises_planning_error():
    g = BlueprintGraph(
        nodes=[BlueprintNode("A", NodeKind.PRODUCER), BlueprintNode("B", NodeKind.PRODUCER)],
        edges=[BlueprintEdge("A", "B"), BlueprintEdge("B", "A")],
    )
    with pytest.raises(PlanningError) as ei:
        compute_plan(g, {}, cost_estimator=FlatEstimator())
    assert "cycle" in str(ei.value)


def test_dangling_reference_raises_planning_error(pipeline_graph):
    pipeline_graph.edges.append(BlueprintEdge("Input:Missing", "ScriptProducer"))
    with pytest.raises(PlanningError) as ei:
        compute_plan(pipeline_graph, {}, cost_estimator=FlatEstimator())
    assert "Input:Missing" in str(ei.value)


def test_empty_graph_has_no_layers():
    plan = compute_plan(BlueprintGraph(), {}, cost_estimator=FlatEstimator())
    assert plan.layers == 0
    assert plan.total_jobs == 0
    assert plan.layer_breakdown == []


# ============================================================================
# Job selection
# ============================================================================

def test_clean_run_schedules_every_job(pipeline_graph):
    plan = compute_plan(pipeline_graph, {}, cost_estimator=FlatEstimator())
    assert plan.layers == 3
    assert plan.total_jobs == 4
    assert [l.job_count for l in plan.layer_breakdown] == [1, 2, 1]
    assert plan.surgical_info is None


def test_nothing_dirty_means_no_jobs(pipeline_graph):
    plan = compute_plan(pipeline_graph, all_succeeded(), cost_estimator=FlatEstimator())
    assert plan.total_jobs == 0
    assert plan.layers == 3
    assert all(l.job_count == 0 for l in plan.layer_breakdown)


def test_dirty_job_propagates_downstream(pipeline_graph):
    existing = all_succeeded()
    existing[IMAGE] = "failed"
    plan = compute_plan(pipeline_graph, existing, cost_estimator=FlatEstimator())
    producers = {j.producer for l in plan.layer_breakdown for j in l.jobs}
    assert producers == {"ImageProducer", "VideoProducer"}


def test_missing_artifact_is_dirty(pipeline_graph):
    existing = all_succeeded()
    del existing[SCRIPT]
    plan = compute_plan(pipeline_graph, existing, cost_estimator=FlatEstimator())
    assert plan.total_jobs == 4


def test_re_run_from_excludes_lower_layers_but_reports_them(pipeline_graph):
    plan = compute_plan(pipeline_graph, all_succeeded(), 1, cost_estimator=FlatEstimator())
    assert plan.re_run_from == 1
    assert plan.layers == 3
    assert plan.layer_breakdown[0].skipped is True
    assert plan.layer_breakdown[0].job_count == 0
    assert [l.job_count for l in plan.layer_breakdown[1:]] == [2, 1]
    assert not plan.layer_breakdown[1].skipped


def test_re_run_from_out_of_range(pipeline_graph):
    with pytest.raises(PlanningError):
        compute_plan(pipeline_graph, {}, 3, cost_estimator=FlatEstimator())


def test_surgical_plan_targets_source_and_downstream(pipeline_graph):
    plan = compute_plan(pipeline_graph, all_succeeded(), 2, cost_estimator=FlatEstimator(),
                        target_artifact_ids=[AUDIO])
    producers = {j.producer for l in plan.layer_breakdown for j in l.jobs}
    assert producers == {"AudioProducer", "VideoProducer"}
    assert plan.re_run_from is None
    assert len(plan.surgical_info) == 1
    assert plan.surgical_info[0].target_artifact_id == AUDIO
    assert plan.surgical_info[0].source_job_id == "Producer:AudioProducer"


def test_surgical_unknown_target(pipeline_graph):
    with pytest.raises(PlanningError):
        compute_plan(pipeline_graph, {}, cost_estimator=FlatEstimator(),
                     target_artifact_ids=["Artifact:Nope.Out[0]"])


def test_compute_plan_does_not_mutate_inputs(pipeline_graph):
    existing = all_succeeded()
    existing[VIDEO] = "failed"
    before_graph = copy.deepcopy(pipeline_graph)
    before_existing = dict(existing)
    compute_plan(pipeline_graph, existing, cost_estimator=FlatEstimator())
    assert pipeline_graph == before_graph
    assert existing == before_existing


# ============================================================================
# Costing
# ============================================================================

def test_cost_aggregation_with_pricing(pipeline_graph):
    plan = compute_plan(pipeline_graph, {}, cost_estimator=PricingCostEstimator(PRICING))
    # image depends on a script that this run has not produced yet
    image = plan.layer_breakdown[1].jobs[1] if plan.layer_breakdown[1].jobs[1].producer == "ImageProducer" \
        else plan.layer_breakdown[1].jobs[0]
    assert image.has_placeholder is True
    assert image.min_cost == 0.02 and image.max_cost == 0.08
    assert image.estimated_cost == pytest.approx(0.05)
    assert plan.has_placeholders is True
    assert plan.has_ranges is True
    assert plan.total_cost == pytest.approx(0.01 + 0.05 + 0.10 + 0.50)
    assert plan.min_cost == pytest.approx(0.01 + 0.02 + 0.10 + 0.50)
    assert plan.max_cost == pytest.approx(0.01 + 0.08 + 0.10 + 0.50)
    assert plan.layer_breakdown[1].has_placeholders is True
    assert plan.layer_breakdown[1].cost == pytest.approx(0.15)
    assert plan.cost_by_producer["ImageProducer"].has_ranges is True
    assert plan.cost_by_producer["VideoProducer"].count == 1
    assert plan.missing_providers == []


def test_upstream_already_produced_is_not_a_placeholder(pipeline_graph):
    existing = all_succeeded()
    existing[IMAGE] = "failed"
    plan = compute_plan(pipeline_graph, existing, cost_estimator=PricingCostEstimator(PRICING))
    image = plan.layer_breakdown[1].jobs[0]
    assert image.producer == "ImageProducer"
    assert image.has_placeholder is False
    assert image.estimated_cost == pytest.approx(0.04)


def test_missing_pricing_is_placeholder_and_reported(pipeline_graph):
    pricing = dict(PRICING)
    del pricing["AudioProducer"]
    plan = compute_plan(pipeline_graph, {}, cost_estimator=PricingCostEstimator(pricing))
    audio = [j for j in plan.layer_breakdown[1].jobs if j.producer == "AudioProducer"][0]
    assert audio.estimated_cost == 0.0
    assert audio.has_placeholder is True
    assert plan.missing_providers == ["elevenlabs"]


def test_estimator_receives_pending_upstream(pipeline_graph):
    est = FlatEstimator()
    compute_plan(pipeline_graph, {}, cost_estimator=est)
    seen = dict(est.seen)
    assert seen["ScriptProducer"] == frozenset()
    assert seen["VideoProducer"] == frozenset({"ImageProducer", "AudioProducer"})


def test_cost_model_failure_is_planning_error(pipeline_graph):
    with pytest.raises(PlanningError) as ei:
        compute_plan(pipeline_graph, {}, cost_estimator=BrokenEstimator())
    assert "pricing table unavailable" in str(ei.value)
