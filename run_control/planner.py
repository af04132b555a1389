"""Layered, cost-annotated execution planning.

``compute_plan`` is a pure function of the blueprint graph, the known state
of existing artifacts and an external cost estimator. Producers are layered
by longest path: a producer sits one layer above the deepest producer it
depends on. Conditional edges count as dependencies for layering even though
the conditional producer may be skipped at run time.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Set, Tuple
from uuid import uuid4

from .errors import PlanningError
from .models import (
    BlueprintGraph,
    BlueprintNode,
    CostEstimate,
    Job,
    LayerInfo,
    NodeKind,
    PlanInfo,
    ProducerCost,
    SurgicalTarget,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"


@dataclass
class CostContext:
    existing_artifacts: Mapping[str, str]
    # direct upstream producers whose output this run has not produced yet
    pending_upstream: FrozenSet[str] = frozenset()


class CostEstimator(Protocol):
    def estimate(self, job: Job, context: CostContext) -> CostEstimate:
        ...


@dataclass
class PriceEntry:
    cost: float = 0.0
    min_cost: Optional[float] = None
    max_cost: Optional[float] = None
    depends_on_upstream: bool = False


class PricingCostEstimator:
    """Catalog-backed estimator keyed by producer name or ``provider/model``.

    A producer missing from the catalog costs 0 and is flagged as a
    placeholder. A producer whose price depends on upstream output that is not
    produced yet is a placeholder too; when the catalog bounds it, the point
    estimate is the midpoint of the bounds.
    """

    def __init__(self, catalog: Mapping[str, Any]):
        self._catalog: Dict[str, PriceEntry] = {}
        for key, entry in catalog.items():
            if isinstance(entry, PriceEntry):
                self._catalog[key] = entry
            elif isinstance(entry, Mapping):
                self._catalog[key] = PriceEntry(**entry)
            else:
                self._catalog[key] = PriceEntry(cost=float(entry))

    def _lookup(self, job: Job) -> Optional[PriceEntry]:
        entry = self._catalog.get(job.producer)
        if entry is None and job.provider:
            entry = self._catalog.get(f"{job.provider}/{job.model}" if job.model else job.provider)
        return entry

    def estimate(self, job: Job, context: CostContext) -> CostEstimate:
        entry = self._lookup(job)
        if entry is None:
            return CostEstimate(cost=0.0, is_placeholder=True, missing_pricing=True,
                                note=f"no pricing for {job.producer}")
        if entry.depends_on_upstream and context.pending_upstream:
            if entry.min_cost is not None and entry.max_cost is not None:
                mid = (entry.min_cost + entry.max_cost) / 2.0
                return CostEstimate(cost=mid, is_placeholder=True,
                                    min_cost=entry.min_cost, max_cost=entry.max_cost)
            return CostEstimate(cost=entry.cost, is_placeholder=True)
        return CostEstimate(cost=entry.cost)


# ==========================================================================
# Topology
# ==========================================================================

@dataclass
class _Topology:
    nodes: Dict[str, BlueprintNode]
    layers: Dict[str, int]
    deps: Dict[str, Set[str]]
    dependents: Dict[str, Set[str]]
    preds: Dict[str, List[str]]
    conditional: Set[str] = field(default_factory=set)
    produces: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def layer_count(self) -> int:
        return (max(self.layers.values()) + 1) if self.layers else 0


def _build_topology(graph: BlueprintGraph) -> _Topology:
    nodes: Dict[str, BlueprintNode] = {}
    for node in graph.nodes:
        if node.id in nodes:
            raise PlanningError(f"Duplicate node id '{node.id}'")
        nodes[node.id] = node

    preds: Dict[str, List[str]] = {nid: [] for nid in nodes}
    succs: Dict[str, List[str]] = {nid: [] for nid in nodes}
    conditional: Set[str] = set()
    for edge in graph.edges:
        for end in (edge.source, edge.target):
            if end not in nodes:
                raise PlanningError(f"Edge {edge.source} -> {edge.target} references unknown node '{end}'")
        preds[edge.target].append(edge.source)
        succs[edge.source].append(edge.target)
        if edge.conditional:
            conditional.add(edge.target)

    # Kahn over the whole graph; anything left unprocessed sits on a cycle
    indegree = {nid: len(p) for nid, p in preds.items()}
    queue = deque(sorted(nid for nid, d in indegree.items() if d == 0))
    order: List[str] = []
    while queue:
        nid = queue.popleft()
        order.append(nid)
        for nxt in succs[nid]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)
    if len(order) != len(nodes):
        stuck = sorted(nid for nid, d in indegree.items() if d > 0)
        raise PlanningError(f"Blueprint graph contains a cycle involving: {', '.join(stuck)}")

    # nearest producer ancestors, looking through input/output nodes
    upstream: Dict[str, Set[str]] = {}
    for nid in order:
        found: Set[str] = set()
        for p in preds[nid]:
            if nodes[p].kind == NodeKind.PRODUCER:
                found.add(p)
            else:
                found |= upstream[p]
        upstream[nid] = found

    deps: Dict[str, Set[str]] = {}
    dependents: Dict[str, Set[str]] = {}
    layers: Dict[str, int] = {}
    produces: Dict[str, List[str]] = {}
    for nid in order:
        node = nodes[nid]
        if node.kind != NodeKind.PRODUCER:
            continue
        deps[nid] = upstream[nid]
        dependents.setdefault(nid, set())
        for d in deps[nid]:
            dependents.setdefault(d, set()).add(nid)
        layers[nid] = 1 + max((layers[d] for d in deps[nid]), default=-1)
        if node.produces:
            produces[nid] = list(node.produces)
        else:
            produces[nid] = [s for s in succs[nid] if nodes[s].kind == NodeKind.OUTPUT]

    return _Topology(nodes=nodes, layers=layers, deps=deps, dependents=dependents,
                     preds=preds, conditional=conditional, produces=produces)


def compute_layer_assignments(graph: BlueprintGraph) -> Dict[str, int]:
    """Return producer node id -> layer index."""
    return dict(_build_topology(graph).layers)


def count_layers(graph: BlueprintGraph) -> int:
    return _build_topology(graph).layer_count


def _downstream_closure(topo: _Topology, seeds: Iterable[str]) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(seeds)
    while queue:
        nid = queue.popleft()
        if nid in seen:
            continue
        seen.add(nid)
        queue.extend(topo.dependents.get(nid, ()))
    return seen


def _is_dirty(topo: _Topology, nid: str, existing: Mapping[str, str]) -> bool:
    artifacts = topo.produces.get(nid) or []
    if not artifacts:
        return True
    return any(existing.get(a) != SUCCEEDED for a in artifacts)


def _resolve_surgical(topo: _Topology, targets: Iterable[str]) -> Tuple[Set[str], List[SurgicalTarget]]:
    by_artifact: Dict[str, str] = {}
    for nid, artifacts in topo.produces.items():
        for a in artifacts:
            by_artifact[a] = nid
    sources: List[str] = []
    info: List[SurgicalTarget] = []
    for artifact_id in targets:
        source = by_artifact.get(artifact_id)
        if source is None:
            raise PlanningError(f"Target artifact '{artifact_id}' is not produced by any producer")
        sources.append(source)
        info.append(SurgicalTarget(target_artifact_id=artifact_id, source_job_id=_job_id(source)))
    return _downstream_closure(topo, sources), info


def _job_id(node_id: str) -> str:
    return f"Producer:{node_id}"


def _new_plan_id() -> str:
    return f"plan-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


# ==========================================================================
# Plan computation
# ==========================================================================

def compute_plan(
    graph: BlueprintGraph,
    existing_artifacts: Optional[Mapping[str, str]],
    re_run_from: Optional[int] = None,
    *,
    cost_estimator: CostEstimator,
    target_artifact_ids: Optional[List[str]] = None,
    blueprint: Optional[str] = None,
    build_id: Optional[str] = None,
    plan_id: Optional[str] = None,
) -> PlanInfo:
    """Compute a layered, cost-annotated plan.

    ``existing_artifacts`` maps artifact id to its last recorded status.
    Selection precedence: surgical targets, then ``re_run_from``, then dirty
    detection (missing or non-succeeded artifacts plus everything downstream).
    Raises PlanningError on a cycle, a dangling edge, an unknown target or a
    cost-model failure.
    """
    existing = dict(existing_artifacts or {})
    topo = _build_topology(graph)
    total_layers = topo.layer_count

    surgical_info: Optional[List[SurgicalTarget]] = None
    if target_artifact_ids:
        selected, surgical_info = _resolve_surgical(topo, target_artifact_ids)
        re_run_from = None
    elif re_run_from is not None:
        if total_layers == 0 or not 0 <= re_run_from < total_layers:
            raise PlanningError(f"reRunFrom {re_run_from} is outside layers 0-{total_layers - 1}")
        selected = {nid for nid, lvl in topo.layers.items() if lvl >= re_run_from}
    else:
        dirty = [nid for nid in topo.layers if _is_dirty(topo, nid, existing)]
        selected = _downstream_closure(topo, dirty)

    jobs_by_layer: Dict[int, List[Job]] = {i: [] for i in range(total_layers)}
    cost_by_producer: Dict[str, ProducerCost] = {}
    missing: List[str] = []
    for nid in sorted(selected, key=lambda n: (topo.layers[n], n)):
        node = topo.nodes[nid]
        job = Job(
            job_id=_job_id(nid),
            producer=node.producer_name,
            layer_index=topo.layers[nid],
            inputs=list(topo.preds[nid]),
            produces=list(topo.produces.get(nid, [])),
            provider=node.provider,
            model=node.model,
            conditional=nid in topo.conditional,
        )
        pending = frozenset(topo.nodes[d].producer_name for d in topo.deps[nid] if d in selected)
        context = CostContext(existing_artifacts=existing, pending_upstream=pending)
        try:
            estimate = cost_estimator.estimate(job, context)
        except PlanningError:
            raise
        except Exception as exc:
            raise PlanningError(f"Cost estimation failed for {job.producer}: {exc}") from exc

        job.estimated_cost = float(estimate.cost)
        job.has_placeholder = bool(estimate.is_placeholder)
        if estimate.has_range:
            job.min_cost = float(estimate.min_cost)
            job.max_cost = float(estimate.max_cost)
        if estimate.missing_pricing:
            name = job.provider or job.producer
            if name not in missing:
                missing.append(name)
        jobs_by_layer[job.layer_index].append(job)

        agg = cost_by_producer.setdefault(job.producer, ProducerCost(name=job.producer))
        agg.count += 1
        agg.cost += job.estimated_cost
        agg.min_cost += job.low
        agg.max_cost += job.high
        agg.has_placeholders = agg.has_placeholders or job.has_placeholder
        agg.has_ranges = agg.has_ranges or job.has_range

    breakdown: List[LayerInfo] = []
    for index in range(total_layers):
        jobs = jobs_by_layer[index]
        breakdown.append(LayerInfo(
            index=index,
            jobs=jobs,
            cost=sum(j.estimated_cost for j in jobs),
            min_cost=sum(j.low for j in jobs),
            max_cost=sum(j.high for j in jobs),
            has_placeholders=any(j.has_placeholder for j in jobs),
            skipped=re_run_from is not None and index < re_run_from,
        ))

    all_jobs = [j for layer in breakdown for j in layer.jobs]
    plan = PlanInfo(
        plan_id=plan_id or _new_plan_id(),
        layers=total_layers,
        total_jobs=len(all_jobs),
        total_cost=sum(layer.cost for layer in breakdown),
        min_cost=sum(layer.min_cost for layer in breakdown),
        max_cost=sum(layer.max_cost for layer in breakdown),
        has_ranges=any(j.has_range for j in all_jobs),
        has_placeholders=any(j.has_placeholder for j in all_jobs),
        layer_breakdown=breakdown,
        cost_by_producer=cost_by_producer,
        surgical_info=surgical_info,
        re_run_from=re_run_from,
        missing_providers=missing,
        blueprint=blueprint,
        build_id=build_id,
    )
    logger.debug("Computed plan %s: %d layers, %d jobs, cost %.4f",
                 plan.plan_id, plan.layers, plan.total_jobs, plan.total_cost)
    return plan
