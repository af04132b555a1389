"""In-process generation service.

Serves plan, execute, stream and cancel requests on top of the planner, the
job manager and a layered runner. The HTTP router delegates to it, and it also
satisfies the PlanService and Executor protocols directly so a state machine
can drive a blueprint without a server in between.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from .errors import PlanningError, ValidationError
from .job_manager import GenerationJob, JobManager
from .models import BlueprintGraph, LayerRange, PlanInfo
from .plan_runner import LayeredPlanRunner
from .planner import CostEstimator, compute_plan
from .schemas import (
    ArtifactInfo,
    BlueprintGraphModel,
    ErrorEvent,
    ExecuteRequest,
    PlanRequest,
    artifact_status_map,
)
from .stage_validator import resolve_layer_range

logger = logging.getLogger(__name__)


@dataclass
class BlueprintSnapshot:
    graph: BlueprintGraph
    artifacts: List[ArtifactInfo] = field(default_factory=list)


class BlueprintSource(Protocol):
    async def load(self, blueprint: str, build_id: Optional[str] = None) -> BlueprintSnapshot:
        ...


class InMemoryBlueprintSource:
    def __init__(self, blueprints: Optional[Dict[str, BlueprintSnapshot]] = None):
        self._blueprints: Dict[str, BlueprintSnapshot] = dict(blueprints or {})

    def add(self, name: str, snapshot: BlueprintSnapshot) -> None:
        self._blueprints[name] = snapshot

    def record_artifacts(self, name: str, artifacts: List[ArtifactInfo]) -> None:
        snap = self._blueprints[name]
        known = {a.id: a for a in snap.artifacts}
        for a in artifacts:
            known[a.id] = a
        snap.artifacts = list(known.values())

    async def load(self, blueprint: str, build_id: Optional[str] = None) -> BlueprintSnapshot:
        snap = self._blueprints.get(blueprint)
        if snap is None:
            raise PlanningError(f"Unknown blueprint '{blueprint}'")
        return snap


def load_graph_file(path: str) -> BlueprintGraph:
    with open(path, "r", encoding="utf-8") as fh:
        return BlueprintGraphModel.model_validate(json.load(fh)).to_domain()


def load_manifest_file(path: str) -> List[ArtifactInfo]:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("artifacts", [])
    return [ArtifactInfo.model_validate(a) for a in data]


class GenerationService:
    def __init__(
        self,
        source: BlueprintSource,
        jobs: JobManager,
        runner: LayeredPlanRunner,
        cost_estimator: CostEstimator,
    ):
        self.source = source
        self.jobs = jobs
        self.runner = runner
        self.cost_estimator = cost_estimator

    async def create_plan(self, request: PlanRequest) -> PlanInfo:
        snap = await self.source.load(request.blueprint, request.build_id)
        plan = compute_plan(
            snap.graph,
            artifact_status_map(snap.artifacts),
            request.re_run_from,
            cost_estimator=self.cost_estimator,
            target_artifact_ids=request.artifact_ids,
            blueprint=request.blueprint,
            build_id=request.build_id,
        )
        self.jobs.cache_plan(plan, snap.graph)
        logger.info("plan %s ready for %s: %d layer(s), %d job(s)",
                    plan.plan_id, request.blueprint, plan.layers, plan.total_jobs)
        return plan

    async def start_execution(self, request: ExecuteRequest) -> str:
        plan = self.jobs.get_plan(request.plan_id).plan
        layer_range = LayerRange(re_run_from=request.re_run_from, up_to_layer=request.up_to_layer)
        if plan.layers == 0:
            raise ValidationError("Plan has no layers to execute")
        resolve_layer_range(layer_range, plan.layers)
        job = self.jobs.create_job(plan.plan_id, blueprint=plan.blueprint, dry_run=request.dry_run)
        job.task = asyncio.create_task(self._drive(job, plan, layer_range, request.concurrency))
        return job.job_id

    async def _drive(self, job: GenerationJob, plan: PlanInfo, layer_range: LayerRange,
                     concurrency: Optional[int]) -> None:
        self.jobs.mark_running(job.job_id)

        async def emit(event: Any) -> None:
            await self.jobs.publish(job.job_id, event)

        try:
            await self.runner.run(plan, layer_range, emit, job.cancel_event,
                                  dry_run=job.dry_run, concurrency=concurrency)
        except Exception as exc:
            logger.exception("job %s aborted", job.job_id)
            await emit(ErrorEvent(message=str(exc) or type(exc).__name__, code=getattr(exc, "code", None)))

    async def stream_events(self, job_id: str) -> AsyncIterator[Any]:
        stream = await self.jobs.subscribe(job_id)
        try:
            async for event in stream:
                yield event
        finally:
            self.jobs.unsubscribe(job_id, stream)

    async def cancel(self, job_id: str) -> None:
        self.jobs.request_cancel(job_id)
