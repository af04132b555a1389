"""In-memory plan cache and generation job registry.

Plans are cached for PLAN_CACHE_TTL_SECONDS so an execute request can refer to
a plan by id. Jobs keep their full event history so a subscriber that joins
late still receives every event in order; finished jobs are pruned after
JOB_RETENTION_SECONDS.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from . import metrics
from .config import get_settings
from .errors import JobNotFoundError, PlanNotFoundError
from .log_stream import EventStream
from .models import BlueprintGraph, PlanInfo
from .schemas import TERMINAL_EVENT_TYPES, JobStatusResponse

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class CachedPlan:
    plan: PlanInfo
    graph: Optional[BlueprintGraph]
    expires_at: float


@dataclass
class GenerationJob:
    job_id: str
    plan_id: str
    blueprint: Optional[str] = None
    dry_run: bool = False
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    finished_clock: Optional[float] = None
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    events: List[Any] = field(default_factory=list)
    subscribers: List[EventStream] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED

    def to_response(self) -> JobStatusResponse:
        return JobStatusResponse(
            job_id=self.job_id,
            plan_id=self.plan_id,
            blueprint=self.blueprint,
            status=self.status.value,
            dry_run=self.dry_run,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
            summary=self.summary,
        )


def _new_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


class JobManager:
    def __init__(
        self,
        plan_ttl: Optional[float] = None,
        retention: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = get_settings()
        self._plan_ttl = plan_ttl if plan_ttl is not None else cfg.PLAN_CACHE_TTL_SECONDS
        self._retention = retention if retention is not None else cfg.JOB_RETENTION_SECONDS
        self._clock = clock
        self._plans: Dict[str, CachedPlan] = {}
        self._jobs: Dict[str, GenerationJob] = {}
        self._prune_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # plans
    # ------------------------------------------------------------------

    def cache_plan(self, plan: PlanInfo, graph: Optional[BlueprintGraph] = None) -> None:
        self._plans[plan.plan_id] = CachedPlan(plan=plan, graph=graph, expires_at=self._clock() + self._plan_ttl)

    def get_plan(self, plan_id: str) -> CachedPlan:
        entry = self._plans.get(plan_id)
        if entry is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        if entry.expires_at <= self._clock():
            del self._plans[plan_id]
            raise PlanNotFoundError(f"Plan {plan_id} has expired")
        return entry

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    def create_job(self, plan_id: str, blueprint: Optional[str] = None, dry_run: bool = False) -> GenerationJob:
        job = GenerationJob(job_id=_new_id("job"), plan_id=plan_id, blueprint=blueprint, dry_run=dry_run)
        self._jobs[job.job_id] = job
        logger.info("created job %s for plan %s (dry_run=%s)", job.job_id, plan_id, dry_run)
        return job

    def get_job(self, job_id: str) -> GenerationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self) -> List[GenerationJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def mark_running(self, job_id: str) -> None:
        job = self.get_job(job_id)
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        metrics.active_jobs.inc()

    def request_cancel(self, job_id: str) -> bool:
        """Signal cancellation. Returns False when the job already finished."""
        job = self.get_job(job_id)
        if job.finished:
            return False
        job.cancel_event.set()
        logger.info("cancellation requested for job %s", job_id)
        return True

    async def publish(self, job_id: str, event: Any) -> None:
        job = self.get_job(job_id)
        job.events.append(event)
        self._apply(job, event)
        for stream in list(job.subscribers):
            if stream.closed:
                continue
            await stream.publish(event)
        if event.type in TERMINAL_EVENT_TYPES:
            for stream in list(job.subscribers):
                await stream.close()
            job.subscribers.clear()

    def _apply(self, job: GenerationJob, event: Any) -> None:
        kind = event.type
        if kind not in TERMINAL_EVENT_TYPES:
            return
        was_running = job.status == JobStatus.RUNNING
        if kind == "execution-complete":
            job.status = JobStatus.FAILED if event.status == "failed" else JobStatus.COMPLETED
            job.summary = {"status": event.status, **event.summary.model_dump()}
        elif kind == "execution-cancelled":
            job.status = JobStatus.CANCELLED
        else:
            job.status = JobStatus.FAILED
            job.error = event.message
        job.completed_at = datetime.now(timezone.utc)
        job.finished_clock = self._clock()
        if was_running:
            metrics.active_jobs.dec()

    async def subscribe(self, job_id: str) -> EventStream:
        """Open a stream that replays the job's history, then follows it live."""
        job = self.get_job(job_id)
        history = list(job.events)
        stream = EventStream(maxsize=get_settings().STREAM_QUEUE_SIZE + len(history))
        for event in history:
            await stream.publish(event)
        if job.finished:
            await stream.close()
        else:
            job.subscribers.append(stream)
        return stream

    def unsubscribe(self, job_id: str, stream: EventStream) -> None:
        job = self._jobs.get(job_id)
        if job is not None and stream in job.subscribers:
            job.subscribers.remove(stream)

    # ------------------------------------------------------------------
    # retention
    # ------------------------------------------------------------------

    def prune(self) -> int:
        now = self._clock()
        expired_plans = [pid for pid, entry in self._plans.items() if entry.expires_at <= now]
        for pid in expired_plans:
            del self._plans[pid]
        old_jobs = [
            jid for jid, job in self._jobs.items()
            if job.finished and job.finished_clock is not None and now - job.finished_clock >= self._retention
        ]
        for jid in old_jobs:
            del self._jobs[jid]
        if expired_plans or old_jobs:
            logger.debug("pruned %d plan(s) and %d job(s)", len(expired_plans), len(old_jobs))
        return len(expired_plans) + len(old_jobs)

    def start_pruning(self, interval: Optional[float] = None) -> None:
        if self._prune_task is not None:
            return
        interval = interval if interval is not None else get_settings().PRUNE_INTERVAL_SECONDS

        async def _loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    self.prune()
                except Exception:
                    logger.exception("job prune failed")

        self._prune_task = asyncio.create_task(_loop())

    async def stop(self) -> None:
        task, self._prune_task = self._prune_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for job in self._jobs.values():
            if job.task is not None and not job.task.done():
                job.cancel_event.set()
