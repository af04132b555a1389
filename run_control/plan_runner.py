import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from .errors import ProducerError
from .models import Job, LayerInfo, LayerRange, PlanInfo
from .schemas import (
    ExecutionCancelledEvent,
    ExecutionCompleteEvent,
    ExecutionSummary,
    JobCompleteEvent,
    JobStartEvent,
    LayerCompleteEvent,
    LayerSkippedEvent,
    LayerStartEvent,
    PlanReadyEvent,
)
from .stage_validator import resolve_layer_range

logger = logging.getLogger(__name__)

Emit = Callable[[object], Awaitable[None]]


class ProducerInvoker(Protocol):
    async def invoke(self, job: Job, *, dry_run: bool) -> Optional[str]:
        """Run one job. Return "skipped" for a conditional job that did not run."""
        ...


class SimulatedInvoker:
    """Dry-run invoker: every job succeeds without side effects."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []

    async def invoke(self, job: Job, *, dry_run: bool) -> Optional[str]:
        self.calls.append(job.job_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        return None


class LayeredPlanRunner:
    def __init__(self, invoker: ProducerInvoker, dry_run_invoker: Optional[ProducerInvoker] = None,
                 concurrency: int = 1):
        self.invoker = invoker
        self.dry_run_invoker = dry_run_invoker or SimulatedInvoker()
        self.concurrency = max(1, concurrency)

    async def run(
        self,
        plan: PlanInfo,
        layer_range: LayerRange,
        emit: Emit,
        cancel_event: asyncio.Event,
        dry_run: bool = False,
        concurrency: Optional[int] = None,
    ) -> None:
        start, end = resolve_layer_range(layer_range, plan.layers)
        invoker = self.dry_run_invoker if dry_run else self.invoker
        semaphore = asyncio.Semaphore(max(1, concurrency or self.concurrency))
        summary = ExecutionSummary()
        started = time.monotonic()

        await emit(PlanReadyEvent(plan_id=plan.plan_id, total_layers=plan.layers, total_jobs=plan.total_jobs))
        for layer in plan.layer_breakdown:
            if cancel_event.is_set() or layer.index > end:
                break
            if layer.index < start or layer.job_count == 0:
                await emit(LayerSkippedEvent(layer_index=layer.index, reason="using existing artifacts"))
                continue
            await self._run_layer(layer, invoker, semaphore, emit, cancel_event, dry_run, summary)
            summary.layers_run += 1

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        if cancel_event.is_set():
            logger.info("plan %s cancelled after %d layer(s)", plan.plan_id, summary.layers_run)
            await emit(ExecutionCancelledEvent())
            return
        if summary.jobs_failed == 0:
            verdict = "succeeded"
        elif summary.jobs_succeeded > 0:
            verdict = "partial"
        else:
            verdict = "failed"
        logger.info("plan %s finished: %s (%d ok, %d failed, %d skipped)", plan.plan_id, verdict,
                    summary.jobs_succeeded, summary.jobs_failed, summary.jobs_skipped)
        await emit(ExecutionCompleteEvent(status=verdict, summary=summary))

    async def _run_layer(self, layer: LayerInfo, invoker, semaphore, emit, cancel_event, dry_run, summary) -> None:
        await emit(LayerStartEvent(layer_index=layer.index, job_count=layer.job_count))
        results = await asyncio.gather(*(
            self._run_job(job, invoker, semaphore, emit, cancel_event, dry_run) for job in layer.jobs
        ))
        counts = {"succeeded": 0, "failed": 0, "skipped": 0}
        for status in results:
            if status is not None:
                counts[status] += 1
        summary.jobs_succeeded += counts["succeeded"]
        summary.jobs_failed += counts["failed"]
        summary.jobs_skipped += counts["skipped"]
        await emit(LayerCompleteEvent(layer_index=layer.index, **counts))

    async def _run_job(self, job: Job, invoker, semaphore, emit, cancel_event, dry_run) -> Optional[str]:
        async with semaphore:
            # jobs still queued when a cancel arrives never start
            if cancel_event.is_set():
                return None
            await emit(JobStartEvent(job_id=job.job_id, producer=job.producer, layer_index=job.layer_index))
            error = None
            try:
                result = await invoker.invoke(job, dry_run=dry_run)
                status = "skipped" if result == "skipped" else "succeeded"
            except Exception as exc:
                if isinstance(exc, ProducerError):
                    err = exc
                else:
                    err = ProducerError(str(exc) or type(exc).__name__, job.producer, job.job_id)
                logger.warning("job %s (%s) failed: %s", job.job_id, job.producer, err.message)
                status = "failed"
                error = err.message
            await emit(JobCompleteEvent(job_id=job.job_id, producer=job.producer, layer_index=job.layer_index,
                                        status=status, error_message=error))
            return status
