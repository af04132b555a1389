import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import get_settings
from .errors import ConnectivityError, JobNotFoundError, PlanNotFoundError, PlanningError, ValidationError
from .generation_service import GenerationService
from .schemas import (
    TERMINAL_EVENT_TYPES,
    ErrorEvent,
    ExecuteRequest,
    ExecuteResponse,
    JobStatusResponse,
    PlanInfoModel,
    PlanRequest,
    StatusEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter()
_cfg = get_settings()

# The service is created by the application and bound here.
_bound_service: Optional[GenerationService] = None


def bind_service(service: Optional[GenerationService]):
    global _bound_service
    _bound_service = service


def _service() -> GenerationService:
    if _bound_service is None:
        raise HTTPException(status_code=500, detail="generation service not bound")
    return _bound_service


def _sse(event: Any) -> str:
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


@router.post("/plan", response_model=PlanInfoModel)
async def create_plan(req: PlanRequest) -> PlanInfoModel:
    svc = _service()
    try:
        plan = await svc.create_plan(req)
    except PlanningError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return PlanInfoModel.from_domain(plan)


@router.post("/execute", response_model=ExecuteResponse)
async def execute_plan(req: ExecuteRequest, request: Request) -> ExecuteResponse:
    svc = _service()
    try:
        job_id = await svc.start_execution(req)
    except PlanNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    job = svc.jobs.get_job(job_id)
    return ExecuteResponse(
        job_id=job_id,
        plan_id=req.plan_id,
        status=job.status.value,
        stream_url=request.url_for("stream_job", job_id=job_id).path,
    )


@router.get("/jobs")
async def list_jobs() -> Dict[str, Any]:
    jobs = [j.to_response().model_dump(mode="json") for j in _service().jobs.list_jobs()]
    return {"count": len(jobs), "jobs": jobs}


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str) -> JobStatusResponse:
    try:
        return _service().jobs.get_job(job_id).to_response()
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> Dict[str, Any]:
    svc = _service()
    try:
        accepted = svc.jobs.request_cancel(job_id)
        status = svc.jobs.get_job(job_id).status.value
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"job_id": job_id, "cancel_requested": accepted, "status": status}


@router.get("/jobs/{job_id}/stream", name="stream_job")
async def stream_job(job_id: str) -> StreamingResponse:
    svc = _service()
    try:
        job = svc.jobs.get_job(job_id)
        stream = await svc.jobs.subscribe(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    keep_alive = _cfg.SSE_KEEP_ALIVE_SECONDS

    async def events():
        try:
            yield _sse(StatusEvent(job_id=job_id, status=job.status.value))
            it = stream.__aiter__()
            while True:
                try:
                    event = await asyncio.wait_for(it.__anext__(), timeout=keep_alive)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                except StopAsyncIteration:
                    break
                except ConnectivityError as e:
                    yield _sse(ErrorEvent(message=e.message, code=e.code))
                    break
                yield _sse(event)
                if event.type in TERMINAL_EVENT_TYPES:
                    break
        finally:
            svc.jobs.unsubscribe(job_id, stream)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
