from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import bind_service, router as generation_router
from .config import get_settings
from .generation_service import GenerationService, InMemoryBlueprintSource
from .job_manager import JobManager
from .plan_runner import LayeredPlanRunner, SimulatedInvoker
from .planner import PricingCostEstimator


def build_default_service() -> GenerationService:
    cfg = get_settings()
    return GenerationService(
        source=InMemoryBlueprintSource(),
        jobs=JobManager(),
        runner=LayeredPlanRunner(SimulatedInvoker(), concurrency=cfg.DEFAULT_CONCURRENCY),
        cost_estimator=PricingCostEstimator({}),
    )


def create_app(service: GenerationService = None):
    @asynccontextmanager
    async def lifespan(app):
        if service is not None:
            service.jobs.start_pruning()
        yield
        if service is not None:
            await service.jobs.stop()

    app = FastAPI(title="Blueprint Generation API", lifespan=lifespan)
    app.include_router(generation_router, prefix="/generate")
    if service is not None:
        bind_service(service)
    return app


# convenience for running locally
if __name__ == '__main__':
    import uvicorn
    from .logging_setup import setup_logging
    from .metrics import start_metrics_server_if_enabled

    setup_logging()
    start_metrics_server_if_enabled()
    app = create_app(build_default_service())
    uvicorn.run(app, host='0.0.0.0', port=8001)
