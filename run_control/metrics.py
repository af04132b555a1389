"""Prometheus metrics for planning, run control and the generation API."""

import logging

from prometheus_client import Counter, Gauge, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


plan_requests_total = Counter("run_control_plan_requests_total", "Plan requests", ["result"])
stale_plan_responses_total = Counter("run_control_stale_plan_responses_total", "Plan responses discarded as stale")
runs_total = Counter("run_control_runs_total", "Runs reaching a terminal state", ["outcome"])
stream_events_total = Counter("run_control_stream_events_total", "Execution stream events consumed", ["type"])
producer_failures_total = Counter("run_control_producer_failures_total", "Producer jobs that failed")
active_jobs = Gauge("run_control_active_jobs", "Generation jobs currently running")


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if getattr(cfg, "METRICS_PORT", None):
            start_http_server(cfg.METRICS_PORT)
    except Exception:
        logger.exception("failed to start metrics server")
